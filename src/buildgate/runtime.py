"""Assembly of the job pipeline from its parts."""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from buildgate.config import settings
from buildgate.engine import (
    AgentStepRunner,
    GenerationOrchestrator,
    QuotaLedger,
    ResultStore,
    SandboxLeaseManager,
    SandboxToolExecutor,
)
from buildgate.integrations import (
    AnthropicModelClient,
    E2BSandboxProvider,
    ModelClient,
    SandboxProvider,
)


def default_sandbox_provider() -> SandboxProvider:
    return E2BSandboxProvider(
        api_key=settings.sandbox_api_key,
        template=settings.sandbox_template,
        preview_port=settings.sandbox_preview_port,
        workdir=settings.sandbox_workdir,
    )


def default_model_client() -> ModelClient:
    return AnthropicModelClient()


def build_orchestrator(
    session_factory: async_sessionmaker[AsyncSession],
    provider: SandboxProvider,
    model: ModelClient,
) -> GenerationOrchestrator:
    """Wire the ledger, lease manager, step runner, tool executor and result store together."""
    return GenerationOrchestrator(
        session_factory=session_factory,
        quota=QuotaLedger(session_factory),
        leases=SandboxLeaseManager(session_factory, provider),
        steps=AgentStepRunner(model),
        tools=SandboxToolExecutor(provider),
        results=ResultStore(session_factory),
    )