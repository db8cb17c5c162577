"""
Pytest fixtures for BuildGate tests.
"""

import asyncio
import os
from typing import Any
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Ensure test config is set before importing buildgate modules.
os.environ.setdefault("BUILDGATE_ALLOW_INSECURE_DEV", "true")
os.environ.setdefault("BUILDGATE_ENV", "development")

from buildgate.db.base import Base, create_engine, create_session_factory, get_session
import buildgate.db.tables  # noqa: F401
from buildgate.db.repositories import JobRepository, RequestRepository
from buildgate.engine import (
    AgentStepRunner,
    GenerationOrchestrator,
    QuotaLedger,
    ResultStore,
    SandboxLeaseManager,
    SandboxToolExecutor,
)
from buildgate.integrations import (
    CommandResult,
    ModelClient,
    ModelError,
    ModelResponse,
    SandboxCapacityError,
    SandboxHandle,
    SandboxProvider,
    SandboxProviderError,
)
from buildgate.observability.metrics import metrics


# ============================================================================
# Fakes
# ============================================================================


class FakeSandboxProvider(SandboxProvider):
    """In-memory sandbox provider that records every operation."""

    def __init__(self):
        self.sandboxes: dict[str, dict[str, str]] = {}
        self.killed: list[str] = []
        self.calls: list[tuple[str, str]] = []
        self.create_failures = 0
        self.at_capacity = False
        self.kill_error: Exception | None = None
        self.kill_delay = 0.0
        self.command_delay = 0.0
        self.command_results: dict[str, CommandResult] = {}
        self._counter = 0

    async def create(self, ttl_seconds: int, metadata: dict[str, str] | None = None) -> SandboxHandle:
        self.calls.append(("create", ""))
        if self.at_capacity:
            raise SandboxCapacityError("sandbox limit reached")
        if self.create_failures > 0:
            self.create_failures -= 1
            raise SandboxProviderError("provider unavailable")
        self._counter += 1
        ref = f"sbx-{self._counter}"
        self.sandboxes[ref] = {}
        return SandboxHandle(ref=ref, preview_url=f"https://3000-{ref}.sandbox.test")

    async def kill(self, ref: str) -> None:
        self.calls.append(("kill", ref))
        if self.kill_delay:
            await asyncio.sleep(self.kill_delay)
        if self.kill_error is not None:
            raise self.kill_error
        self.killed.append(ref)

    async def read_file(self, ref: str, path: str) -> str:
        self.calls.append(("read_file", ref))
        try:
            return self.sandboxes[ref][path]
        except KeyError:
            raise SandboxProviderError(f"no such file: {path}")

    async def write_file(self, ref: str, path: str, content: str) -> None:
        self.calls.append(("write_file", ref))
        self.sandboxes[ref][path] = content

    async def list_files(self, ref: str, path: str) -> list[str]:
        self.calls.append(("list_files", ref))
        return sorted(self.sandboxes[ref])

    async def run_command(self, ref: str, command: str, timeout_seconds: float) -> CommandResult:
        self.calls.append(("run_command", ref))
        if self.command_delay:
            await asyncio.sleep(self.command_delay)
        return self.command_results.get(command, CommandResult(stdout="", stderr="", exit_code=0))


def tool_use(name: str, call_id: str | None = None, **args: Any) -> ModelResponse:
    return ModelResponse(
        content=[
            {"type": "tool_use", "id": call_id or f"toolu_{uuid4().hex[:8]}", "name": name, "input": args}
        ],
        stop_reason="tool_use",
    )


def final(text: str) -> ModelResponse:
    return ModelResponse(content=[{"type": "text", "text": text}], stop_reason="end_turn")


class FakeModelClient(ModelClient):
    """Replays scripted turns. Items may be ModelResponse or an exception to raise."""

    def __init__(self, script: list[Any] | None = None, default: Any = None):
        self.script = list(script or [])
        self.default = default
        self.requests: list[dict[str, Any]] = []

    async def create_message(self, *, system, messages, tools) -> ModelResponse:
        self.requests.append({"system": system, "messages": messages, "tools": tools})
        item = self.script.pop(0) if self.script else self.default
        if item is None:
            raise ModelError("script exhausted")
        if isinstance(item, Exception):
            raise item
        return item


# ============================================================================
# Database
# ============================================================================


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh database per test (SQLite file unless BUILDGATE_TEST_DATABASE_URL is set)."""
    database_url = os.getenv("BUILDGATE_TEST_DATABASE_URL") or (
        f"sqlite+aiosqlite:///{tmp_path / 'buildgate_test.db'}"
    )
    test_engine = create_engine(database_url)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield


@pytest.fixture
def make_job(session_factory):
    """Create a request plus its pending job; returns (request, job)."""

    async def _make(principal_id: str = "principal-1", prompt: str = "Build a todo app"):
        async with get_session(session_factory) as session:
            request = await RequestRepository(session).create(principal_id, prompt)
            job = await JobRepository(session).create(request.request_id)
        return request, job

    return _make


# ============================================================================
# Pipeline parts
# ============================================================================


@pytest.fixture
def provider():
    return FakeSandboxProvider()


@pytest.fixture
def model():
    return FakeModelClient()


@pytest.fixture
def lease_manager(session_factory, provider):
    return SandboxLeaseManager(session_factory, provider, ttl_seconds=1800, release_timeout_seconds=0.5)


@pytest.fixture
def tool_executor(provider):
    return SandboxToolExecutor(provider, timeout_seconds=1.0, max_output_chars=2000)


@pytest.fixture
def orchestrator_factory(session_factory, provider, model, lease_manager, tool_executor):
    """Build an orchestrator over the fakes; keyword arguments override its parts."""

    def _build(**overrides):
        parts = {
            "session_factory": session_factory,
            "quota": QuotaLedger(session_factory),
            "leases": lease_manager,
            "steps": AgentStepRunner(model, max_steps=10),
            "tools": tool_executor,
            "results": ResultStore(session_factory, max_attempts=2, backoff_seconds=0),
            "provision_max_attempts": 3,
            "provision_backoff_seconds": 0,
        }
        parts.update(overrides)
        return GenerationOrchestrator(**parts)

    return _build


@pytest.fixture
def orchestrator(orchestrator_factory):
    return orchestrator_factory()


# ============================================================================
# HTTP
# ============================================================================


class RecordingDispatcher:
    """Stands in for JobDispatcher in API tests; records submitted events."""

    def __init__(self):
        self.events = []

    def submit(self, event):
        self.events.append(event)

    def is_inflight(self, job_id):
        return False


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest_asyncio.fixture
async def client(session_factory, dispatcher):
    """Async test client with overridden dependencies."""
    from buildgate.api.deps import get_db_session_factory, get_dispatcher
    from buildgate.main import app

    app.dependency_overrides[get_db_session_factory] = lambda: session_factory
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
