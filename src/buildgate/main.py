"""BuildGate main application."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from buildgate import __version__
from buildgate.api import router
from buildgate.api.deps import validate_auth_config
from buildgate.config import settings
from buildgate.db.base import close_db, get_session_factory, init_db
from buildgate.middleware.trace import trace_id_middleware
from buildgate.observability.trace import TraceIdFilter
from buildgate.runtime import build_orchestrator, default_model_client, default_sandbox_provider
from buildgate.tasks import JobDispatcher, start_recovery_sweep, stop_recovery_sweep

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - [%(trace_id)s] %(message)s",
)
for _handler in logging.getLogger().handlers:
    _handler.addFilter(TraceIdFilter())
logger = logging.getLogger("buildgate")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting BuildGate server...")
    logger.info(f"Environment: {settings.env.value}")

    # Validate authentication configuration (fail fast if insecure)
    validate_auth_config()

    # Initialize database
    await init_db()
    logger.info("Database initialized")

    session_factory = get_session_factory()
    model = default_model_client()
    orchestrator = build_orchestrator(session_factory, default_sandbox_provider(), model)
    dispatcher = JobDispatcher(orchestrator)
    app.state.dispatcher = dispatcher

    # Start background tasks
    if settings.recovery_sweep_enabled:
        await start_recovery_sweep(session_factory, dispatcher)
        logger.info("Recovery sweep task started")

    yield

    # Cleanup
    logger.info("Shutting down BuildGate server...")
    await stop_recovery_sweep()
    await dispatcher.shutdown()
    await model.close()
    await close_db()
    logger.info("Shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="BuildGate",
    description="Prompt-to-app generation jobs with quota admission and sandboxed agents",
    version=__version__,
    lifespan=lifespan,
)

# Trace ID middleware (correlation across logs)
app.middleware("http")(trace_id_middleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allowed_methods,
    allow_headers=settings.cors_allowed_headers,
)

app.include_router(router)


def main():
    """Entry point for the application."""
    uvicorn.run(
        "buildgate.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
