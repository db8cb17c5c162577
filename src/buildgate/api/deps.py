"""API dependencies."""

import logging
import secrets
from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from buildgate.config import Environment, settings
from buildgate.db.base import get_session_factory
from buildgate.engine import QuotaLedger, ResultStore
from buildgate.tasks.dispatch import JobDispatcher

logger = logging.getLogger("buildgate.api")


def get_db_session_factory() -> async_sessionmaker[AsyncSession]:
    """Process-wide session factory (overridden in tests)."""
    return get_session_factory()


async def get_db_session(
    factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
) -> AsyncGenerator[AsyncSession, None]:
    """Get database session."""
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_dispatcher(request: Request) -> JobDispatcher:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(status_code=503, detail="Job dispatcher is not running")
    return dispatcher


def get_quota_ledger(
    factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
) -> QuotaLedger:
    return QuotaLedger(factory)


def get_result_store(
    factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
) -> ResultStore:
    return ResultStore(factory)


async def get_principal_id(
    x_principal_id: str | None = Header(None, alias="X-Principal-ID"),
) -> str:
    """
    Identity of the caller.

    Authentication happens upstream; the gateway forwards the
    authenticated principal in a header.
    """
    if x_principal_id and x_principal_id.strip():
        return x_principal_id.strip()

    if settings.allow_insecure_dev and settings.env == Environment.DEVELOPMENT:
        return "dev-principal"

    raise HTTPException(status_code=401, detail="Missing principal ID")


async def verify_api_key(
    authorization: str | None = Header(None),
    x_api_key: str | None = Header(None, alias="X-API-Key"),
) -> None:
    """
    Verify the shared service token.

    Fails closed: with no token configured and insecure dev mode off,
    every request is rejected.
    """
    if settings.allow_insecure_dev and settings.env == Environment.DEVELOPMENT:
        return

    api_key = None
    if authorization and authorization.startswith("Bearer "):
        api_key = authorization[7:]
    elif x_api_key:
        api_key = x_api_key

    if not api_key:
        raise HTTPException(
            status_code=401,
            detail="Missing authorization. Use Authorization: Bearer <key> or X-API-Key header",
        )

    if settings.api_key:
        if secrets.compare_digest(api_key, settings.api_key):
            return
        raise HTTPException(status_code=401, detail="Invalid API key")

    logger.error("SECURITY VIOLATION: No API key configured. Set BUILDGATE_API_KEY.")
    raise HTTPException(
        status_code=503,
        detail="Server misconfigured: authentication not properly initialized",
    )


async def verify_admin_key(
    x_admin_key: str | None = Header(None, alias="X-Admin-Key"),
) -> None:
    """
    Verify the operator key for account administration.

    The shared service token is held by every client, so it cannot also
    authorize plan changes. With no admin key configured those routes are
    closed.
    """
    if settings.allow_insecure_dev and settings.env == Environment.DEVELOPMENT:
        return

    if not settings.admin_api_key:
        raise HTTPException(status_code=403, detail="Administration is disabled")

    if not x_admin_key or not secrets.compare_digest(x_admin_key, settings.admin_api_key):
        raise HTTPException(status_code=403, detail="Invalid admin key")


def validate_auth_config() -> None:
    """
    Validate authentication configuration at startup.

    Raises:
        RuntimeError: If configuration is insecure for the current environment
    """
    if settings.allow_insecure_dev and settings.env != Environment.DEVELOPMENT:
        raise RuntimeError(
            f"SECURITY ERROR: allow_insecure_dev=true is only permitted in development. "
            f"Current environment: {settings.env.value}. "
            f"Set BUILDGATE_ALLOW_INSECURE_DEV=false for {settings.env.value}."
        )

    if not settings.allow_insecure_dev and not settings.api_key:
        raise RuntimeError("BUILDGATE_API_KEY must be set unless insecure dev mode is enabled")

    if settings.allow_insecure_dev:
        logger.warning(
            "=" * 80 + "\n"
            "WARNING: Running in INSECURE DEV MODE\n"
            "  - Authentication is DISABLED\n"
            "  - X-Principal-ID defaults to 'dev-principal'\n"
            "  - Set BUILDGATE_ALLOW_INSECURE_DEV=false for any deployment\n"
            + "=" * 80
        )
    else:
        logger.info(f"Authentication enabled: shared API key for {settings.env.value}")
