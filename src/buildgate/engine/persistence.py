"""Retry of writes that fail for transient reasons (connection loss, lock timeouts)."""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError

from buildgate.config import settings
from buildgate.engine.errors import TransientPersistenceError
from buildgate.observability.metrics import metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(error: BaseException) -> bool:
    """Connection-level failures are worth retrying; constraint violations never are."""
    if isinstance(error, IntegrityError):
        return False
    if isinstance(error, (OperationalError, InterfaceError, OSError)):
        return True
    return isinstance(error, DBAPIError) and error.connection_invalidated


async def with_transient_retry(
    operation: str,
    func: Callable[[], Awaitable[T]],
    max_attempts: int | None = None,
    backoff_seconds: float | None = None,
) -> T:
    """
    Await ``func()`` and retry transient database failures with exponential backoff.

    Raises:
        TransientPersistenceError: every attempt failed transiently
    """
    attempts = max_attempts or settings.result_write_max_attempts
    backoff = settings.result_write_backoff_seconds if backoff_seconds is None else backoff_seconds

    for attempt in range(1, attempts + 1):
        try:
            return await func()
        except (DBAPIError, OSError) as e:
            if not is_transient(e):
                raise
            metrics.inc_counter("persistence.retries")
            logger.warning(f"{operation} failed transiently (attempt {attempt}/{attempts}): {e}")
            if attempt < attempts:
                await asyncio.sleep(backoff * (2 ** (attempt - 1)))

    metrics.inc_counter("persistence.exhausted")
    logger.error(f"{operation} failed after {attempts} attempts")
    raise TransientPersistenceError(operation, attempts)
