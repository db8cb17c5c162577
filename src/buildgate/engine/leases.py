"""Sandbox lease manager - one isolated sandbox per job, bounded by a hard TTL."""

import asyncio
import logging
from datetime import datetime
from typing import Callable
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from buildgate.config import settings
from buildgate.db.base import get_session
from buildgate.db.repositories import LeaseRepository
from buildgate.engine.errors import ProvisionFailed, QuotaExceededAtProvider
from buildgate.integrations.sandbox import (
    SandboxCapacityError,
    SandboxProvider,
    SandboxProviderError,
)
from buildgate.models import SandboxLease
from buildgate.observability.metrics import metrics
from buildgate.utils.time import utc_now

logger = logging.getLogger(__name__)


class SandboxLeaseManager:
    """
    Acquires and releases sandboxes on behalf of jobs.

    The lease record is the authority on liveness: a lease is alive only
    while it is unreleased and inside its TTL, whatever the provider says.
    The TTL is counted from the moment provisioning was requested, so our
    ceiling never outlives the provider's own timeout.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: SandboxProvider,
        ttl_seconds: int | None = None,
        release_timeout_seconds: float | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self.provider = provider
        self.ttl_seconds = settings.sandbox_ttl_seconds if ttl_seconds is None else ttl_seconds
        self.release_timeout_seconds = (
            release_timeout_seconds or settings.lease_release_timeout_seconds
        )
        self._clock = clock

    async def acquire(self, job_id: UUID) -> SandboxLease:
        """
        Provision a fresh sandbox for ``job_id``.

        Any lease the job still holds is released first, so a job never
        holds two live leases.

        Raises:
            QuotaExceededAtProvider: the provider refuses to create more sandboxes
            ProvisionFailed: transient provider or bookkeeping failure
        """
        await self.release_all_for_job(job_id)

        requested_at = self._clock()
        try:
            with metrics.timer("leases.provision_ms"):
                handle = await self.provider.create(
                    ttl_seconds=self.ttl_seconds,
                    metadata={"job_id": str(job_id)},
                )
        except SandboxCapacityError as e:
            metrics.inc_counter("leases.provider_quota_exceeded")
            logger.warning(f"Sandbox provider at capacity for job {job_id}: {e}")
            raise QuotaExceededAtProvider(str(e)) from e
        except (SandboxProviderError, asyncio.TimeoutError) as e:
            metrics.inc_counter("leases.provision_failed")
            logger.warning(f"Sandbox provisioning failed for job {job_id}: {e}")
            raise ProvisionFailed(str(e) or type(e).__name__) from e

        lease = SandboxLease(
            lease_id=uuid4(),
            job_id=job_id,
            created_at=requested_at,
            ttl_seconds=self.ttl_seconds,
            endpoint_ref=handle.ref,
            preview_url=handle.preview_url,
        )
        try:
            async with get_session(self._session_factory) as session:
                await LeaseRepository(session).create(lease)
        except SQLAlchemyError as e:
            logger.error(f"Could not record lease for job {job_id}: {e}", exc_info=True)
            await self._kill(handle.ref)
            raise ProvisionFailed("could not record lease") from e

        metrics.inc_counter("leases.acquired")
        metrics.add_gauge("leases.active", 1)
        logger.info(
            f"Lease {lease.lease_id} acquired for job {job_id} "
            f"(sandbox={handle.ref}, ttl={self.ttl_seconds}s)"
        )
        return lease

    async def get(self, lease_id: UUID) -> SandboxLease | None:
        async with get_session(self._session_factory) as session:
            return await LeaseRepository(session).get(lease_id)

    async def is_alive(self, lease_id: UUID) -> bool:
        """True while the lease is unreleased and within its TTL. Unknown or unreadable means dead."""
        try:
            lease = await self.get(lease_id)
        except SQLAlchemyError as e:
            logger.warning(f"Could not read lease {lease_id}: {e}")
            return False
        return lease is not None and lease.is_alive(self._clock())

    async def release(self, lease_id: UUID, teardown: bool = True) -> None:
        """
        Release a lease.

        With ``teardown`` the sandbox is killed as well. Without it the
        lease only stops counting as alive and the sandbox keeps serving
        its preview until the provider's TTL reclaims it.

        Idempotent. Never raises: a failed teardown is logged, and the
        provider's own timeout reclaims the sandbox.
        """
        try:
            async with get_session(self._session_factory) as session:
                leases = LeaseRepository(session)
                lease = await leases.get(lease_id)
                released_now = lease is not None and await leases.mark_released(lease_id)
        except SQLAlchemyError as e:
            metrics.inc_counter("leases.release_failed")
            logger.error(f"Could not mark lease {lease_id} released: {e}", exc_info=True)
            return

        if not released_now:
            logger.debug(f"Lease {lease_id} already released or unknown")
            return

        metrics.inc_counter("leases.released")
        metrics.add_gauge("leases.active", -1)
        if teardown:
            await self._kill(lease.endpoint_ref)
            logger.info(f"Lease {lease_id} released for job {lease.job_id}")
        else:
            logger.info(
                f"Lease {lease_id} released for job {lease.job_id}; "
                f"sandbox {lease.endpoint_ref} left up for its preview"
            )

    async def release_all_for_job(self, job_id: UUID) -> int:
        """Release every lease the job still holds. Returns how many were open."""
        async with get_session(self._session_factory) as session:
            open_leases = await LeaseRepository(session).list_open_for_job(job_id)
        for lease in open_leases:
            logger.info(f"Releasing stale lease {lease.lease_id} held by job {job_id}")
            await self.release(lease.lease_id)
        return len(open_leases)

    async def _kill(self, ref: str) -> None:
        try:
            await asyncio.wait_for(self.provider.kill(ref), timeout=self.release_timeout_seconds)
        except asyncio.TimeoutError:
            metrics.inc_counter("leases.teardown_failed")
            logger.warning(
                f"Sandbox {ref} teardown timed out after {self.release_timeout_seconds}s; "
                "provider TTL will reclaim it"
            )
        except Exception as e:
            metrics.inc_counter("leases.teardown_failed")
            logger.warning(f"Sandbox {ref} teardown failed: {e}")
