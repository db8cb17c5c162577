"""Recovery sweep background task."""

import asyncio
import logging
import random
from datetime import timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from buildgate.config import settings
from buildgate.db.base import get_session
from buildgate.db.repositories import JobRepository, RequestRepository
from buildgate.models import TriggerEvent
from buildgate.observability.metrics import metrics
from buildgate.observability.trace import set_trace_id
from buildgate.tasks.dispatch import JobDispatcher
from buildgate.utils.time import utc_now

logger = logging.getLogger("buildgate.sweep")

_sweep_task: Optional[asyncio.Task] = None
_shutdown_event: Optional[asyncio.Event] = None


async def recover_stale_jobs(
    session_factory: async_sessionmaker[AsyncSession],
    dispatcher: JobDispatcher,
    stale_after_seconds: int | None = None,
    batch_size: int = 20,
) -> int:
    """
    Re-trigger non-terminal jobs that stopped making progress.

    A job is stale when it is Pending, Admitted or Running and its
    ``updated_at`` is older than ``stale_after_seconds`` (every trace
    append refreshes it). The orchestrator decides what to do with it,
    including giving up once the job has used all its attempts.
    Jobs already running in this process are skipped.
    """
    stale_after = (
        settings.job_stale_after_seconds if stale_after_seconds is None else stale_after_seconds
    )
    cutoff = utc_now() - timedelta(seconds=stale_after)

    async with get_session(session_factory) as session:
        jobs = await JobRepository(session).list_stale(cutoff, limit=batch_size)
        requests = RequestRepository(session)
        events = []
        for job in jobs:
            if dispatcher.is_inflight(job.job_id):
                continue
            request = await requests.get(job.request_id)
            if request is None:
                logger.error(f"Stale job {job.job_id} has no request {job.request_id}")
                continue
            events.append(
                TriggerEvent(
                    job_id=job.job_id,
                    request_id=job.request_id,
                    principal_id=request.principal_id,
                )
            )

    for event in events:
        logger.info(f"Re-triggering stale job {event.job_id}")
        dispatcher.submit(event)
    if events:
        metrics.inc_counter("sweep.recovered", len(events))
    return len(events)


async def recovery_sweep_loop(
    session_factory: async_sessionmaker[AsyncSession],
    dispatcher: JobDispatcher,
):
    """
    Background loop that re-triggers stalled jobs.

    Jittered interval (±20%) keeps multiple instances from sweeping in
    lockstep. Each pass handles a small batch.
    """
    base_interval = settings.recovery_sweep_interval_seconds
    logger.info(f"Recovery sweep loop started (base interval: {base_interval}s with ±20% jitter)")

    while not _shutdown_event.is_set():
        try:
            set_trace_id()
            recovered = await recover_stale_jobs(session_factory, dispatcher)
            if recovered > 0:
                logger.info(f"Re-triggered {recovered} stale jobs")
        except Exception as e:
            logger.error(f"Recovery sweep error: {e}", exc_info=True)

        jittered_interval = base_interval * random.uniform(0.8, 1.2)
        try:
            await asyncio.wait_for(_shutdown_event.wait(), timeout=jittered_interval)
        except asyncio.TimeoutError:
            pass

    logger.info("Recovery sweep loop stopped")


async def start_recovery_sweep(
    session_factory: async_sessionmaker[AsyncSession],
    dispatcher: JobDispatcher,
):
    """Start the recovery sweep background task."""
    global _sweep_task, _shutdown_event

    _shutdown_event = asyncio.Event()
    _sweep_task = asyncio.create_task(recovery_sweep_loop(session_factory, dispatcher))


async def stop_recovery_sweep():
    """Stop the recovery sweep background task."""
    global _sweep_task, _shutdown_event

    if _shutdown_event:
        _shutdown_event.set()

    if _sweep_task:
        try:
            await asyncio.wait_for(_sweep_task, timeout=10.0)
        except asyncio.TimeoutError:
            logger.warning("Recovery sweep task did not stop gracefully, cancelling")
            _sweep_task.cancel()
            try:
                await _sweep_task
            except asyncio.CancelledError:
                pass

    _sweep_task = None
    _shutdown_event = None
