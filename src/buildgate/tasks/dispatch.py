"""In-process job dispatcher - one asyncio task per running job."""

import asyncio
import logging
from uuid import UUID

from buildgate.engine import BuildGateError, GenerationOrchestrator, TransientPersistenceError
from buildgate.models import Job, TriggerEvent
from buildgate.observability.metrics import metrics

logger = logging.getLogger("buildgate.dispatch")


class JobDispatcher:
    """
    Runs trigger events through the orchestrator in the background.

    A trigger for a job that is already running in this process joins the
    existing task instead of starting a second one.
    """

    def __init__(self, orchestrator: GenerationOrchestrator):
        self.orchestrator = orchestrator
        self._inflight: dict[UUID, asyncio.Task] = {}

    def submit(self, event: TriggerEvent) -> asyncio.Task:
        existing = self._inflight.get(event.job_id)
        if existing is not None and not existing.done():
            metrics.inc_counter("dispatch.coalesced")
            logger.info(f"Job {event.job_id} already running; coalescing trigger")
            return existing

        task = asyncio.create_task(self._run(event), name=f"job-{event.job_id}")
        self._inflight[event.job_id] = task
        task.add_done_callback(lambda t, job_id=event.job_id: self._forget(job_id, t))
        metrics.inc_counter("dispatch.submitted")
        metrics.set_gauge("dispatch.inflight", len(self._inflight))
        return task

    def is_inflight(self, job_id: UUID) -> bool:
        task = self._inflight.get(job_id)
        return task is not None and not task.done()

    @property
    def inflight_count(self) -> int:
        return sum(1 for task in self._inflight.values() if not task.done())

    async def drain(self) -> None:
        """Wait for every in-flight job to finish."""
        tasks = list(self._inflight.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Give running jobs ``timeout`` seconds, then cancel them; the recovery sweep resumes them."""
        tasks = [task for task in self._inflight.values() if not task.done()]
        if not tasks:
            return
        logger.info(f"Waiting for {len(tasks)} running jobs before shutdown")
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"Cancelled {len(pending)} jobs at shutdown; they will be recovered")
            await asyncio.gather(*pending, return_exceptions=True)

    async def _run(self, event: TriggerEvent) -> Job | None:
        try:
            return await self.orchestrator.run(event)
        except TransientPersistenceError as e:
            metrics.inc_counter("dispatch.deferred")
            logger.warning(f"Job {event.job_id} left for recovery: {e.message}")
        except BuildGateError as e:
            metrics.inc_counter("dispatch.errors")
            logger.error(f"Job {event.job_id} could not run: {e.code} {e.message}")
        except Exception as e:
            metrics.inc_counter("dispatch.errors")
            logger.error(f"Job {event.job_id} dispatch error: {e}", exc_info=True)
        return None

    def _forget(self, job_id: UUID, task: asyncio.Task) -> None:
        if self._inflight.get(job_id) is task:
            del self._inflight[job_id]
        metrics.set_gauge("dispatch.inflight", len(self._inflight))
