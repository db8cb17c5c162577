"""Result store - terminal outcome of each job, written exactly once."""

import logging
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from buildgate.db.base import get_session
from buildgate.db.repositories import JobRepository, ResultRepository
from buildgate.engine.errors import InvalidStateTransition, JobNotFound
from buildgate.engine.persistence import with_transient_retry
from buildgate.models import JobResult
from buildgate.observability.metrics import metrics

logger = logging.getLogger(__name__)


class ResultStore:
    """
    Persists results.

    The result row and the job's terminal status are committed in the
    same transaction, so a job is terminal if and only if its result
    exists. A second write for the same job returns the stored result
    unchanged.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
    ):
        self._session_factory = session_factory
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds

    async def finalize(self, result: JobResult) -> JobResult:
        """
        Write ``result`` and move its job to the terminal status.

        Returns the stored result, which is the earlier one if the job was
        already finalized.

        Raises:
            TransientPersistenceError: the write kept failing; the job stays non-terminal
            InvalidStateTransition: the job's status does not allow this terminal status
            JobNotFound: the job does not exist
        """
        if not result.status.is_terminal():
            raise InvalidStateTransition(result.status.value, "result")

        try:
            stored = await with_transient_retry(
                f"finalize job {result.job_id}",
                lambda: self._write_once(result),
                max_attempts=self.max_attempts,
                backoff_seconds=self.backoff_seconds,
            )
        except IntegrityError:
            # Lost a race with another finalizer; theirs is the result.
            existing = await self.get(result.job_id)
            if existing is None:
                raise
            logger.info(f"Result for job {result.job_id} was written concurrently")
            return existing

        if stored is result:
            metrics.inc_counter(f"results.{result.status.value}")
            logger.info(
                f"Result stored for job {result.job_id}: {result.status.value}"
                + (f" ({result.failure_reason.value})" if result.failure_reason else "")
            )
        return stored

    async def get(self, job_id: UUID) -> JobResult | None:
        async with get_session(self._session_factory) as session:
            return await ResultRepository(session).get(job_id)

    async def _write_once(self, result: JobResult) -> JobResult:
        async with get_session(self._session_factory) as session:
            results = ResultRepository(session)
            existing = await results.get(result.job_id)
            if existing is not None:
                logger.info(f"Job {result.job_id} already has a result; keeping it")
                return existing

            jobs = JobRepository(session)
            if not await jobs.advance(result.job_id, result.status, result.failure_reason):
                job = await jobs.get(result.job_id)
                if job is None:
                    raise JobNotFound(str(result.job_id))
                raise InvalidStateTransition(job.status.value, result.status.value)

            await results.create(result)
            return result
