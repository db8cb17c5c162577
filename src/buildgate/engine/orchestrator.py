"""Generation orchestrator - drives one job from admission to a stored result."""

import asyncio
import logging
from dataclasses import dataclass
from time import perf_counter
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from buildgate.config import settings
from buildgate.db.base import get_session
from buildgate.db.repositories import JobRepository, RequestRepository, TraceRepository
from buildgate.engine.errors import (
    InvalidStateTransition,
    JobNotFound,
    LeaseExpired,
    ProvisionFailed,
    QuotaExceededAtProvider,
    RequestNotFound,
    TransientPersistenceError,
)
from buildgate.engine.leases import SandboxLeaseManager
from buildgate.engine.persistence import with_transient_retry
from buildgate.engine.quota import QuotaLedger
from buildgate.engine.results import ResultStore
from buildgate.engine.steps import AgentStepRunner, parse_final_output
from buildgate.engine.tools import SandboxToolExecutor
from buildgate.models import (
    Continue,
    Done,
    FailureReason,
    FinalOutput,
    GenerationRequest,
    Job,
    JobResult,
    JobStatus,
    SandboxLease,
    StepError,
    StepOutcome,
    StepTraceEntry,
    TriggerEvent,
    files_from_trace,
)
from buildgate.observability.metrics import metrics
from buildgate.observability.trace import set_trace_id
from buildgate.utils.time import utc_now

logger = logging.getLogger(__name__)


@dataclass
class _LoopOutcome:
    final: Optional[FinalOutput] = None
    failure: Optional[FailureReason] = None
    detail: str = ""


class GenerationOrchestrator:
    """
    Runs the job state machine: Pending -> Admitted -> Running -> Succeeded | Failed.

    ``run`` is safe to invoke any number of times for the same job:
    terminal jobs are left untouched, quota is charged once per job, and a
    job found Admitted or Running is resumed on a fresh sandbox from its
    persisted trace.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        quota: QuotaLedger,
        leases: SandboxLeaseManager,
        steps: AgentStepRunner,
        tools: SandboxToolExecutor,
        results: ResultStore,
        job_cost: int | None = None,
        provision_max_attempts: int | None = None,
        provision_backoff_seconds: float | None = None,
        max_job_attempts: int | None = None,
    ):
        self._session_factory = session_factory
        self.quota = quota
        self.leases = leases
        self.steps = steps
        self.tools = tools
        self.results = results
        self.job_cost = settings.job_cost if job_cost is None else job_cost
        self.provision_max_attempts = provision_max_attempts or settings.provision_max_attempts
        self.provision_backoff_seconds = (
            settings.provision_backoff_seconds
            if provision_backoff_seconds is None
            else provision_backoff_seconds
        )
        self.max_job_attempts = max_job_attempts or settings.max_job_attempts

    async def run(self, event: TriggerEvent) -> Job:
        """
        Drive the job named by ``event`` as far as it can go.

        Returns the job as it stands afterwards (terminal unless persistence
        kept failing).

        Raises:
            JobNotFound / RequestNotFound: the event names nothing we know
            TransientPersistenceError: a write kept failing; the job can be re-triggered
        """
        set_trace_id(str(event.job_id))
        job, request = await self._load(event)

        if job.is_terminal():
            metrics.inc_counter("jobs.duplicate_trigger")
            logger.info(f"Job {job.job_id} already {job.status.value}; ignoring trigger")
            return job

        if request.principal_id != event.principal_id:
            logger.warning(
                f"Trigger for job {job.job_id} names principal {event.principal_id}, "
                f"request belongs to {request.principal_id}; using the request's"
            )

        started = perf_counter()
        metrics.add_gauge("jobs.running", 1)
        try:
            job = await self._drive(job, request)
        finally:
            metrics.add_gauge("jobs.running", -1)
            metrics.observe("jobs.duration_ms", (perf_counter() - started) * 1000.0)
        return job

    async def _drive(self, job: Job, request: GenerationRequest) -> Job:
        if job.status == JobStatus.PENDING:
            job = await self._admit(job, request)
            if job.status != JobStatus.ADMITTED:
                return job
        elif job.attempt_count >= self.max_job_attempts:
            logger.error(
                f"Job {job.job_id} ran {job.attempt_count} times without finishing; giving up"
            )
            return await self._fail(job, FailureReason.RECOVERY_TIMEOUT)
        else:
            metrics.inc_counter("jobs.recovered")
            logger.info(
                f"Resuming job {job.job_id} from {job.status.value} "
                f"(attempt {job.attempt_count + 1})"
            )

        lease = await self._acquire_lease(job)
        if lease is None:
            return await self._get_job(job.job_id)

        finished: Job | None = None
        try:
            finished = await self._run_agent(job, request, lease)
        except (TransientPersistenceError, asyncio.CancelledError):
            raise
        except Exception as e:
            logger.error(f"Job {job.job_id} crashed: {e}", exc_info=True)
            finished = await self._fail(job, FailureReason.INTERNAL_ERROR)
        finally:
            # A succeeded job's sandbox is its preview; the provider TTL reclaims it
            keep_preview = finished is not None and finished.status == JobStatus.SUCCEEDED
            await self.leases.release(lease.lease_id, teardown=not keep_preview)
        return finished

    async def _admit(self, job: Job, request: GenerationRequest) -> Job:
        decision = await self.quota.try_consume(
            request.principal_id,
            self.job_cost,
            admission_key=str(job.job_id),
        )
        if not decision.allowed:
            logger.info(f"Job {job.job_id} rejected: quota exhausted for {request.principal_id}")
            return await self._fail(job, FailureReason.QUOTA_EXHAUSTED)

        return await self._transition(job.job_id, JobStatus.ADMITTED)

    async def _acquire_lease(self, job: Job) -> SandboxLease | None:
        """Provision a sandbox and mark the job running. None means the job was finalized instead."""
        lease: SandboxLease | None = None
        for attempt in range(1, self.provision_max_attempts + 1):
            try:
                lease = await self.leases.acquire(job.job_id)
                break
            except QuotaExceededAtProvider as e:
                logger.warning(f"Job {job.job_id} cannot get a sandbox: {e.message}")
                await self._fail(job, FailureReason.SANDBOX_QUOTA_EXCEEDED)
                return None
            except ProvisionFailed as e:
                if attempt == self.provision_max_attempts:
                    logger.error(
                        f"Job {job.job_id} gave up provisioning after {attempt} attempts: {e.message}"
                    )
                    await self._fail(job, FailureReason.SANDBOX_UNAVAILABLE)
                    return None
                delay = self.provision_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    f"Provisioning for job {job.job_id} failed (attempt {attempt}), "
                    f"retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

        async def start() -> bool:
            async with get_session(self._session_factory) as session:
                return await JobRepository(session).start_running(job.job_id, lease.lease_id)

        if not await with_transient_retry(f"start job {job.job_id}", start):
            # Finalized by someone else between our read and now
            logger.info(f"Job {job.job_id} is no longer runnable; releasing its new lease")
            await self.leases.release(lease.lease_id)
            return None
        return lease

    async def _run_agent(self, job: Job, request: GenerationRequest, lease: SandboxLease) -> Job:
        trace = await self._load_trace(job.job_id)
        if trace:
            files = files_from_trace(trace)
            if files:
                await self.tools.restore_files(lease, files)

        if trace and trace[-1].outcome == StepOutcome.DONE:
            # The answer was recorded before the last run died; store it, do not ask again
            logger.info(f"Job {job.job_id} already finished its steps; storing the recorded answer")
            return await self._succeed(job, lease, parse_final_output(trace[-1].output or ""))

        budget = lease.remaining_seconds()
        try:
            outcome = await asyncio.wait_for(
                self._step_loop(job.job_id, request.prompt_text, lease, trace),
                timeout=budget,
            )
        except asyncio.TimeoutError:
            outcome = _LoopOutcome(
                failure=FailureReason.JOB_TIMEOUT,
                detail=f"lease budget of {budget:.0f}s exhausted",
            )

        if outcome.final is None:
            failure = outcome.failure or FailureReason.INTERNAL_ERROR
            logger.warning(f"Job {job.job_id} failed: {failure.value} {outcome.detail}".rstrip())
            return await self._fail(job, failure)

        return await self._succeed(job, lease, outcome.final)

    async def _succeed(self, job: Job, lease: SandboxLease, final: FinalOutput) -> Job:
        trace = await self._load_trace(job.job_id)
        result = JobResult(
            job_id=job.job_id,
            status=JobStatus.SUCCEEDED,
            title=final.title,
            summary=final.summary,
            files=files_from_trace(trace),
            sandbox_endpoint=lease.preview_url,
            trace=trace,
            completed_at=utc_now(),
        )
        await self.results.finalize(result)
        metrics.inc_counter("jobs.succeeded")
        return await self._get_job(job.job_id)

    async def _step_loop(
        self,
        job_id: UUID,
        goal: str,
        lease: SandboxLease,
        trace: list[StepTraceEntry],
    ) -> _LoopOutcome:
        trace = list(trace)
        while True:
            step = await self.steps.run_step(lease, trace, goal)
            metrics.inc_counter("steps.executed")

            if isinstance(step, StepError):
                return _LoopOutcome(failure=step.kind.as_failure_reason(), detail=step.detail)

            if isinstance(step, Done):
                await self._append(
                    job_id,
                    outcome=StepOutcome.DONE,
                    output=step.raw_text or step.final_output.summary,
                )
                return _LoopOutcome(final=step.final_output)

            if isinstance(step, Continue):
                trace.append(
                    await self._append(job_id, outcome=StepOutcome.CONTINUE, output=step.partial_output)
                )
                continue

            if not await self.leases.is_alive(lease.lease_id):
                return _LoopOutcome(failure=FailureReason.LEASE_EXPIRED, detail="lease no longer alive")
            try:
                tool_outcome = await self.tools.execute(lease, step)
            except LeaseExpired as e:
                return _LoopOutcome(failure=FailureReason.LEASE_EXPIRED, detail=e.message)

            trace.append(
                await self._append(
                    job_id,
                    outcome=tool_outcome.outcome,
                    tool_invoked=step.name,
                    input=step.args,
                    output=tool_outcome.output,
                    call_id=step.call_id,
                )
            )

    async def _fail(self, job: Job, reason: FailureReason) -> Job:
        """Store a failed result carrying ``reason``; the job becomes terminal with it."""
        trace = await self._load_trace(job.job_id)
        result = JobResult(
            job_id=job.job_id,
            status=JobStatus.FAILED,
            files=files_from_trace(trace),
            failure_reason=reason,
            error_message=reason.user_message,
            trace=trace,
            completed_at=utc_now(),
        )
        await self.results.finalize(result)
        metrics.inc_counter(f"jobs.failed.{reason.value}")
        return await self._get_job(job.job_id)

    async def _transition(self, job_id: UUID, to_status: JobStatus) -> Job:
        async def advance() -> Job:
            async with get_session(self._session_factory) as session:
                jobs = JobRepository(session)
                moved = await jobs.advance(job_id, to_status)
                job = await jobs.get(job_id)
            if job is None:
                raise JobNotFound(str(job_id))
            if not moved and not job.is_terminal():
                raise InvalidStateTransition(job.status.value, to_status.value)
            return job

        return await with_transient_retry(f"move job {job_id} to {to_status.value}", advance)

    async def _append(self, job_id: UUID, outcome: StepOutcome, **fields: Any) -> StepTraceEntry:
        async def append() -> StepTraceEntry:
            async with get_session(self._session_factory) as session:
                return await TraceRepository(session).append(job_id, outcome=outcome, **fields)

        return await with_transient_retry(f"append step for job {job_id}", append)

    async def _load_trace(self, job_id: UUID) -> list[StepTraceEntry]:
        async def load() -> list[StepTraceEntry]:
            async with get_session(self._session_factory) as session:
                return await TraceRepository(session).list(job_id)

        return await with_transient_retry(f"load trace for job {job_id}", load)

    async def _get_job(self, job_id: UUID) -> Job:
        async with get_session(self._session_factory) as session:
            job = await JobRepository(session).get(job_id)
        if job is None:
            raise JobNotFound(str(job_id))
        return job

    async def _load(self, event: TriggerEvent) -> tuple[Job, GenerationRequest]:
        async with get_session(self._session_factory) as session:
            job = await JobRepository(session).get(event.job_id)
            if job is None:
                raise JobNotFound(str(event.job_id))
            request = await RequestRepository(session).get(job.request_id)
        if request is None:
            raise RequestNotFound(str(job.request_id))
        if job.request_id != event.request_id:
            logger.warning(
                f"Trigger for job {job.job_id} names request {event.request_id}, "
                f"job belongs to {job.request_id}"
            )
        return job, request
