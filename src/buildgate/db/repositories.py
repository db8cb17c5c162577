"""Database repositories for BuildGate entities."""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from buildgate.db.tables import (
    JobTable,
    PrincipalPlanTable,
    QuotaAdmissionTable,
    QuotaRecordTable,
    RequestTable,
    ResultTable,
    SandboxLeaseTable,
    StepTraceTable,
)
from buildgate.models import (
    FailureReason,
    GenerationRequest,
    Job,
    JobResult,
    JobStatus,
    Plan,
    QuotaRecord,
    SandboxLease,
    StepOutcome,
    StepTraceEntry,
)
from buildgate.utils.time import utc_now

# Statuses a job may be in for the UPDATE that moves it to the key status.
# RUNNING -> RUNNING is the re-lease of a recovered job, not a backward step.
_ALLOWED_FROM: dict[JobStatus, tuple[JobStatus, ...]] = {
    JobStatus.ADMITTED: (JobStatus.PENDING,),
    JobStatus.RUNNING: (JobStatus.ADMITTED, JobStatus.RUNNING),
    JobStatus.SUCCEEDED: (JobStatus.RUNNING,),
    JobStatus.FAILED: (JobStatus.PENDING, JobStatus.ADMITTED, JobStatus.RUNNING),
}

_NON_TERMINAL = (JobStatus.PENDING, JobStatus.ADMITTED, JobStatus.RUNNING)


class RequestRepository:
    """Repository for generation requests."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        principal_id: str,
        prompt_text: str,
        request_id: UUID | None = None,
    ) -> GenerationRequest:
        """Create a new request."""
        row = RequestTable(
            request_id=request_id or uuid4(),
            principal_id=principal_id,
            prompt_text=prompt_text,
            created_at=utc_now(),
        )
        self.session.add(row)
        await self.session.flush()
        return self._row_to_model(row)

    async def get(self, request_id: UUID) -> GenerationRequest | None:
        row = await self.session.get(RequestTable, request_id)
        return self._row_to_model(row) if row else None

    def _row_to_model(self, row: RequestTable) -> GenerationRequest:
        return GenerationRequest(
            request_id=row.request_id,
            principal_id=row.principal_id,
            prompt_text=row.prompt_text,
            created_at=row.created_at,
        )


class JobRepository:
    """Repository for job state. Every status change is a conditional UPDATE."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, request_id: UUID, job_id: UUID | None = None) -> Job:
        """Create a pending job for a request."""
        now = utc_now()
        row = JobTable(
            job_id=job_id or uuid4(),
            request_id=request_id,
            status=JobStatus.PENDING,
            attempt_count=0,
            created_at=now,
            updated_at=now,
        )
        self.session.add(row)
        await self.session.flush()
        return self._row_to_model(row)

    async def get(self, job_id: UUID) -> Job | None:
        result = await self.session.execute(select(JobTable).where(JobTable.job_id == job_id))
        row = result.scalar_one_or_none()
        return self._row_to_model(row) if row else None

    async def advance(
        self,
        job_id: UUID,
        to_status: JobStatus,
        failure_reason: FailureReason | None = None,
    ) -> bool:
        """Move a job forward. Returns False if the current status does not allow it."""
        values: dict[str, Any] = {"status": to_status, "updated_at": utc_now()}
        if failure_reason is not None:
            values["failure_reason"] = failure_reason
        result = await self.session.execute(
            update(JobTable)
            .where(
                JobTable.job_id == job_id,
                JobTable.status.in_(_ALLOWED_FROM[to_status]),
            )
            .values(**values)
        )
        return result.rowcount == 1

    async def start_running(self, job_id: UUID, lease_id: UUID) -> bool:
        """Bind a fresh lease to the job and mark it running."""
        result = await self.session.execute(
            update(JobTable)
            .where(
                JobTable.job_id == job_id,
                JobTable.status.in_(_ALLOWED_FROM[JobStatus.RUNNING]),
            )
            .values(
                status=JobStatus.RUNNING,
                sandbox_lease_id=lease_id,
                attempt_count=JobTable.attempt_count + 1,
                updated_at=utc_now(),
            )
        )
        return result.rowcount == 1

    async def touch(self, job_id: UUID) -> None:
        """Record liveness so the recovery sweep leaves the job alone."""
        await self.session.execute(
            update(JobTable)
            .where(JobTable.job_id == job_id, JobTable.status.in_(_NON_TERMINAL))
            .values(updated_at=utc_now())
        )

    async def list_stale(self, older_than: datetime, limit: int = 100) -> list[Job]:
        """Non-terminal jobs that have not made progress since ``older_than``."""
        result = await self.session.execute(
            select(JobTable)
            .where(
                JobTable.status.in_(_NON_TERMINAL),
                JobTable.updated_at < older_than,
            )
            .order_by(JobTable.updated_at.asc())
            .limit(limit)
        )
        return [self._row_to_model(r) for r in result.scalars().all()]

    def _row_to_model(self, row: JobTable) -> Job:
        return Job(
            job_id=row.job_id,
            request_id=row.request_id,
            status=row.status,
            attempt_count=row.attempt_count,
            sandbox_lease_id=row.sandbox_lease_id,
            failure_reason=row.failure_reason,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


class PlanRepository:
    """Repository for plan membership."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, principal_id: str) -> Plan:
        row = await self.session.get(PrincipalPlanTable, principal_id)
        return row.plan if row else Plan.FREE

    async def set(self, principal_id: str, plan: Plan) -> Plan:
        row = await self.session.get(PrincipalPlanTable, principal_id)
        if row is None:
            self.session.add(
                PrincipalPlanTable(principal_id=principal_id, plan=plan, updated_at=utc_now())
            )
        else:
            row.plan = plan
            row.updated_at = utc_now()
        await self.session.flush()
        return plan


class QuotaRepository:
    """Repository for quota records. Mutations are single conditional statements."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, principal_id: str) -> QuotaRecord | None:
        result = await self.session.execute(
            select(QuotaRecordTable).where(QuotaRecordTable.principal_id == principal_id)
        )
        row = result.scalar_one_or_none()
        if not row:
            return None
        return QuotaRecord(
            principal_id=row.principal_id,
            points_remaining=row.points_remaining,
            window_expires_at=row.window_expires_at,
        )

    async def insert(self, principal_id: str, points: int, window_expires_at: datetime) -> None:
        """Insert a fresh record. Raises IntegrityError if one already exists."""
        self.session.add(
            QuotaRecordTable(
                principal_id=principal_id,
                points_remaining=points,
                window_expires_at=window_expires_at,
            )
        )
        await self.session.flush()

    async def reset_expired(
        self,
        principal_id: str,
        points: int,
        now: datetime,
        window_expires_at: datetime,
    ) -> bool:
        """Replenish the record only if its window has elapsed."""
        result = await self.session.execute(
            update(QuotaRecordTable)
            .where(
                QuotaRecordTable.principal_id == principal_id,
                QuotaRecordTable.window_expires_at <= now,
            )
            .values(points_remaining=points, window_expires_at=window_expires_at)
        )
        return result.rowcount == 1

    async def consume(self, principal_id: str, cost: int, now: datetime) -> bool:
        """Atomically decrement if enough points remain in a live window."""
        result = await self.session.execute(
            update(QuotaRecordTable)
            .where(
                QuotaRecordTable.principal_id == principal_id,
                QuotaRecordTable.points_remaining >= cost,
                QuotaRecordTable.window_expires_at > now,
            )
            .values(points_remaining=QuotaRecordTable.points_remaining - cost)
        )
        return result.rowcount == 1

    async def record_admission(self, admission_key: str, principal_id: str, cost: int) -> None:
        """Remember a charged admission. Raises IntegrityError if the key was already charged."""
        self.session.add(
            QuotaAdmissionTable(
                admission_key=admission_key,
                principal_id=principal_id,
                cost=cost,
                created_at=utc_now(),
            )
        )
        await self.session.flush()

    async def has_admission(self, admission_key: str) -> bool:
        row = await self.session.get(QuotaAdmissionTable, admission_key)
        return row is not None


class LeaseRepository:
    """Repository for sandbox lease records."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, lease: SandboxLease) -> SandboxLease:
        self.session.add(
            SandboxLeaseTable(
                lease_id=lease.lease_id,
                job_id=lease.job_id,
                created_at=lease.created_at,
                ttl_seconds=lease.ttl_seconds,
                endpoint_ref=lease.endpoint_ref,
                preview_url=lease.preview_url,
                released_at=lease.released_at,
            )
        )
        await self.session.flush()
        return lease

    async def get(self, lease_id: UUID) -> SandboxLease | None:
        result = await self.session.execute(
            select(SandboxLeaseTable).where(SandboxLeaseTable.lease_id == lease_id)
        )
        row = result.scalar_one_or_none()
        return self._row_to_model(row) if row else None

    async def list_open_for_job(self, job_id: UUID) -> list[SandboxLease]:
        """Leases for a job that have not been released yet (expired or not)."""
        result = await self.session.execute(
            select(SandboxLeaseTable)
            .where(
                SandboxLeaseTable.job_id == job_id,
                SandboxLeaseTable.released_at.is_(None),
            )
            .order_by(SandboxLeaseTable.created_at.asc())
        )
        return [self._row_to_model(r) for r in result.scalars().all()]

    async def mark_released(self, lease_id: UUID) -> bool:
        """Mark a lease released. Returns False if it was already released or unknown."""
        result = await self.session.execute(
            update(SandboxLeaseTable)
            .where(
                SandboxLeaseTable.lease_id == lease_id,
                SandboxLeaseTable.released_at.is_(None),
            )
            .values(released_at=utc_now())
        )
        return result.rowcount == 1

    def _row_to_model(self, row: SandboxLeaseTable) -> SandboxLease:
        return SandboxLease(
            lease_id=row.lease_id,
            job_id=row.job_id,
            created_at=row.created_at,
            ttl_seconds=row.ttl_seconds,
            endpoint_ref=row.endpoint_ref,
            preview_url=row.preview_url,
            released_at=row.released_at,
        )


class TraceRepository:
    """Repository for the append-only step trace."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(
        self,
        job_id: UUID,
        outcome: StepOutcome,
        tool_invoked: str | None = None,
        input: dict[str, Any] | None = None,
        output: str | None = None,
        call_id: str | None = None,
    ) -> StepTraceEntry:
        """Append the next step. ``seq`` is 1-based and unique per job."""
        result = await self.session.execute(
            select(func.coalesce(func.max(StepTraceTable.seq), 0)).where(
                StepTraceTable.job_id == job_id
            )
        )
        seq = int(result.scalar_one()) + 1
        row = StepTraceTable(
            job_id=job_id,
            seq=seq,
            tool_invoked=tool_invoked,
            input=input,
            output=output,
            outcome=outcome,
            call_id=call_id,
            created_at=utc_now(),
        )
        self.session.add(row)
        await self.session.flush()
        await JobRepository(self.session).touch(job_id)
        return self._row_to_model(row)

    async def list(self, job_id: UUID) -> list[StepTraceEntry]:
        result = await self.session.execute(
            select(StepTraceTable)
            .where(StepTraceTable.job_id == job_id)
            .order_by(StepTraceTable.seq.asc())
        )
        return [self._row_to_model(r) for r in result.scalars().all()]

    def _row_to_model(self, row: StepTraceTable) -> StepTraceEntry:
        return StepTraceEntry(
            seq=row.seq,
            tool_invoked=row.tool_invoked,
            input=row.input,
            output=row.output,
            outcome=row.outcome,
            call_id=row.call_id,
            created_at=row.created_at,
        )


class ResultRepository:
    """Repository for terminal results."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, result: JobResult) -> JobResult:
        """Insert the result. Raises IntegrityError if the job already has one."""
        self.session.add(
            ResultTable(
                job_id=result.job_id,
                status=result.status,
                title=result.title,
                summary=result.summary,
                files=result.files,
                sandbox_endpoint=result.sandbox_endpoint,
                failure_reason=result.failure_reason,
                error_message=result.error_message,
                trace=[entry.model_dump(mode="json") for entry in result.trace],
                completed_at=result.completed_at,
            )
        )
        await self.session.flush()
        return result

    async def get(self, job_id: UUID) -> JobResult | None:
        row = await self.session.get(ResultTable, job_id)
        return self._row_to_model(row) if row else None

    def _row_to_model(self, row: ResultTable) -> JobResult:
        return JobResult(
            job_id=row.job_id,
            status=row.status,
            title=row.title,
            summary=row.summary,
            files=row.files or {},
            sandbox_endpoint=row.sandbox_endpoint,
            failure_reason=row.failure_reason,
            error_message=row.error_message,
            trace=[StepTraceEntry.model_validate(e) for e in (row.trace or [])],
            completed_at=row.completed_at,
        )
