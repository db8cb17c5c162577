"""SQLAlchemy table definitions."""

from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from buildgate.db.base import Base
from buildgate.models.enums import FailureReason, JobStatus, Plan, StepOutcome


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps on every backend.

    PostgreSQL stores ``timestamptz``; SQLite has no zone support, so values
    are stored as naive UTC and re-tagged on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


JSONType = JSON().with_variant(JSONB(), "postgresql")


class RequestTable(Base):
    """Requests table - immutable user prompts."""

    __tablename__ = "requests"

    request_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    principal_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    prompt_text: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class JobTable(Base):
    """Jobs table - one pipeline run per request."""

    __tablename__ = "jobs"

    job_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    request_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("requests.request_id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=JobStatus.PENDING,
    )
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sandbox_lease_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    failure_reason: Mapped[FailureReason | None] = mapped_column(
        Enum(FailureReason, values_callable=lambda e: [m.value for m in e]),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        # One job per request
        UniqueConstraint("request_id", name="uq_jobs_request"),
        # Recovery sweep scans non-terminal jobs by staleness
        Index("idx_jobs_status_updated", "status", "updated_at"),
    )


class PrincipalPlanTable(Base):
    """Plan membership per principal. Missing row means the free plan."""

    __tablename__ = "principal_plans"

    principal_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    plan: Mapped[Plan] = mapped_column(
        Enum(Plan, values_callable=lambda e: [m.value for m in e]), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class QuotaRecordTable(Base):
    """Quota records - remaining admission points per principal."""

    __tablename__ = "quota_records"

    principal_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    points_remaining: Mapped[int] = mapped_column(Integer, nullable=False)
    window_expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        CheckConstraint("points_remaining >= 0", name="ck_quota_records_non_negative"),
    )


class QuotaAdmissionTable(Base):
    """Admissions already charged, keyed by job so a retry never charges twice."""

    __tablename__ = "quota_admissions"

    admission_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    principal_id: Mapped[str] = mapped_column(String(255), nullable=False)
    cost: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class SandboxLeaseTable(Base):
    """Sandbox leases - time-bounded claims on remote sandboxes."""

    __tablename__ = "sandbox_leases"

    lease_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    job_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("jobs.job_id", ondelete="CASCADE"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    ttl_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    endpoint_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    preview_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("idx_sandbox_leases_job", "job_id", "released_at"),
    )


class StepTraceTable(Base):
    """Step traces - append-only agent steps, ordered per job."""

    __tablename__ = "step_traces"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("jobs.job_id", ondelete="CASCADE"), nullable=False
    )
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    tool_invoked: Mapped[str | None] = mapped_column(String(64), nullable=True)
    input: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    output: Mapped[str | None] = mapped_column(Text, nullable=True)
    outcome: Mapped[StepOutcome] = mapped_column(
        Enum(StepOutcome, values_callable=lambda e: [m.value for m in e]), nullable=False
    )
    call_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        # Total order per job; a replayed step collides instead of duplicating
        UniqueConstraint("job_id", "seq", name="uq_step_traces_job_seq"),
    )


class ResultTable(Base):
    """Results - terminal outcome per job, written exactly once."""

    __tablename__ = "results"

    job_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("jobs.job_id", ondelete="CASCADE"), primary_key=True
    )
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, values_callable=lambda e: [m.value for m in e]), nullable=False
    )
    title: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    summary: Mapped[str] = mapped_column(Text, nullable=False, default="")
    files: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    sandbox_endpoint: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    failure_reason: Mapped[FailureReason | None] = mapped_column(
        Enum(FailureReason, values_callable=lambda e: [m.value for m in e]), nullable=True
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    trace: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    completed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
