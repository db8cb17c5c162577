"""API request/response schemas."""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from buildgate.models import FailureReason, Job, JobStatus, Plan


# ============================================================================
# Requests & jobs
# ============================================================================


class CreateGenerationRequest(BaseModel):
    """Submit a prompt for generation."""

    prompt_text: str = Field(..., min_length=1, max_length=20000, description="What to build")


class CreateGenerationResponse(BaseModel):
    request_id: UUID
    job_id: UUID
    status: JobStatus


class TriggerEventRequest(BaseModel):
    """Code-generation trigger. Delivered at-least-once; duplicates are harmless."""

    job_id: UUID
    request_id: UUID
    principal_id: str = Field(..., min_length=1)


class TriggerEventResponse(BaseModel):
    accepted: bool
    job_id: UUID
    status: JobStatus


class JobResponse(BaseModel):
    job_id: UUID
    request_id: UUID
    status: JobStatus
    attempt_count: int
    failure_reason: Optional[FailureReason] = None
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_job(cls, job: Job) -> "JobResponse":
        return cls(
            job_id=job.job_id,
            request_id=job.request_id,
            status=job.status,
            attempt_count=job.attempt_count,
            failure_reason=job.failure_reason,
            error_message=job.failure_reason.user_message if job.failure_reason else None,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )


class TraceEntryResponse(BaseModel):
    seq: int
    tool_invoked: Optional[str] = None
    input: Optional[dict[str, Any]] = None
    output: Optional[str] = None
    outcome: str
    created_at: datetime


class JobTraceResponse(BaseModel):
    job_id: UUID
    status: JobStatus
    steps: list[TraceEntryResponse]


class JobResultResponse(BaseModel):
    job_id: UUID
    status: JobStatus
    title: str
    summary: str
    files: dict[str, str]
    sandbox_endpoint: Optional[str] = None
    failure_reason: Optional[FailureReason] = None
    error_message: Optional[str] = None
    steps: int = Field(..., description="Number of executed agent steps")
    completed_at: datetime


# ============================================================================
# Quota & plans
# ============================================================================


class QuotaResponse(BaseModel):
    principal_id: str
    plan: Plan
    remaining: int
    allowed: bool = Field(..., description="Whether one more job would be admitted now")


class SetPlanRequest(BaseModel):
    plan: Plan


class SetPlanResponse(BaseModel):
    principal_id: str
    plan: Plan


# ============================================================================
# Health
# ============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
