"""Result model - the terminal outcome of a job, written exactly once."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from buildgate.models.enums import FailureReason, JobStatus
from buildgate.models.trace import StepTraceEntry


class JobResult(BaseModel):
    """What the requester gets back: generated files plus a preview, or a failure reason."""

    job_id: UUID
    status: JobStatus
    title: str = ""
    summary: str = ""
    files: dict[str, str] = Field(default_factory=dict)
    sandbox_endpoint: Optional[str] = None
    failure_reason: Optional[FailureReason] = None
    error_message: Optional[str] = None
    trace: list[StepTraceEntry] = Field(default_factory=list)
    completed_at: datetime
