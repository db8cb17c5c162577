"""Job model - one generation run per request."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel

from buildgate.models.enums import FailureReason, JobStatus


class Job(BaseModel):
    """Pipeline state for a single request."""

    job_id: UUID
    request_id: UUID
    status: JobStatus = JobStatus.PENDING
    attempt_count: int = 0
    sandbox_lease_id: Optional[UUID] = None
    failure_reason: Optional[FailureReason] = None
    created_at: datetime
    updated_at: datetime

    def is_terminal(self) -> bool:
        """Check if job is in a terminal state."""
        return self.status.is_terminal()


class TriggerEvent(BaseModel):
    """External event asking the orchestrator to drive a job. Delivered at-least-once."""

    job_id: UUID
    request_id: UUID
    principal_id: str
