"""Sandbox lease model - a job's exclusive claim on a remote sandbox."""

from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from pydantic import BaseModel

from buildgate.utils.time import seconds_until, utc_now


class SandboxLease(BaseModel):
    """Time-bounded claim on a sandbox, owned by exactly one job."""

    lease_id: UUID
    job_id: UUID
    created_at: datetime
    ttl_seconds: int
    endpoint_ref: str
    preview_url: Optional[str] = None
    released_at: Optional[datetime] = None

    @property
    def expires_at(self) -> datetime:
        return self.created_at + timedelta(seconds=self.ttl_seconds)

    def is_expired(self, now: datetime | None = None) -> bool:
        """TTL is a hard ceiling regardless of what the provider reports."""
        if now is None:
            now = utc_now()
        return now >= self.expires_at

    def is_alive(self, now: datetime | None = None) -> bool:
        return self.released_at is None and not self.is_expired(now)

    def remaining_seconds(self, now: datetime | None = None) -> float:
        return seconds_until(self.expires_at, now)
