"""Quota models."""

from datetime import datetime

from pydantic import BaseModel

from buildgate.models.enums import Plan


class QuotaRecord(BaseModel):
    """Remaining admission points for a principal in the current window."""

    principal_id: str
    points_remaining: int
    window_expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.window_expires_at


class QuotaDecision(BaseModel):
    """Answer to an admission check."""

    allowed: bool
    remaining: int
    plan: Plan = Plan.FREE
