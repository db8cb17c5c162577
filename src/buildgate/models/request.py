"""Request model - what the principal asked for."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class GenerationRequest(BaseModel):
    """A principal's description of the app to build. Immutable once accepted."""

    model_config = ConfigDict(frozen=True)

    request_id: UUID
    principal_id: str
    prompt_text: str
    created_at: datetime
