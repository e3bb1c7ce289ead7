from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from app.models.event_store import EventStatus


class EventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    event_id: UUID
    event_type: str
    status: EventStatus
    retry_count: int
    error: str | None = None
    contract_id: UUID | None = None
    credential_id: UUID | None = None
    processed_at: datetime | None = None
    created_at: datetime
