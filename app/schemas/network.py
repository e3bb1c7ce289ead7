from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.device_outbox import OutboxStatus


class BandwidthProfileBase(BaseModel):
    device_id: UUID
    name: str = Field(min_length=1, max_length=120)
    description: str | None = None
    download_bps: int = Field(default=0, ge=0)
    upload_bps: int = Field(default=0, ge=0)
    session_timeout_seconds: int = Field(default=0, ge=0)
    active: bool = True


class BandwidthProfileCreate(BandwidthProfileBase):
    pass


class BandwidthProfileUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    description: str | None = None
    download_bps: int | None = Field(default=None, ge=0)
    upload_bps: int | None = Field(default=None, ge=0)
    session_timeout_seconds: int | None = Field(default=None, ge=0)
    active: bool | None = None


class BandwidthProfileRead(BandwidthProfileBase):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    created_at: datetime
    updated_at: datetime


class CredentialBase(BaseModel):
    device_id: UUID
    profile_id: UUID
    username: str = Field(min_length=1, max_length=120)
    secret: str | None = Field(default=None, max_length=255)
    comment: str | None = None
    active: bool = True


class CredentialCreate(CredentialBase):
    secret: str = Field(min_length=1, max_length=255)


class CredentialUpdate(BaseModel):
    profile_id: UUID | None = None
    username: str | None = Field(default=None, min_length=1, max_length=120)
    secret: str | None = Field(default=None, min_length=1, max_length=255)
    comment: str | None = None


class CredentialRead(CredentialBase):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    last_seen_online: datetime | None = None
    created_at: datetime
    updated_at: datetime


class DeviceOutboxRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    action: str
    device_id: UUID
    target_key: str | None = None
    status: OutboxStatus
    attempts: int
    last_error: str | None = None
    processed_at: datetime | None = None
    created_at: datetime


class DeviceConnectionTest(BaseModel):
    device_id: UUID
    host: str
    reachable: bool
    identity: str | None = None
    message: str | None = None
