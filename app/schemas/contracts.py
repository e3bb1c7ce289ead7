from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.contracts import ContractStatus


class ContractBase(BaseModel):
    customer_id: UUID
    plan_id: UUID
    installation_address_id: UUID | None = None
    company_id: UUID | None = None
    billing_day: int = Field(default=1, ge=1, le=28)
    amount: Decimal = Field(default=Decimal("0.00"), ge=0)


class ContractCreate(ContractBase):
    pass


class ContractUpdate(BaseModel):
    installation_address_id: UUID | None = None
    billing_day: int | None = Field(default=None, ge=1, le=28)
    amount: Decimal | None = Field(default=None, ge=0)


class ContractPlanChange(BaseModel):
    plan_id: UUID


class ContractRead(ContractBase):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    credential_id: UUID | None = None
    status: ContractStatus
    cancelled_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class LiveConnection(BaseModel):
    online: bool
    contract_id: UUID | None = None
    customer_id: UUID | None = None
    customer_name: str | None = None
    username: str | None = None
    address: str | None = None
    local_address: str | None = None
    calling_station_id: str | None = None
    uptime: str | None = None
    uptime_seconds: int = 0
    service: str | None = None
    message: str | None = None
