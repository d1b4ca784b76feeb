from datetime import datetime
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, Field


class QuarantineStatus(StrEnum):
    ACTIVE = "ACTIVE"
    RELEASED = "RELEASED"
    EXPIRED = "EXPIRED"


class QuarantineCreate(BaseModel):
    budget_line_id: str
    quarantined_cents: int = Field(..., gt=0)
    provider_id: Optional[str] = None
    service_agreement_id: Optional[str] = None
    support_item_code: Optional[str] = Field(default=None, max_length=32)
    notes: Optional[str] = None


class QuarantineUpdate(BaseModel):
    quarantined_cents: Optional[int] = Field(default=None, gt=0)
    support_item_code: Optional[str] = Field(default=None, max_length=32)
    notes: Optional[str] = None


class DrawDownRequest(BaseModel):
    amount_cents: int = Field(..., gt=0)


class AutoCreateRequest(BaseModel):
    service_agreement_id: str
    plan_id: str


class QuarantineOut(BaseModel):
    id: str
    budget_line_id: str
    provider_id: Optional[str] = None
    service_agreement_id: Optional[str] = None
    support_item_code: Optional[str] = None
    quarantined_cents: int
    used_cents: int
    remaining_cents: int
    status: QuarantineStatus
    notes: Optional[str] = None
    created_by_id: Optional[str] = None
    row_version: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class QuarantineListResponse(BaseModel):
    items: list[QuarantineOut]


class AutoCreateResponse(BaseModel):
    created: list[QuarantineOut]
    skipped_rate_line_ids: list[str]
