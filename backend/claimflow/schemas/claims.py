from datetime import date, datetime
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, Field


class ClaimStatus(StrEnum):
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    PARTIAL = "PARTIAL"
    REJECTED = "REJECTED"
    PAID = "PAID"


class ClaimOutcome(StrEnum):
    APPROVED = "APPROVED"
    PARTIAL = "PARTIAL"
    REJECTED = "REJECTED"


class BatchStatus(StrEnum):
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"


class ClaimCreate(BaseModel):
    invoice_id: str


class ClaimGenerateRequest(BaseModel):
    invoice_ids: list[str] = Field(default_factory=list)


class ClaimSubmitRequest(BaseModel):
    payer_reference: Optional[str] = Field(default=None, max_length=64)


class ClaimLineOutcome(BaseModel):
    line_id: str
    status: ClaimOutcome
    approved_cents: Optional[int] = Field(default=None, ge=0)
    notes: Optional[str] = None


class ClaimOutcomeRequest(BaseModel):
    outcome: ClaimOutcome
    approved_cents: Optional[int] = Field(default=None, ge=0)
    notes: Optional[str] = None
    line_outcomes: list[ClaimLineOutcome] = Field(default_factory=list)


class ClaimLineOut(BaseModel):
    id: str
    line_no: int
    invoice_line_id: Optional[str] = None
    support_item_code: str
    support_item_name: str
    category_code: str
    service_date: date
    quantity: float
    unit_price_cents: int
    total_cents: int
    gst_cents: int
    status: str
    approved_cents: Optional[int] = None
    outcome_notes: Optional[str] = None


class ClaimOut(BaseModel):
    id: str
    claim_reference: str
    invoice_id: str
    participant_id: Optional[str] = None
    batch_id: Optional[str] = None
    claimed_cents: int
    approved_cents: Optional[int] = None
    status: ClaimStatus
    payer_reference: Optional[str] = None
    submitted_at: Optional[datetime] = None
    outcome_at: Optional[datetime] = None
    outcome_notes: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    lines: list[ClaimLineOut] = Field(default_factory=list)


class ClaimListResponse(BaseModel):
    items: list[ClaimOut]


class BatchCreate(BaseModel):
    claim_ids: list[str] = Field(..., min_length=1)
    notes: Optional[str] = None


class BatchSubmitRequest(BaseModel):
    payer_batch_id: Optional[str] = Field(default=None, max_length=64)


class BatchOut(BaseModel):
    id: str
    batch_number: str
    status: BatchStatus
    claim_count: int
    total_cents: int
    notes: Optional[str] = None
    payer_batch_id: Optional[str] = None
    submitted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    claim_ids: list[str] = Field(default_factory=list)
