from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator


class InvoiceStatus(StrEnum):
    RECEIVED = "RECEIVED"
    PROCESSING = "PROCESSING"
    PENDING_REVIEW = "PENDING_REVIEW"
    PENDING_PARTICIPANT_APPROVAL = "PENDING_PARTICIPANT_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CLAIMED = "CLAIMED"
    PAID = "PAID"


class IngestSource(StrEnum):
    MANUAL = "MANUAL"
    EMAIL = "EMAIL"


class ParticipantApprovalStatus(StrEnum):
    NOT_REQUIRED = "NOT_REQUIRED"
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    SKIPPED = "SKIPPED"


class ApprovalMethod(StrEnum):
    APP = "APP"
    EMAIL = "EMAIL"
    SMS = "SMS"


class ApprovalDecision(StrEnum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class BulkAction(StrEnum):
    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_APPROVAL = "request-approval"
    CLAIM = "claim"


class InvoiceLineIn(BaseModel):
    support_item_code: str = Field(..., min_length=1, max_length=32)
    support_item_name: str = Field(..., min_length=1, max_length=255)
    category_code: str = Field(..., min_length=1, max_length=8)
    service_date: date
    quantity: Decimal = Field(default=Decimal("1"), gt=0)
    unit_price_cents: int = Field(..., ge=0)
    total_cents: int = Field(..., ge=0)
    gst_cents: int = Field(default=0, ge=0)


class InvoiceCreate(BaseModel):
    participant_id: str
    provider_id: str
    plan_id: Optional[str] = None
    budget_line_id: Optional[str] = None
    invoice_number: str = Field(..., min_length=1, max_length=64)
    invoice_date: date
    subtotal_cents: int = Field(..., ge=0)
    gst_cents: int = Field(default=0, ge=0)
    total_cents: int = Field(..., ge=0)
    lines: list[InvoiceLineIn] = Field(default_factory=list)

    @model_validator(mode="after")
    def ensure_total_matches(self):
        if self.total_cents != self.subtotal_cents + self.gst_cents:
            raise ValueError("total_cents must equal subtotal_cents + gst_cents")
        return self


class InvoiceLineOut(BaseModel):
    id: str
    line_no: int
    support_item_code: str
    support_item_name: str
    category_code: str
    service_date: date
    quantity: float
    unit_price_cents: int
    total_cents: int
    gst_cents: int


class InvoiceOut(BaseModel):
    id: str
    participant_id: Optional[str] = None
    provider_id: Optional[str] = None
    plan_id: Optional[str] = None
    budget_line_id: Optional[str] = None
    invoice_number: str
    invoice_date: date
    subtotal_cents: int
    gst_cents: int
    total_cents: int
    status: InvoiceStatus
    ingest_source: IngestSource
    source_email: Optional[str] = None
    storage_bucket: Optional[str] = None
    storage_path: Optional[str] = None
    ocr_job_id: Optional[str] = None
    ai_confidence: Optional[float] = None
    ai_extracted_at: Optional[datetime] = None
    ai_raw_data: Optional[dict[str, Any]] = None
    approved_by_id: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by_id: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    participant_approval_status: Optional[ParticipantApprovalStatus] = None
    approval_method: Optional[ApprovalMethod] = None
    approval_token_expires_at: Optional[datetime] = None
    approval_sent_at: Optional[datetime] = None
    participant_approved_at: Optional[datetime] = None
    approval_skipped_at: Optional[datetime] = None
    status_changed_at: Optional[datetime] = None
    row_version: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    lines: list[InvoiceLineOut] = Field(default_factory=list)


class InvoiceListResponse(BaseModel):
    items: list[InvoiceOut]
    total: int


class InvoiceRejectRequest(BaseModel):
    reason: str = ""


class ApprovalRequestResponse(BaseModel):
    invoice_id: str
    status: InvoiceStatus
    approval_method: ApprovalMethod
    approval_token_expires_at: datetime
    token: str
    approval_url: str


class ApprovalDecisionRequest(BaseModel):
    decision: ApprovalDecision


class ApprovalStatusOut(BaseModel):
    invoice_id: str
    status: InvoiceStatus
    participant_approval_status: Optional[ParticipantApprovalStatus] = None
    total_cents: int
    invoice_date: date
    provider_name: Optional[str] = None


class ApprovalDecisionResponse(BaseModel):
    invoice_id: str
    decision: ApprovalDecision
    status: InvoiceStatus


class BulkActionRequest(BaseModel):
    action: BulkAction
    invoice_ids: list[str] = Field(default_factory=list)
    reason: Optional[str] = None


class BulkFailure(BaseModel):
    id: str
    error: str


class BulkResult(BaseModel):
    succeeded: list[str] = Field(default_factory=list)
    failed: list[BulkFailure] = Field(default_factory=list)
