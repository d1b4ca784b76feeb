"""Typed shapes exchanged with the OCR service and produced by the heuristics."""

from datetime import date
from decimal import Decimal
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class OcrJobStatus(StrEnum):
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    PARTIAL_SUCCESS = "PARTIAL_SUCCESS"
    FAILED = "FAILED"


class OcrBlock(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    block_type: str = Field(alias="blockType")
    text: Optional[str] = None
    confidence: Optional[float] = None


class OcrJobPage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: str
    status_message: Optional[str] = Field(default=None, alias="statusMessage")
    blocks: list[OcrBlock] = Field(default_factory=list)
    next_token: Optional[str] = Field(default=None, alias="nextToken")


class ExtractedLineItem(BaseModel):
    support_item_code: str
    support_item_name: str
    category_code: str
    service_date: date
    quantity: Decimal = Decimal("1")
    unit_price_cents: int
    total_cents: int
    gst_cents: int = 0


class ExtractedInvoiceData(BaseModel):
    """Heuristic read of an invoice. ``None`` means "not found", left for the reviewer."""

    invoice_number: Optional[str] = None
    invoice_date: Optional[date] = None
    subtotal_cents: Optional[int] = None
    gst_cents: Optional[int] = None
    total_cents: Optional[int] = None
    provider_abn: Optional[str] = None
    line_items: list[ExtractedLineItem] = Field(default_factory=list)
    confidence: float = 0.0

    def summary(self) -> dict:
        return {
            "invoice_number": self.invoice_number,
            "invoice_date": self.invoice_date.isoformat() if self.invoice_date else None,
            "subtotal_cents": self.subtotal_cents,
            "gst_cents": self.gst_cents,
            "total_cents": self.total_cents,
            "provider_abn": self.provider_abn,
            "line_item_count": len(self.line_items),
            "confidence": self.confidence,
        }
