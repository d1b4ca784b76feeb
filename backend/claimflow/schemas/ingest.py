from typing import Literal, Optional

from pydantic import BaseModel, Field


class EmailIngestRequest(BaseModel):
    bucket: str = Field(..., min_length=1, max_length=128)
    key: str = Field(..., min_length=1, max_length=1024)


class EmailIngestResponse(BaseModel):
    status: Literal["PROCESSED", "NO_ATTACHMENT"]
    invoice_id: Optional[str] = None


class OcrCompleteRequest(BaseModel):
    job_id: str = Field(..., min_length=1, max_length=128)
    invoice_id: str = Field(..., min_length=1)


class OcrCompleteResponse(BaseModel):
    invoice_id: str
    status: str
    invoice_number: str
    confidence: float
    line_item_count: int
