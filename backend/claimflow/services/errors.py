"""
Domain error taxonomy for the invoice-to-claim pipeline.

Services raise these; ``main.py`` renders them as ``{"detail", "code"}`` with
the class's HTTP status, and bulk runners report the class name per item.
"""

from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    status_code = 400
    code = "ERROR"
    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationFailed(PipelineError):
    code = "VALIDATION_ERROR"
    default_message = "Validation failed"


class NotFound(PipelineError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Not found"


class Conflict(PipelineError):
    status_code = 409
    code = "CONFLICT"
    default_message = "Conflict"


class InvalidStatus(PipelineError):
    status_code = 422
    code = "INVALID_STATUS"
    default_message = "Operation not allowed in the current status"


class ApprovalNotEnabled(PipelineError):
    status_code = 422
    code = "APPROVAL_NOT_ENABLED"
    default_message = "Participant approval not enabled for this participant"


# --- Approval token protocol ---


class InvalidFormat(PipelineError):
    code = "INVALID_TOKEN"
    default_message = "Invalid token format"


class InvalidSignature(PipelineError):
    code = "INVALID_TOKEN"
    default_message = "Invalid token signature"


class TokenExpired(PipelineError):
    status_code = 410
    code = "TOKEN_EXPIRED"
    default_message = "Token has expired"


class TokenAlreadyUsed(PipelineError):
    status_code = 409
    code = "TOKEN_USED"
    default_message = "Token has already been used"


class InvoiceNotPendingApproval(PipelineError):
    status_code = 422
    code = "INVALID_STATE"
    default_message = "Invoice is not pending participant approval"


# --- Capacity ledger ---


class InsufficientBudgetCapacity(PipelineError):
    status_code = 422
    code = "INSUFFICIENT_BUDGET_CAPACITY"
    default_message = "Insufficient budget capacity"


class QuarantineNotActive(PipelineError):
    status_code = 422
    code = "QUARANTINE_NOT_ACTIVE"
    default_message = "Quarantine is not active"


class DrawDownExceedsQuarantine(PipelineError):
    status_code = 422
    code = "DRAW_DOWN_EXCEEDS_QUARANTINE"
    default_message = "Draw-down exceeds quarantined amount"


class BudgetLineConflict(Conflict):
    code = "BUDGET_LINE_CONFLICT"
    default_message = "Budget line changed concurrently, retry"


# --- Claims ---


class InvoiceNotApproved(PipelineError):
    status_code = 422
    code = "INVOICE_NOT_APPROVED"
    default_message = "Invoice must be approved before creating a claim"


class ClaimAlreadyExists(Conflict):
    code = "CLAIM_EXISTS"
    default_message = "A claim already exists for this invoice"


# --- Extraction pipeline ---


class JobPending(PipelineError):
    """Retry signal, not a failure: the OCR job has not finished yet."""

    status_code = 202
    code = "JOB_PENDING"
    default_message = "OCR job is not yet complete"


class OcrJobFailed(PipelineError):
    status_code = 502
    code = "OCR_JOB_FAILED"
    default_message = "OCR job failed"


class OcrUnavailable(PipelineError):
    status_code = 502
    code = "OCR_UNAVAILABLE"
    default_message = "OCR service unavailable"


class StorageUnavailable(PipelineError):
    status_code = 502
    code = "STORAGE_ERROR"
    default_message = "Storage unavailable"
