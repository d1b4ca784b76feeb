from enum import StrEnum


class EventType(StrEnum):
    """Domain events published to the rule engine through the outbox."""

    INVOICE_EMAIL_RECEIVED = "invoices.email-received"
    INVOICE_EXTRACTION_COMPLETE = "invoices.extraction-complete"
    INVOICE_CREATED = "invoices.created"
    INVOICE_APPROVED = "invoices.approved"
    INVOICE_REJECTED = "invoices.rejected"
    INVOICE_APPROVAL_REQUESTED = "invoices.approval-requested"
    INVOICE_PARTICIPANT_APPROVED = "invoices.participant-approved"
    INVOICE_PARTICIPANT_REJECTED = "invoices.participant-rejected"
    INVOICE_APPROVAL_SKIPPED = "invoices.approval-skipped"
    CLAIM_CREATED = "claims.created"
    CLAIM_SUBMITTED = "claims.submitted"
    CLAIM_OUTCOME_RECORDED = "claims.outcome-recorded"
    CLAIM_PAID = "claims.paid"
    CLAIM_BATCH_SUBMITTED = "claims.batch-submitted"
    FUND_QUARANTINE_CREATED = "fund-quarantine.created"
    FUND_QUARANTINE_RELEASED = "fund-quarantine.released"
    FUND_QUARANTINE_THRESHOLD_REACHED = "fund-quarantine.threshold-reached"
