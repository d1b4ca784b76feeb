import logging
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from claimflow.models.invoice import Claim, ClaimBatch, ClaimLine, Invoice
from claimflow.schemas.claims import BatchStatus, ClaimLineOutcome, ClaimOutcome, ClaimStatus
from claimflow.schemas.events import EventType
from claimflow.schemas.invoice import InvoiceStatus
from claimflow.services.errors import (
    ClaimAlreadyExists,
    Conflict,
    InvalidStatus,
    InvoiceNotApproved,
    NotFound,
    PipelineError,
    ValidationFailed,
)
from claimflow.services.event_outbox import emit_event
from claimflow.services.invoice_service import load_invoice
from claimflow.services.transition_service import (
    Actor,
    _now_utc,
    _with_for_update_if_supported,
    apply_invoice_transition,
    create_audit_log,
    parse_id,
)

logger = logging.getLogger(__name__)


# ─── Partial-success bulk runner ──────────────────────────


def run_bulk(db: Session, item_ids: Sequence[str], operation: Callable[[Session, str], Any]) -> dict[str, list]:
    """Apply ``operation`` to each id in its own transaction.

    Failures are collected per item by exception class name; one bad item
    never rolls back another. Only an empty id list fails the whole call.
    """
    if not item_ids:
        raise ValidationFailed("At least one id is required")

    succeeded: list[str] = []
    failed: list[dict[str, str]] = []
    for item_id in item_ids:
        try:
            operation(db, item_id)
            db.commit()
        except PipelineError as exc:
            db.rollback()
            failed.append({"id": str(item_id), "error": type(exc).__name__})
            continue
        except IntegrityError:
            db.rollback()
            failed.append({"id": str(item_id), "error": Conflict.__name__})
            continue
        except Exception:
            db.rollback()
            logger.exception("Bulk operation failed for item %s", item_id)
            failed.append({"id": str(item_id), "error": "InternalError"})
            continue
        succeeded.append(str(item_id))

    logger.info("Bulk run finished: succeeded=%s failed=%s", len(succeeded), len(failed))
    return {"succeeded": succeeded, "failed": failed}


# ─── References ──────────────────────────────────────────


def _next_reference(db: Session, column, prefix: str) -> str:
    latest = db.execute(
        select(column).where(column.like(f"{prefix}%")).order_by(column.desc()).limit(1)
    ).scalar_one_or_none()
    seq = 0
    if latest:
        try:
            seq = int(latest[len(prefix):])
        except ValueError:
            seq = 0
    return f"{prefix}{seq + 1:04d}"


def next_claim_reference(db: Session, now: Optional[datetime] = None) -> str:
    now = now or _now_utc(db)
    return _next_reference(db, Claim.claim_reference, f"CLM-{now:%Y%m%d}-")


def next_batch_number(db: Session, now: Optional[datetime] = None) -> str:
    now = now or _now_utc(db)
    return _next_reference(db, ClaimBatch.batch_number, f"BATCH-{now:%Y}-")


# ─── Claims ──────────────────────────────────────────────


def _claim_payload(claim: Claim, **extra: Any) -> dict[str, Any]:
    payload = {
        "claim_id": str(claim.id),
        "claim_reference": claim.claim_reference,
        "invoice_id": str(claim.invoice_id),
        "participant_id": str(claim.participant_id) if claim.participant_id else None,
        "claimed_cents": int(claim.claimed_cents or 0),
        "approved_cents": claim.approved_cents,
        "status": claim.status,
    }
    payload.update(extra)
    return payload


def load_claim(db: Session, claim_id: Any, *, for_update: bool = False) -> Claim:
    stmt = select(Claim).where(Claim.id == parse_id(claim_id, label="Claim"))
    if for_update:
        stmt = _with_for_update_if_supported(stmt, db)
    claim = db.execute(stmt).scalar_one_or_none()
    if claim is None:
        raise NotFound("Claim not found")
    return claim


def _claim_lines_for(invoice: Invoice) -> list[ClaimLine]:
    if not invoice.lines:
        # Invoice captured without lines: claim the whole total as one line.
        return [
            ClaimLine(
                line_no=1,
                invoice_line_id=None,
                support_item_code="UNSPECIFIED",
                support_item_name=f"Invoice {invoice.invoice_number}",
                category_code="00",
                service_date=invoice.invoice_date,
                quantity=1,
                unit_price_cents=int(invoice.total_cents or 0),
                total_cents=int(invoice.total_cents or 0),
                gst_cents=int(invoice.gst_cents or 0),
            )
        ]
    return [
        ClaimLine(
            line_no=line.line_no,
            invoice_line_id=line.id,
            support_item_code=line.support_item_code,
            support_item_name=line.support_item_name,
            category_code=line.category_code,
            service_date=line.service_date,
            quantity=line.quantity,
            unit_price_cents=line.unit_price_cents,
            total_cents=line.total_cents,
            gst_cents=line.gst_cents or 0,
        )
        for line in invoice.lines
    ]


def create_claim_from_invoice(db: Session, invoice_id: Any, actor: Actor) -> Claim:
    invoice = load_invoice(db, invoice_id, for_update=True)
    if invoice.status != InvoiceStatus.APPROVED.value:
        raise InvoiceNotApproved(f"Invoice is {invoice.status}, expected APPROVED")
    existing = db.execute(select(Claim.id).where(Claim.invoice_id == invoice.id)).scalar_one_or_none()
    if existing is not None:
        raise ClaimAlreadyExists()

    lines = _claim_lines_for(invoice)
    claim = Claim(
        claim_reference=next_claim_reference(db),
        invoice_id=invoice.id,
        participant_id=invoice.participant_id,
        claimed_cents=sum(int(line.total_cents) for line in lines),
        status=ClaimStatus.PENDING.value,
        created_by_id=actor.actor_id,
    )
    claim.lines.extend(lines)
    db.add(claim)
    db.flush()

    apply_invoice_transition(
        db,
        invoice=invoice,
        new_status=InvoiceStatus.CLAIMED,
        actor=actor,
        metadata={"claim_id": str(claim.id)},
    )
    create_audit_log(
        db,
        entity_type="claim",
        entity_id=str(claim.id),
        action="CLAIM_CREATED",
        old_value=None,
        new_value={
            "claim_reference": claim.claim_reference,
            "invoice_id": str(invoice.id),
            "claimed_cents": claim.claimed_cents,
            "line_count": len(lines),
        },
        **actor.audit_fields(),
    )
    emit_event(db, EventType.CLAIM_CREATED, _claim_payload(claim), entity_type="claim", entity_id=str(claim.id))
    return claim


def generate_claim_batch(db: Session, invoice_ids: Sequence[str], actor: Actor) -> dict[str, list]:
    return run_bulk(db, invoice_ids, lambda session, invoice_id: create_claim_from_invoice(session, invoice_id, actor))


def submit_claim(db: Session, claim_id: Any, payer_reference: Optional[str], actor: Actor) -> Claim:
    claim = load_claim(db, claim_id, for_update=True)
    if claim.status != ClaimStatus.PENDING.value:
        raise InvalidStatus(f"Only PENDING claims can be submitted (current: {claim.status})")

    claim.status = ClaimStatus.SUBMITTED.value
    claim.submitted_at = _now_utc(db)
    claim.submitted_by_id = actor.actor_id
    claim.payer_reference = payer_reference

    create_audit_log(
        db,
        entity_type="claim",
        entity_id=str(claim.id),
        action="CLAIM_SUBMITTED",
        old_value={"status": ClaimStatus.PENDING.value},
        new_value={"status": claim.status, "payer_reference": payer_reference},
        **actor.audit_fields(),
    )
    emit_event(db, EventType.CLAIM_SUBMITTED, _claim_payload(claim), entity_type="claim", entity_id=str(claim.id))
    return claim


def _apply_line_outcomes(claim: Claim, outcomes: Sequence[ClaimLineOutcome]) -> None:
    lines_by_id = {str(line.id): line for line in claim.lines}
    for outcome in outcomes:
        line = lines_by_id.get(outcome.line_id)
        if line is None:
            raise NotFound(f"Claim line {outcome.line_id} not found on this claim")
        approved = outcome.approved_cents
        if outcome.status == ClaimOutcome.APPROVED and approved is None:
            approved = int(line.total_cents)
        if outcome.status == ClaimOutcome.REJECTED:
            approved = 0
        if approved is not None and approved > int(line.total_cents):
            raise ValidationFailed("Line approved_cents cannot exceed the line total")
        line.status = outcome.status.value
        line.approved_cents = approved
        line.outcome_notes = outcome.notes


def record_claim_outcome(
    db: Session,
    claim_id: Any,
    outcome: ClaimOutcome,
    actor: Actor,
    *,
    approved_cents: Optional[int] = None,
    notes: Optional[str] = None,
    line_outcomes: Sequence[ClaimLineOutcome] = (),
) -> Claim:
    claim = load_claim(db, claim_id, for_update=True)
    if claim.status != ClaimStatus.SUBMITTED.value:
        raise InvalidStatus("Only submitted claims can have outcomes recorded")

    outcome = ClaimOutcome(outcome)
    claimed = int(claim.claimed_cents)
    if outcome == ClaimOutcome.APPROVED:
        approved = claimed if approved_cents is None else approved_cents
    elif outcome == ClaimOutcome.REJECTED:
        approved = 0
    else:
        if approved_cents is None:
            raise ValidationFailed("approved_cents is required for a PARTIAL outcome")
        approved = approved_cents
    if approved < 0 or approved > claimed:
        raise ValidationFailed("approved_cents must be between 0 and the claimed amount")

    _apply_line_outcomes(claim, line_outcomes)

    claim.status = outcome.value
    claim.approved_cents = approved
    claim.outcome_at = _now_utc(db)
    claim.outcome_notes = notes
    claim.outcome_by_id = actor.actor_id

    create_audit_log(
        db,
        entity_type="claim",
        entity_id=str(claim.id),
        action="CLAIM_OUTCOME_RECORDED",
        old_value={"status": ClaimStatus.SUBMITTED.value},
        new_value={"status": claim.status, "approved_cents": approved, "line_outcomes": len(line_outcomes)},
        **actor.audit_fields(),
    )
    emit_event(
        db,
        EventType.CLAIM_OUTCOME_RECORDED,
        _claim_payload(claim, outcome=outcome.value),
        entity_type="claim",
        entity_id=str(claim.id),
    )
    return claim


def record_claim_payment(db: Session, claim_id: Any, actor: Actor) -> Claim:
    claim = load_claim(db, claim_id, for_update=True)
    if claim.status not in {ClaimStatus.APPROVED.value, ClaimStatus.PARTIAL.value}:
        raise InvalidStatus(f"Only APPROVED or PARTIAL claims can be paid (current: {claim.status})")

    invoice = load_invoice(db, claim.invoice_id, for_update=True)
    apply_invoice_transition(
        db,
        invoice=invoice,
        new_status=InvoiceStatus.PAID,
        actor=actor,
        metadata={"claim_id": str(claim.id)},
    )
    previous = claim.status
    claim.status = ClaimStatus.PAID.value
    claim.paid_at = _now_utc(db)

    create_audit_log(
        db,
        entity_type="claim",
        entity_id=str(claim.id),
        action="CLAIM_PAID",
        old_value={"status": previous},
        new_value={"status": claim.status, "approved_cents": claim.approved_cents},
        **actor.audit_fields(),
    )
    emit_event(db, EventType.CLAIM_PAID, _claim_payload(claim), entity_type="claim", entity_id=str(claim.id))
    return claim


def list_claims_ready_for_payment(db: Session) -> list[Claim]:
    return list(
        db.execute(
            select(Claim)
            .options(selectinload(Claim.lines))
            .where(
                Claim.status.in_([ClaimStatus.APPROVED.value, ClaimStatus.PARTIAL.value]),
                Claim.approved_cents > 0,
            )
            .order_by(Claim.outcome_at.asc(), Claim.claim_reference)
        )
        .scalars()
        .all()
    )


# ─── Batches ─────────────────────────────────────────────


def create_batch(db: Session, claim_ids: Sequence[str], notes: Optional[str], actor: Actor) -> ClaimBatch:
    if not claim_ids:
        raise ValidationFailed("At least one claim is required")
    ids = list(dict.fromkeys(parse_id(claim_id, label="Claim") for claim_id in claim_ids))
    claims = (
        db.execute(_with_for_update_if_supported(select(Claim).where(Claim.id.in_(ids)), db)).scalars().all()
    )
    found = {claim.id for claim in claims}
    missing = [claim_id for claim_id in ids if claim_id not in found]
    if missing:
        raise NotFound(f"Claim not found: {missing[0]}")
    for claim in claims:
        if claim.status != ClaimStatus.PENDING.value:
            raise InvalidStatus(f"Claim {claim.claim_reference} is {claim.status}, expected PENDING")
        if claim.batch_id is not None:
            raise Conflict(f"Claim {claim.claim_reference} already belongs to a batch")

    batch = ClaimBatch(
        batch_number=next_batch_number(db),
        status=BatchStatus.PENDING.value,
        claim_count=len(claims),
        total_cents=sum(int(claim.claimed_cents) for claim in claims),
        notes=notes,
        created_by_id=actor.actor_id,
    )
    db.add(batch)
    db.flush()
    for claim in claims:
        claim.batch_id = batch.id

    create_audit_log(
        db,
        entity_type="claim_batch",
        entity_id=str(batch.id),
        action="CLAIM_BATCH_CREATED",
        old_value=None,
        new_value={
            "batch_number": batch.batch_number,
            "claim_count": batch.claim_count,
            "total_cents": batch.total_cents,
        },
        **actor.audit_fields(),
    )
    return batch


def load_batch(db: Session, batch_id: Any) -> ClaimBatch:
    stmt = _with_for_update_if_supported(
        select(ClaimBatch).where(ClaimBatch.id == parse_id(batch_id, label="Batch")), db
    )
    batch = db.execute(stmt).scalar_one_or_none()
    if batch is None:
        raise NotFound("Batch not found")
    return batch


def submit_batch(db: Session, batch_id: Any, payer_batch_id: Optional[str], actor: Actor) -> ClaimBatch:
    """Submit every claim in the batch, or none of them."""
    batch = load_batch(db, batch_id)
    if batch.status != BatchStatus.PENDING.value:
        raise InvalidStatus(f"Only PENDING batches can be submitted (current: {batch.status})")

    claims = list(batch.claims)
    if not claims:
        raise InvalidStatus("Batch has no claims")
    not_pending = [claim for claim in claims if claim.status != ClaimStatus.PENDING.value]
    if not_pending:
        raise InvalidStatus(
            f"Claim {not_pending[0].claim_reference} is {not_pending[0].status}; all claims must be PENDING"
        )

    now = _now_utc(db)
    for claim in claims:
        claim.status = ClaimStatus.SUBMITTED.value
        claim.submitted_at = now
        claim.submitted_by_id = actor.actor_id
    batch.status = BatchStatus.SUBMITTED.value
    batch.submitted_at = now
    batch.submitted_by_id = actor.actor_id
    batch.payer_batch_id = payer_batch_id

    create_audit_log(
        db,
        entity_type="claim_batch",
        entity_id=str(batch.id),
        action="CLAIM_BATCH_SUBMITTED",
        old_value={"status": BatchStatus.PENDING.value},
        new_value={"status": batch.status, "claim_count": len(claims), "payer_batch_id": payer_batch_id},
        **actor.audit_fields(),
    )
    emit_event(
        db,
        EventType.CLAIM_BATCH_SUBMITTED,
        {
            "batch_id": str(batch.id),
            "batch_number": batch.batch_number,
            "claim_ids": [str(claim.id) for claim in claims],
            "total_cents": int(batch.total_cents or 0),
        },
        entity_type="claim_batch",
        entity_id=str(batch.id),
    )
    return batch
