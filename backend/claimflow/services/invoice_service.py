import logging
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from claimflow.models.invoice import Invoice, InvoiceLine, Participant, Provider
from claimflow.schemas.events import EventType
from claimflow.schemas.invoice import IngestSource, InvoiceCreate, InvoiceStatus
from claimflow.services.errors import InvalidStatus, NotFound, ValidationFailed
from claimflow.services.event_outbox import emit_event
from claimflow.services.transition_service import (
    Actor,
    _now_utc,
    _with_for_update_if_supported,
    apply_invoice_transition,
    create_audit_log,
    parse_id,
)

logger = logging.getLogger(__name__)


def invoice_event_payload(invoice: Invoice, **extra: Any) -> dict[str, Any]:
    payload = {
        "invoice_id": str(invoice.id),
        "status": invoice.status,
        "participant_id": str(invoice.participant_id) if invoice.participant_id else None,
        "provider_id": str(invoice.provider_id) if invoice.provider_id else None,
        "total_cents": int(invoice.total_cents or 0),
        "row_version": int(invoice.row_version or 0),
    }
    payload.update(extra)
    return payload


def load_invoice(db: Session, invoice_id: Any, *, for_update: bool = False) -> Invoice:
    stmt = select(Invoice).where(Invoice.id == parse_id(invoice_id, label="Invoice"))
    if for_update:
        stmt = _with_for_update_if_supported(stmt, db)
    invoice = db.execute(stmt).scalar_one_or_none()
    if invoice is None:
        raise NotFound("Invoice not found")
    return invoice


def get_invoice(db: Session, invoice_id: Any) -> Invoice:
    return load_invoice(db, invoice_id)


def list_invoices(
    db: Session,
    *,
    status: Optional[InvoiceStatus] = None,
    participant_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Invoice], int]:
    stmt = select(Invoice)
    if status is not None:
        stmt = stmt.where(Invoice.status == status.value)
    if participant_id:
        stmt = stmt.where(Invoice.participant_id == parse_id(participant_id, label="Participant"))

    total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    rows = (
        db.execute(
            stmt.options(selectinload(Invoice.lines))
            .order_by(Invoice.created_at.desc(), Invoice.id)
            .limit(max(1, min(limit, 200)))
            .offset(max(0, offset))
        )
        .scalars()
        .all()
    )
    return list(rows), int(total)


def create_manual_invoice(db: Session, data: InvoiceCreate, actor: Actor) -> Invoice:
    if data.total_cents != data.subtotal_cents + data.gst_cents:
        raise ValidationFailed("total_cents must equal subtotal_cents + gst_cents")
    participant = db.get(Participant, parse_id(data.participant_id, label="Participant"))
    if participant is None:
        raise NotFound("Participant not found")
    provider = db.get(Provider, parse_id(data.provider_id, label="Provider"))
    if provider is None:
        raise NotFound("Provider not found")

    invoice = Invoice(
        participant_id=participant.id,
        provider_id=provider.id,
        plan_id=parse_id(data.plan_id, label="Plan") if data.plan_id else None,
        budget_line_id=parse_id(data.budget_line_id, label="Budget line") if data.budget_line_id else None,
        invoice_number=data.invoice_number,
        invoice_date=data.invoice_date,
        subtotal_cents=data.subtotal_cents,
        gst_cents=data.gst_cents,
        total_cents=data.total_cents,
        status=InvoiceStatus.PENDING_REVIEW.value,
        status_changed_at=_now_utc(db),
        ingest_source=IngestSource.MANUAL.value,
        row_version=1,
    )
    for line_no, line in enumerate(data.lines, start=1):
        invoice.lines.append(InvoiceLine(line_no=line_no, **line.model_dump()))
    db.add(invoice)
    db.flush()

    create_audit_log(
        db,
        entity_type="invoice",
        entity_id=str(invoice.id),
        action="INVOICE_CREATED",
        old_value=None,
        new_value={
            "status": invoice.status,
            "invoice_number": invoice.invoice_number,
            "total_cents": invoice.total_cents,
            "line_count": len(invoice.lines),
        },
        **actor.audit_fields(),
    )
    emit_event(
        db,
        EventType.INVOICE_CREATED,
        invoice_event_payload(invoice, ingest_source=invoice.ingest_source),
        entity_type="invoice",
        entity_id=str(invoice.id),
    )
    return invoice


def _require_pending_review(invoice: Invoice, action: str) -> None:
    if invoice.status != InvoiceStatus.PENDING_REVIEW.value:
        raise InvalidStatus(f"Cannot {action} an invoice in status {invoice.status}")


def approve_invoice(db: Session, invoice_id: Any, actor: Actor) -> Invoice:
    invoice = load_invoice(db, invoice_id, for_update=True)
    _require_pending_review(invoice, "approve")

    apply_invoice_transition(db, invoice=invoice, new_status=InvoiceStatus.APPROVED, actor=actor)
    invoice.approved_by_id = actor.actor_id
    invoice.approved_at = invoice.status_changed_at

    emit_event(
        db,
        EventType.INVOICE_APPROVED,
        invoice_event_payload(invoice, approved_by_id=actor.actor_id),
        entity_type="invoice",
        entity_id=str(invoice.id),
    )
    return invoice


def reject_invoice(db: Session, invoice_id: Any, actor: Actor, reason: Optional[str]) -> Invoice:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationFailed("A rejection reason is required")

    invoice = load_invoice(db, invoice_id, for_update=True)
    _require_pending_review(invoice, "reject")

    apply_invoice_transition(
        db,
        invoice=invoice,
        new_status=InvoiceStatus.REJECTED,
        actor=actor,
        metadata={"reason": reason},
    )
    invoice.rejected_by_id = actor.actor_id
    invoice.rejected_at = invoice.status_changed_at
    invoice.rejection_reason = reason

    emit_event(
        db,
        EventType.INVOICE_REJECTED,
        invoice_event_payload(invoice, reason=reason),
        entity_type="invoice",
        entity_id=str(invoice.id),
    )
    return invoice
