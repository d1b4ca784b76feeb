"""
Inbound invoice email pipeline.

Intake turns a stored ``.eml`` artifact into a draft invoice and an OCR job.
Completion reads the finished job, applies the heuristics and hands the
invoice to staff review.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from email import message_from_bytes, policy
from email.utils import parseaddr
from typing import Any, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from claimflow.core.storage import InvoiceStorage, build_no_attachment_path
from claimflow.models.invoice import Invoice, InvoiceLine, Provider
from claimflow.schemas.events import EventType
from claimflow.schemas.invoice import IngestSource, InvoiceStatus
from claimflow.services.errors import InvalidStatus
from claimflow.services.event_outbox import emit_event
from claimflow.services.extraction.contracts import ExtractedInvoiceData
from claimflow.services.extraction.heuristics import extract_invoice_data, format_abn
from claimflow.services.extraction.ocr_client import OcrClient
from claimflow.services.invoice_service import invoice_event_payload, load_invoice
from claimflow.services.transition_service import (
    SYSTEM_ACTOR,
    SYSTEM_ENTITY_ID,
    Actor,
    _now_utc,
    apply_invoice_transition,
    create_audit_log,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_INVOICE_NUMBER = "PENDING"


@dataclass
class PdfAttachment:
    filename: str
    content: bytes


@dataclass
class IngestResult:
    status: str
    invoice: Optional[Invoice] = None


def _is_pdf(content_type: str, filename: Optional[str]) -> bool:
    return content_type == "application/pdf" or (filename or "").lower().endswith(".pdf")


def find_pdf_attachment(raw: bytes) -> tuple[Optional[str], Optional[PdfAttachment]]:
    """Returns (sender address, first PDF attachment)."""
    message = message_from_bytes(raw, policy=policy.default)
    sender = parseaddr(str(message.get("From") or ""))[1].strip().lower() or None

    for part in message.walk():
        if part.is_multipart():
            continue
        filename = part.get_filename()
        if not _is_pdf(part.get_content_type(), filename):
            continue
        content = part.get_payload(decode=True)
        if content:
            return sender, PdfAttachment(filename=filename or "invoice.pdf", content=content)
    return sender, None


def _find_existing_draft(db: Session, source_key: str) -> Optional[Invoice]:
    return (
        db.execute(
            select(Invoice).where(
                Invoice.ingest_source == IngestSource.EMAIL.value,
                Invoice.ai_raw_data["source_key"].as_string() == source_key,
            )
        )
        .scalars()
        .first()
    )


async def ingest_email(
    db: Session,
    *,
    bucket: str,
    key: str,
    storage: InvoiceStorage,
    ocr: OcrClient,
    actor: Actor = SYSTEM_ACTOR,
) -> IngestResult:
    source_key = f"{bucket}/{key}"
    existing = _find_existing_draft(db, source_key)
    if existing is not None:
        logger.info("Email artifact %s already ingested as invoice %s", source_key, existing.id)
        return IngestResult(status="PROCESSED", invoice=existing)
    if storage.exists(bucket, build_no_attachment_path(key)):
        logger.info("Email artifact %s already set aside as having no attachment", source_key)
        return IngestResult(status="NO_ATTACHMENT")

    raw = storage.download(bucket, key)
    sender, attachment = find_pdf_attachment(raw)

    if attachment is None:
        copied_to = storage.copy_to_no_attachment(bucket, key)
        create_audit_log(
            db,
            entity_type="system",
            entity_id=SYSTEM_ENTITY_ID,
            action="EMAIL_NO_ATTACHMENT",
            old_value=None,
            new_value=None,
            metadata={"source_key": source_key, "copied_to": copied_to},
            **actor.audit_fields(),
        )
        logger.info("Email %s has no PDF attachment; copied to %s", source_key, copied_to)
        return IngestResult(status="NO_ATTACHMENT")

    pdf_bucket, pdf_path = storage.upload_pdf(attachment.content)
    job_id = await ocr.start_job(pdf_bucket, pdf_path)

    now = _now_utc(db)
    invoice = Invoice(
        invoice_number=PLACEHOLDER_INVOICE_NUMBER,
        invoice_date=now.date(),
        subtotal_cents=0,
        gst_cents=0,
        total_cents=0,
        status=InvoiceStatus.RECEIVED.value,
        status_changed_at=now,
        ingest_source=IngestSource.EMAIL.value,
        source_email=sender,
        storage_bucket=pdf_bucket,
        storage_path=pdf_path,
        ocr_job_id=job_id,
        ai_raw_data={"source_key": source_key, "attachment_filename": attachment.filename},
        row_version=1,
    )
    db.add(invoice)
    db.flush()

    create_audit_log(
        db,
        entity_type="invoice",
        entity_id=str(invoice.id),
        action="EMAIL_RECEIVED",
        old_value=None,
        new_value={"status": invoice.status, "storage_path": pdf_path, "ocr_job_id": job_id},
        metadata={"source_key": source_key},
        **actor.audit_fields(),
    )
    apply_invoice_transition(db, invoice=invoice, new_status=InvoiceStatus.PROCESSING, actor=actor)
    emit_event(
        db,
        EventType.INVOICE_EMAIL_RECEIVED,
        invoice_event_payload(invoice, ocr_job_id=job_id),
        entity_type="invoice",
        entity_id=str(invoice.id),
    )
    return IngestResult(status="PROCESSED", invoice=invoice)


def _find_provider_by_abn(db: Session, abn: str) -> Optional[Provider]:
    return (
        db.execute(select(Provider).where(or_(Provider.abn == abn, Provider.abn == format_abn(abn))))
        .scalars()
        .first()
    )


def apply_extraction(db: Session, invoice: Invoice, data: ExtractedInvoiceData) -> None:
    if data.provider_abn:
        provider = _find_provider_by_abn(db, data.provider_abn)
        if provider is not None:
            invoice.provider_id = provider.id

    invoice.lines.clear()
    db.flush()
    for line_no, item in enumerate(data.line_items, start=1):
        invoice.lines.append(InvoiceLine(line_no=line_no, **item.model_dump()))

    if data.invoice_number:
        invoice.invoice_number = data.invoice_number
    if data.invoice_date:
        invoice.invoice_date = data.invoice_date
    if data.total_cents is not None:
        invoice.subtotal_cents = data.subtotal_cents
        invoice.gst_cents = data.gst_cents
        invoice.total_cents = data.total_cents

    invoice.ai_confidence = data.confidence
    invoice.ai_extracted_at = _now_utc(db)
    invoice.ai_raw_data = {**(invoice.ai_raw_data or {}), "extraction": data.summary()}


async def complete_extraction(
    db: Session,
    *,
    job_id: str,
    invoice_id: Any,
    ocr: OcrClient,
    actor: Actor = SYSTEM_ACTOR,
) -> dict[str, Any]:
    invoice = load_invoice(db, invoice_id, for_update=True)
    # A repeated callback must never overwrite an invoice already under review.
    if invoice.status != InvoiceStatus.PROCESSING.value or invoice.ocr_job_id != job_id:
        raise InvalidStatus("Invoice is not awaiting this OCR job")

    blocks = await ocr.get_job_blocks(job_id)
    data = extract_invoice_data(blocks)
    apply_extraction(db, invoice, data)

    apply_invoice_transition(db, invoice=invoice, new_status=InvoiceStatus.PENDING_REVIEW, actor=actor)
    create_audit_log(
        db,
        entity_type="invoice",
        entity_id=str(invoice.id),
        action="EXTRACTION_COMPLETE",
        old_value=None,
        new_value=data.summary(),
        metadata={"ocr_job_id": job_id},
        **actor.audit_fields(),
    )
    emit_event(
        db,
        EventType.INVOICE_EXTRACTION_COMPLETE,
        invoice_event_payload(invoice, confidence=data.confidence, line_item_count=len(data.line_items)),
        entity_type="invoice",
        entity_id=str(invoice.id),
    )
    logger.info(
        "Extraction complete for invoice %s: confidence=%s lines=%s",
        invoice.id,
        data.confidence,
        len(data.line_items),
    )
    return {
        "invoice_id": str(invoice.id),
        "status": invoice.status,
        "invoice_number": invoice.invoice_number,
        "confidence": data.confidence,
        "line_item_count": len(data.line_items),
    }
