"""
Participant approval of invoices via signed, single-use tokens.

The raw token only ever leaves the service in the approval link. The invoice
stores an HMAC of it plus the expiry, and a response is accepted by a single
guarded UPDATE so that a token can be consumed at most once.
"""

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import jwt
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from claimflow.core.config import get_settings
from claimflow.models.invoice import Invoice, Participant
from claimflow.schemas.events import EventType
from claimflow.schemas.invoice import (
    ApprovalDecision,
    ApprovalMethod,
    InvoiceStatus,
    ParticipantApprovalStatus,
)
from claimflow.services.errors import (
    ApprovalNotEnabled,
    InvalidFormat,
    InvalidSignature,
    InvalidStatus,
    InvoiceNotPendingApproval,
    NotFound,
    TokenAlreadyUsed,
    TokenExpired,
)
from claimflow.services.event_outbox import emit_event
from claimflow.services.invoice_service import invoice_event_payload, load_invoice
from claimflow.services.notification_outbox import enqueue_notification
from claimflow.services.transition_service import (
    SYSTEM_ACTOR,
    SYSTEM_ENTITY_ID,
    Actor,
    _as_utc,
    _is_sqlite,
    _now_utc,
    apply_invoice_transition,
    create_audit_log,
    parse_id,
)

logger = logging.getLogger(__name__)

TOKEN_ALGORITHM = "HS256"
REQUIRED_CLAIMS = ("invoiceId", "participantId", "jti", "iat", "exp")

_CHANNEL_BY_METHOD = {
    ApprovalMethod.APP: "in_app",
    ApprovalMethod.EMAIL: "email",
    ApprovalMethod.SMS: "sms",
}


def _secret(secret: Optional[str] = None) -> str:
    value = secret if secret is not None else get_settings().approval_token_secret
    if not value:
        raise RuntimeError("APPROVAL_TOKEN_SECRET is not configured")
    return value


def hash_token(token: str, *, secret: Optional[str] = None) -> str:
    return hmac.new(_secret(secret).encode("utf-8"), token.encode("utf-8"), hashlib.sha256).hexdigest()


def issue_approval_token(
    invoice_id: str,
    participant_id: str,
    *,
    now: Optional[datetime] = None,
    ttl_hours: Optional[int] = None,
    secret: Optional[str] = None,
) -> tuple[str, datetime]:
    """Returns (token, expires_at) with ``expires_at`` timezone-aware."""
    issued_at = _as_utc(now) or datetime.now(timezone.utc)
    ttl = ttl_hours if ttl_hours is not None else get_settings().approval_token_ttl_hours
    expires_at = issued_at + timedelta(hours=ttl)
    claims = {
        "invoiceId": str(invoice_id),
        "participantId": str(participant_id),
        "jti": secrets.token_hex(16),
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    token = jwt.encode(claims, _secret(secret), algorithm=TOKEN_ALGORITHM)
    return token, expires_at


def verify_approval_token(
    token: str,
    *,
    now: Optional[datetime] = None,
    secret: Optional[str] = None,
) -> dict[str, Any]:
    """Validate a token without touching storage.

    Expiry is checked before the signature, so an expired token is reported
    as ``TokenExpired`` even if it was also tampered with.
    """
    if not token or token.count(".") != 2:
        raise InvalidFormat()
    try:
        unverified = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        raise InvalidFormat() from None

    exp = unverified.get("exp")
    if not isinstance(exp, (int, float)):
        raise InvalidFormat("Token has no expiry")
    current = _as_utc(now) or datetime.now(timezone.utc)
    if exp <= current.timestamp():
        raise TokenExpired()

    try:
        claims = jwt.decode(
            token,
            _secret(secret),
            algorithms=[TOKEN_ALGORITHM],
            options={"verify_exp": False, "verify_iat": False, "require": list(REQUIRED_CLAIMS)},
        )
    except jwt.InvalidSignatureError:
        raise InvalidSignature() from None
    except jwt.PyJWTError:
        raise InvalidFormat() from None

    for claim in ("invoiceId", "participantId", "jti"):
        if not isinstance(claims.get(claim), str) or not claims[claim]:
            raise InvalidFormat(f"Token claim {claim} is invalid")
    return claims


@dataclass
class ApprovalRequest:
    invoice: Invoice
    token: str
    approval_url: str
    expires_at: datetime


def build_approval_url(token: str) -> str:
    base = get_settings().public_base_url.rstrip("/")
    return f"{base}/api/v1/public/invoice-approval/{token}"


def _resolve_method(participant: Optional[Participant]) -> ApprovalMethod:
    if participant is None or not participant.invoice_approval_enabled:
        raise ApprovalNotEnabled()
    try:
        method = ApprovalMethod(participant.invoice_approval_method or ApprovalMethod.APP.value)
    except ValueError:
        raise ApprovalNotEnabled(f"Unknown approval method {participant.invoice_approval_method}") from None
    if method == ApprovalMethod.EMAIL and not participant.email:
        raise ApprovalNotEnabled("Participant has no email address for approval requests")
    if method == ApprovalMethod.SMS and not participant.phone:
        raise ApprovalNotEnabled("Participant has no phone number for approval requests")
    return method


def _notification_payload(method: ApprovalMethod, participant: Participant, invoice: Invoice, url: str) -> dict:
    amount = f"${int(invoice.total_cents or 0) / 100:,.2f}"
    if method == ApprovalMethod.EMAIL:
        return {
            "to": participant.email,
            "subject": "Invoice awaiting your approval",
            "body_text": (
                f"Hi {participant.first_name},\n\n"
                f"An invoice for {amount} dated {invoice.invoice_date:%d/%m/%Y} is waiting for your approval.\n"
                f"Review it here: {url}\n"
            ),
        }
    if method == ApprovalMethod.SMS:
        return {
            "to_number": participant.phone,
            "body": f"Invoice for {amount} needs your approval: {url}",
        }
    return {
        "participant_id": str(participant.id),
        "invoice_id": str(invoice.id),
        "total_cents": int(invoice.total_cents or 0),
        "approval_url": url,
    }


def request_participant_approval(db: Session, invoice_id: Any, actor: Actor) -> ApprovalRequest:
    invoice = load_invoice(db, invoice_id, for_update=True)
    if invoice.status != InvoiceStatus.PENDING_REVIEW.value:
        raise InvalidStatus(f"Cannot request approval for an invoice in status {invoice.status}")

    participant = db.get(Participant, invoice.participant_id) if invoice.participant_id else None
    method = _resolve_method(participant)

    now = _now_utc(db)
    token, expires_at = issue_approval_token(str(invoice.id), str(participant.id), now=now)

    apply_invoice_transition(
        db,
        invoice=invoice,
        new_status=InvoiceStatus.PENDING_PARTICIPANT_APPROVAL,
        actor=actor,
    )
    invoice.participant_approval_status = ParticipantApprovalStatus.PENDING.value
    invoice.approval_method = method.value
    invoice.approval_token_hash = hash_token(token)
    invoice.approval_token_expires_at = expires_at if now.tzinfo else expires_at.replace(tzinfo=None)
    invoice.approval_sent_at = now

    url = build_approval_url(token)
    enqueue_notification(
        db,
        entity_type="invoice",
        entity_id=str(invoice.id),
        channel=_CHANNEL_BY_METHOD[method],
        template_key="INVOICE_APPROVAL_REQUEST",
        payload_json=_notification_payload(method, participant, invoice, url),
    )

    create_audit_log(
        db,
        entity_type="invoice",
        entity_id=str(invoice.id),
        action="APPROVAL_REQUESTED",
        old_value=None,
        new_value={
            "approval_method": method.value,
            "approval_token_expires_at": expires_at.isoformat(),
        },
        **actor.audit_fields(),
    )
    emit_event(
        db,
        EventType.INVOICE_APPROVAL_REQUESTED,
        invoice_event_payload(invoice, approval_method=method.value, expires_at=expires_at.isoformat()),
        entity_type="invoice",
        entity_id=str(invoice.id),
    )
    logger.info("Participant approval requested for invoice %s via %s", invoice.id, method.value)
    return ApprovalRequest(invoice=invoice, token=token, approval_url=url, expires_at=expires_at)


def _invoice_for_token(db: Session, claims: dict[str, Any]) -> Invoice:
    invoice = db.get(Invoice, parse_id(claims["invoiceId"], label="Invoice"))
    if invoice is None:
        raise NotFound("Invoice not found")
    return invoice


def get_approval_status(db: Session, token: str) -> dict[str, Any]:
    claims = verify_approval_token(token)
    invoice = _invoice_for_token(db, claims)
    return {
        "invoice_id": str(invoice.id),
        "status": invoice.status,
        "participant_approval_status": invoice.participant_approval_status,
        "total_cents": int(invoice.total_cents or 0),
        "invoice_date": invoice.invoice_date,
        "provider_name": invoice.provider.name if invoice.provider else None,
    }


def process_approval_response(
    db: Session,
    token: str,
    decision: ApprovalDecision,
    *,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Invoice:
    decision = ApprovalDecision(decision)
    claims = verify_approval_token(token)
    invoice = _invoice_for_token(db, claims)

    token_hash = hash_token(token)
    if not invoice.approval_token_hash or not hmac.compare_digest(invoice.approval_token_hash, token_hash):
        raise TokenAlreadyUsed()
    if invoice.status != InvoiceStatus.PENDING_PARTICIPANT_APPROVAL.value:
        raise InvoiceNotPendingApproval()

    now = _now_utc(db)
    values: dict[str, Any] = {
        "approval_token_hash": None,
        "approval_token_expires_at": None,
        "status_changed_at": now,
        "row_version": Invoice.row_version + 1,
    }
    if decision == ApprovalDecision.APPROVED:
        new_status = InvoiceStatus.APPROVED
        values["participant_approval_status"] = ParticipantApprovalStatus.APPROVED.value
        values["participant_approved_at"] = now
        action, event_type = "PARTICIPANT_APPROVED", EventType.INVOICE_PARTICIPANT_APPROVED
    else:
        # Soft rejection: staff review resumes.
        new_status = InvoiceStatus.PENDING_REVIEW
        values["participant_approval_status"] = ParticipantApprovalStatus.REJECTED.value
        action, event_type = "PARTICIPANT_REJECTED", EventType.INVOICE_PARTICIPANT_REJECTED
    values["status"] = new_status.value

    result = db.execute(
        update(Invoice)
        .where(
            Invoice.id == invoice.id,
            Invoice.approval_token_hash == token_hash,
            Invoice.status == InvoiceStatus.PENDING_PARTICIPANT_APPROVAL.value,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise TokenAlreadyUsed()
    db.refresh(invoice)

    actor = Actor(
        actor_type="PARTICIPANT",
        actor_id=claims["participantId"],
        ip_address=ip_address,
        user_agent=user_agent,
    )
    create_audit_log(
        db,
        entity_type="invoice",
        entity_id=str(invoice.id),
        action=action,
        old_value={"status": InvoiceStatus.PENDING_PARTICIPANT_APPROVAL.value},
        new_value={"status": new_status.value, "participant_approval_status": invoice.participant_approval_status},
        metadata={"jti": claims["jti"]},
        **actor.audit_fields(),
    )
    emit_event(
        db,
        event_type,
        invoice_event_payload(invoice, decision=decision.value),
        entity_type="invoice",
        entity_id=str(invoice.id),
    )
    return invoice


def record_token_rejection(db: Session, reason: str, *, ip_address: Optional[str], user_agent: Optional[str]) -> None:
    create_audit_log(
        db,
        entity_type="system",
        entity_id=SYSTEM_ENTITY_ID,
        action="APPROVAL_TOKEN_REJECTED",
        old_value=None,
        new_value=None,
        actor_type="PUBLIC",
        actor_id=None,
        ip_address=ip_address,
        user_agent=user_agent,
        metadata={"reason": reason},
    )


def skip_expired_approvals(db: Session, *, now: Optional[datetime] = None) -> int:
    """Return expired approval requests to staff review. Safe to run concurrently."""
    now = now or _now_utc(db)
    if now.tzinfo is not None and _is_sqlite(db):
        now = now.astimezone(timezone.utc).replace(tzinfo=None)

    expired_ids = (
        db.execute(
            select(Invoice.id).where(
                Invoice.status == InvoiceStatus.PENDING_PARTICIPANT_APPROVAL.value,
                Invoice.approval_token_expires_at.is_not(None),
                Invoice.approval_token_expires_at <= now,
            )
        )
        .scalars()
        .all()
    )

    skipped = 0
    for invoice_id in expired_ids:
        result = db.execute(
            update(Invoice)
            .where(
                Invoice.id == invoice_id,
                Invoice.status == InvoiceStatus.PENDING_PARTICIPANT_APPROVAL.value,
                Invoice.approval_token_expires_at <= now,
            )
            .values(
                status=InvoiceStatus.PENDING_REVIEW.value,
                participant_approval_status=ParticipantApprovalStatus.SKIPPED.value,
                approval_skipped_at=now,
                approval_token_hash=None,
                approval_token_expires_at=None,
                status_changed_at=now,
                row_version=Invoice.row_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            continue
        skipped += 1

        invoice = db.get(Invoice, invoice_id, populate_existing=True)
        create_audit_log(
            db,
            entity_type="invoice",
            entity_id=str(invoice_id),
            action="APPROVAL_SKIPPED",
            old_value={"status": InvoiceStatus.PENDING_PARTICIPANT_APPROVAL.value},
            new_value={"status": InvoiceStatus.PENDING_REVIEW.value, "participant_approval_status": "SKIPPED"},
            **SYSTEM_ACTOR.audit_fields(),
        )
        emit_event(
            db,
            EventType.INVOICE_APPROVAL_SKIPPED,
            invoice_event_payload(invoice),
            entity_type="invoice",
            entity_id=str(invoice_id),
        )

    if skipped:
        logger.info("Skipped %s expired participant approvals", skipped)
    return skipped
