import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.orm import Session

from claimflow.core.config import get_settings
from claimflow.models.invoice import AuditLog, Invoice
from claimflow.schemas.invoice import InvoiceStatus
from claimflow.services.errors import InvalidStatus, NotFound
from claimflow.utils.alerting import alert_tracker

logger = logging.getLogger(__name__)

SYSTEM_ENTITY_ID = "00000000-0000-0000-0000-000000000000"


@dataclass(frozen=True)
class Actor:
    """Who is acting, as recorded on audit entries."""

    actor_type: str
    actor_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def audit_fields(self) -> dict[str, Optional[str]]:
        return {
            "actor_type": self.actor_type,
            "actor_id": self.actor_id,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
        }


SYSTEM_ACTOR = Actor(actor_type="SYSTEM")


def parse_id(value: Any, *, label: str = "Resource") -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise NotFound(f"{label} not found") from None


ALLOWED_TRANSITIONS = {
    InvoiceStatus.RECEIVED: [InvoiceStatus.PROCESSING],
    InvoiceStatus.PROCESSING: [InvoiceStatus.PENDING_REVIEW],
    InvoiceStatus.PENDING_REVIEW: [
        InvoiceStatus.APPROVED,
        InvoiceStatus.REJECTED,
        InvoiceStatus.PENDING_PARTICIPANT_APPROVAL,
    ],
    InvoiceStatus.PENDING_PARTICIPANT_APPROVAL: [
        InvoiceStatus.APPROVED,
        InvoiceStatus.PENDING_REVIEW,
    ],
    InvoiceStatus.APPROVED: [InvoiceStatus.CLAIMED],
    InvoiceStatus.CLAIMED: [InvoiceStatus.PAID],
    InvoiceStatus.REJECTED: [],
    InvoiceStatus.PAID: [],
}

PII_REDACTION_FALLBACK_FIELDS = {
    "phone",
    "email",
    "source_email",
    "address",
    "ndis_number",
}


def _is_sqlite(db: Optional[Session]) -> bool:
    bind = getattr(db, "bind", None) if db is not None else None
    if bind is not None:
        return bind.dialect.name == "sqlite"
    return get_settings().is_sqlite


def _now_utc(db: Optional[Session] = None) -> datetime:
    # SQLite hands back naive datetimes; keep "now" naive there so comparisons work.
    now = datetime.now(timezone.utc)
    if _is_sqlite(db):
        return now.replace(tzinfo=None)
    return now


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _with_for_update_if_supported(stmt, db: Session):
    # SQLite does not support `SELECT ... FOR UPDATE`.
    if db.bind is None or db.bind.dialect.name == "sqlite":
        return stmt
    return stmt.with_for_update()


def _redact_pii(value: Any, redact_keys: set[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, dict):
        redacted = {}
        for key, item in value.items():
            if isinstance(key, str) and key.lower() in redact_keys:
                redacted[key] = "[REDACTED]"
            else:
                redacted[key] = _redact_pii(item, redact_keys)
        return redacted
    if isinstance(value, list):
        return [_redact_pii(item, redact_keys) for item in value]
    return value


def create_audit_log(
    db: Session,
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    old_value: Optional[dict[str, Any]],
    new_value: Optional[dict[str, Any]],
    actor_type: str,
    actor_id: Optional[str],
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> None:
    settings = get_settings()
    if settings.pii_redaction_enabled:
        configured = {item.lower() for item in settings.pii_redaction_fields}
        redact_keys = configured or set(PII_REDACTION_FALLBACK_FIELDS)
        old_value = _redact_pii(old_value, redact_keys)
        new_value = _redact_pii(new_value, redact_keys)
        metadata = _redact_pii(metadata, redact_keys)

    db.add(
        AuditLog(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            old_value=old_value,
            new_value=new_value,
            actor_type=actor_type,
            actor_id=actor_id,
            ip_address=ip_address,
            user_agent=user_agent,
            audit_meta=metadata,
        )
    )
    try:
        alert_tracker.record(action, metadata)
    except Exception:
        logger.exception("Alert tracker failed for action=%s", action)


def can_transition(current: InvoiceStatus, new: InvoiceStatus) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, [])


def apply_invoice_transition(
    db: Session,
    *,
    invoice: Invoice,
    new_status: InvoiceStatus,
    actor: Actor,
    metadata: Optional[dict[str, Any]] = None,
) -> None:
    """Move ``invoice`` along one edge of the lifecycle graph.

    Raises ``InvalidStatus`` without touching the row when the edge is not
    allowed. Callers set any edge-specific fields (approver, reason, ...)
    after this returns.
    """
    current = InvoiceStatus(invoice.status)
    if not can_transition(current, new_status):
        raise InvalidStatus(f"Cannot move invoice from {current} to {new_status}")

    invoice.status = new_status.value
    invoice.status_changed_at = _now_utc(db)
    invoice.row_version = int(invoice.row_version or 0) + 1

    create_audit_log(
        db,
        entity_type="invoice",
        entity_id=str(invoice.id),
        action="STATUS_CHANGE",
        old_value={"status": current.value},
        new_value={"status": new_status.value},
        metadata=metadata,
        **actor.audit_fields(),
    )
    logger.info("Invoice %s moved %s -> %s", invoice.id, current.value, new_status.value)
