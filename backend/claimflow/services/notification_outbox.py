from __future__ import annotations

import hashlib
import json
import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import Table, insert, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from claimflow.core.config import get_settings
from claimflow.models.invoice import NotificationOutbox
from claimflow.services.notification_outbox_channels import (
    send_email_payload,
    send_sms_payload,
    smtp_config_from_settings,
    twilio_config_from_settings,
)
from claimflow.services.transition_service import _now_utc

logger = logging.getLogger(__name__)

CHANNELS = {"email", "sms", "in_app"}


def _canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)


def build_dedupe_key(prefix: str, *parts: str, payload: Any) -> str:
    digest = hashlib.sha256(_canonical_json(payload).encode("utf-8")).hexdigest()
    return ":".join([prefix, *parts, digest[:16]])


def insert_ignoring_duplicates(db: Session, table: Table, values: dict[str, Any]) -> bool:
    """INSERT that silently skips rows whose dedupe_key already exists.

    Returns True when a row was written. Runs inside the caller's transaction.
    """
    dialect_name = db.bind.dialect.name if db.bind is not None else ""

    if dialect_name == "postgresql":
        stmt = pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=["dedupe_key"])
        return bool(db.execute(stmt).rowcount)
    if dialect_name == "sqlite":
        stmt = sqlite_insert(table).values(**values).prefix_with("OR IGNORE")
        return bool(db.execute(stmt).rowcount)

    # Other dialects: check then insert (may still race).
    existing = db.execute(
        select(table.c.id).where(table.c.dedupe_key == values["dedupe_key"])
    ).scalar_one_or_none()
    if existing is not None:
        return False
    db.execute(insert(table).values(**values))
    return True


def compute_backoff(attempt_count: int) -> timedelta:
    # 1m, 2m, 4m, 8m, ... capped to 60m
    seconds = 60 * (2 ** max(0, attempt_count - 1))
    return timedelta(seconds=max(60, min(3600, seconds)))


def enqueue_notification(
    db: Session,
    *,
    entity_type: str,
    entity_id: str,
    channel: str,
    template_key: str,
    payload_json: dict[str, Any],
) -> bool:
    if channel not in CHANNELS:
        raise ValueError(f"Unsupported notification channel: {channel}")

    values = {
        "entity_type": entity_type,
        "entity_id": entity_id,
        "channel": channel,
        "template_key": template_key,
        "payload_json": payload_json,
        "dedupe_key": build_dedupe_key(
            channel,
            template_key,
            entity_type,
            entity_id,
            payload={"channel": channel, "template_key": template_key, "payload": payload_json},
        ),
        "status": "PENDING",
        "attempt_count": 0,
        "next_attempt_at": _now_utc(db),
    }
    return insert_ignoring_duplicates(db, NotificationOutbox.__table__, values)


def _send(row: NotificationOutbox, settings) -> None:
    payload = row.payload_json or {}
    if row.channel == "sms":
        send_sms_payload(payload, twilio=twilio_config_from_settings(settings))
        return
    if row.channel == "email":
        send_email_payload(payload, smtp=smtp_config_from_settings(settings))
        return
    if row.channel == "in_app":
        # No external delivery; the row itself is the in-app notice and is marked SENT.
        return
    raise RuntimeError(f"Unsupported notification channel: {row.channel}")


def process_notification_outbox_once(
    db: Session,
    *,
    batch_size: int = 50,
    max_attempts: int = 5,
) -> int:
    """Deliver due notifications. Returns the number marked SENT."""
    now = _now_utc(db)
    settings = get_settings()

    due = (
        db.execute(
            select(NotificationOutbox)
            .where(
                NotificationOutbox.status.in_(["PENDING", "RETRY"]),
                NotificationOutbox.next_attempt_at <= now,
            )
            .order_by(NotificationOutbox.next_attempt_at.asc())
            .limit(int(max(1, batch_size)))
        )
        .scalars()
        .all()
    )

    sent = 0
    for row in due:
        row.attempt_count = int(row.attempt_count or 0) + 1
        try:
            _send(row, settings)
        except Exception as exc:
            row.last_error = str(exc)[:2000]
            if row.attempt_count >= int(max_attempts):
                row.status = "FAILED"
                row.next_attempt_at = now + timedelta(days=365)
                logger.warning("Notification %s failed permanently: %s", row.id, exc)
            else:
                row.status = "RETRY"
                row.next_attempt_at = now + compute_backoff(row.attempt_count)
            continue

        row.status = "SENT"
        row.sent_at = now
        row.last_error = None
        sent += 1

    if due:
        logger.info("Notification outbox processed: sent=%s total=%s", sent, len(due))
    return sent
