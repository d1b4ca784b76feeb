"""
Domain event outbox.

Events are written in the same transaction as the state change that produced
them and delivered later, at least once, to the rule engine over HTTP.
A rule engine outage never blocks or rolls back a core write.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from claimflow.core.config import get_settings
from claimflow.models.invoice import DomainEventOutbox
from claimflow.schemas.events import EventType
from claimflow.services.notification_outbox import (
    build_dedupe_key,
    compute_backoff,
    insert_ignoring_duplicates,
)
from claimflow.services.transition_service import _now_utc

logger = logging.getLogger(__name__)


def emit_event(
    db: Session,
    event_type: EventType,
    payload: dict[str, Any],
    *,
    entity_type: str,
    entity_id: str,
) -> bool:
    """Queue an event for delivery. Never raises; returns False if nothing was queued."""
    try:
        event_type = EventType(event_type)
    except ValueError:
        logger.error("Unknown event type %r for %s %s", event_type, entity_type, entity_id)
        return False
    values = {
        "event_type": event_type.value,
        "entity_type": entity_type,
        "entity_id": str(entity_id),
        "payload_json": payload,
        "dedupe_key": build_dedupe_key(event_type.value, entity_type, str(entity_id), payload=payload),
        "status": "PENDING",
        "attempt_count": 0,
        "next_attempt_at": _now_utc(db),
    }
    try:
        if db.bind is not None and db.bind.dialect.name == "postgresql":
            # A failed statement would poison the surrounding transaction.
            with db.begin_nested():
                return insert_ignoring_duplicates(db, DomainEventOutbox.__table__, values)
        return insert_ignoring_duplicates(db, DomainEventOutbox.__table__, values)
    except Exception:
        logger.exception("Failed to queue event %s for %s %s", event_type.value, entity_type, entity_id)
        return False


def _build_client(settings) -> httpx.Client:
    headers = {"Content-Type": "application/json"}
    if settings.rule_engine_api_key:
        headers["Authorization"] = f"Bearer {settings.rule_engine_api_key}"
    return httpx.Client(timeout=settings.rule_engine_timeout_seconds, headers=headers)


def deliver_domain_events_once(
    db: Session,
    *,
    client: Optional[httpx.Client] = None,
    batch_size: int = 100,
    max_attempts: int = 8,
) -> int:
    """POST due events to the rule engine. Returns the number DELIVERED."""
    settings = get_settings()
    if not settings.rule_engine_url:
        logger.debug("RULE_ENGINE_URL not configured; event delivery skipped")
        return 0

    now = _now_utc(db)
    due = (
        db.execute(
            select(DomainEventOutbox)
            .where(
                DomainEventOutbox.status.in_(["PENDING", "RETRY"]),
                DomainEventOutbox.next_attempt_at <= now,
            )
            .order_by(DomainEventOutbox.next_attempt_at.asc(), DomainEventOutbox.created_at.asc())
            .limit(int(max(1, batch_size)))
        )
        .scalars()
        .all()
    )
    if not due:
        return 0

    owns_client = client is None
    http = client or _build_client(settings)
    delivered = 0
    try:
        for row in due:
            row.attempt_count = int(row.attempt_count or 0) + 1
            body = {
                "event_type": row.event_type,
                "payload": row.payload_json or {},
                "event_id": str(row.id),
            }
            try:
                response = http.post(settings.rule_engine_url, json=body)
                response.raise_for_status()
            except httpx.HTTPError as exc:
                row.last_error = str(exc)[:2000]
                if row.attempt_count >= int(max_attempts):
                    row.status = "FAILED"
                    row.next_attempt_at = now + timedelta(days=365)
                    logger.warning("Event %s (%s) failed permanently", row.id, row.event_type)
                else:
                    row.status = "RETRY"
                    row.next_attempt_at = now + compute_backoff(row.attempt_count)
                continue

            row.status = "DELIVERED"
            row.delivered_at = now
            row.last_error = None
            delivered += 1
    finally:
        if owns_client:
            http.close()

    logger.info("Event outbox processed: delivered=%s total=%s", delivered, len(due))
    return delivered
