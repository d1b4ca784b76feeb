"""
Tests for the domain event outbox.

Covers:
  - Events are queued once per identical payload
  - Delivery is skipped while no rule engine is configured
  - Successful delivery, retry with backoff, permanent failure
"""

from __future__ import annotations

import json
import uuid
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import select

from claimflow.core.config import get_settings
from claimflow.models.invoice import DomainEventOutbox
from claimflow.schemas.events import EventType
from claimflow.services.event_outbox import deliver_domain_events_once, emit_event

RULE_ENGINE_URL = "http://rules.test/events"


@pytest.fixture
def rule_engine(monkeypatch):
    monkeypatch.setenv("RULE_ENGINE_URL", RULE_ENGINE_URL)
    get_settings.cache_clear()


def _emit(db, entity_id=None, **payload):
    entity_id = entity_id or str(uuid.uuid4())
    emit_event(
        db,
        EventType.INVOICE_APPROVED,
        {"invoice_id": entity_id, **payload},
        entity_type="invoice",
        entity_id=entity_id,
    )
    db.commit()
    return entity_id


def _client(status_code=200, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(json.loads(request.content))
        return httpx.Response(status_code)

    return httpx.Client(transport=httpx.MockTransport(handler))


def _rows(db):
    db.expire_all()
    return db.execute(select(DomainEventOutbox)).scalars().all()


def test_identical_events_are_queued_once(db):
    entity_id = str(uuid.uuid4())
    payload = {"invoice_id": entity_id, "status": "APPROVED"}

    first = emit_event(db, EventType.INVOICE_APPROVED, payload, entity_type="invoice", entity_id=entity_id)
    second = emit_event(db, EventType.INVOICE_APPROVED, payload, entity_type="invoice", entity_id=entity_id)
    third = emit_event(
        db, EventType.INVOICE_APPROVED, {**payload, "row_version": 3}, entity_type="invoice", entity_id=entity_id
    )
    db.commit()

    assert (first, second, third) == (True, False, True)
    assert len(_rows(db)) == 2


def test_unknown_event_type_is_dropped(db):
    assert emit_event(db, "invoices.teleported", {}, entity_type="invoice", entity_id="x") is False
    assert _rows(db) == []


def test_delivery_skipped_without_rule_engine(db):
    _emit(db)
    seen = []

    assert deliver_domain_events_once(db, client=_client(seen=seen)) == 0
    assert seen == []
    assert _rows(db)[0].status == "PENDING"


def test_delivery_posts_event_envelope(db, rule_engine):
    entity_id = _emit(db, status="APPROVED")
    seen = []

    delivered = deliver_domain_events_once(db, client=_client(seen=seen))
    db.commit()

    assert delivered == 1
    row = _rows(db)[0]
    assert row.status == "DELIVERED"
    assert row.attempt_count == 1
    assert row.delivered_at is not None
    assert seen == [
        {
            "event_type": "invoices.approved",
            "payload": {"invoice_id": entity_id, "status": "APPROVED"},
            "event_id": str(row.id),
        }
    ]


def test_failed_delivery_is_retried_later(db, rule_engine):
    _emit(db)

    assert deliver_domain_events_once(db, client=_client(503)) == 0
    db.commit()

    row = _rows(db)[0]
    assert row.status == "RETRY"
    assert row.attempt_count == 1
    assert "503" in row.last_error
    assert row.next_attempt_at - row.created_at >= timedelta(seconds=59)

    # Not due yet.
    assert deliver_domain_events_once(db, client=_client(200)) == 0


def test_delivery_gives_up_after_max_attempts(db, rule_engine):
    _emit(db)

    deliver_domain_events_once(db, client=_client(500), max_attempts=1)
    db.commit()

    row = _rows(db)[0]
    assert row.status == "FAILED"
    assert row.next_attempt_at - row.created_at > timedelta(days=300)
