"""
Unit tests for transition_service: state machine, PII redaction, audit alerts.

Covers:
  - _redact_pii: nested dict/list PII masking
  - create_audit_log: configured redaction fields, redaction switch
  - apply_invoice_transition: happy path, disallowed edges leave the row untouched
  - parse_id: malformed identifiers read as "not found"
  - AuditAlertTracker: warns at the threshold and every multiple of it
"""

from __future__ import annotations

import os
import uuid
from unittest.mock import patch

import pytest
from sqlalchemy import select

from claimflow.core.config import get_settings
from claimflow.models.invoice import AuditLog, Invoice
from claimflow.schemas.invoice import InvoiceStatus
from claimflow.services.errors import InvalidStatus, NotFound
from claimflow.services.transition_service import (
    Actor,
    _redact_pii,
    apply_invoice_transition,
    create_audit_log,
    parse_id,
)
from claimflow.utils.alerting import AuditAlertTracker

ACTOR = Actor(actor_type="PLAN_MANAGER", actor_id="staff-1", ip_address="203.0.113.7", user_agent="pytest")


# ── _redact_pii ──────────────────────────────────────────────────────


def test_redact_pii_nested():
    value = {
        "participant": {"email": "jordan@example.com", "first_name": "Jordan"},
        "contacts": [{"phone": "+61400000000"}, {"note": "keep"}],
        "total_cents": 1250,
    }
    redacted = _redact_pii(value, {"email", "phone"})

    assert redacted == {
        "participant": {"email": "[REDACTED]", "first_name": "Jordan"},
        "contacts": [{"phone": "[REDACTED]"}, {"note": "keep"}],
        "total_cents": 1250,
    }


def test_redact_pii_is_case_insensitive_on_keys():
    assert _redact_pii({"Email": "x@y.z"}, {"email"}) == {"Email": "[REDACTED]"}


def test_redact_pii_passes_through_scalars():
    assert _redact_pii(None, {"email"}) is None
    assert _redact_pii("plain", {"email"}) == "plain"


# ── create_audit_log ─────────────────────────────────────────────────


def _only_audit(db):
    return db.execute(select(AuditLog)).scalar_one()


def test_audit_log_redacts_default_fields(db):
    create_audit_log(
        db,
        entity_type="invoice",
        entity_id=str(uuid.uuid4()),
        action="EMAIL_RECEIVED",
        old_value=None,
        new_value={"source_email": "accounts@sunrise.example", "status": "RECEIVED"},
        metadata={"ndis_number": "430000000"},
        **ACTOR.audit_fields(),
    )
    db.commit()

    row = _only_audit(db)
    assert row.new_value == {"source_email": "[REDACTED]", "status": "RECEIVED"}
    assert row.audit_meta == {"ndis_number": "[REDACTED]"}
    assert row.actor_type == "PLAN_MANAGER"
    assert row.ip_address == "203.0.113.7"


def test_audit_log_redaction_can_be_disabled(db):
    with patch.dict(os.environ, {"PII_REDACTION_ENABLED": "false"}, clear=False):
        get_settings.cache_clear()
        create_audit_log(
            db,
            entity_type="invoice",
            entity_id=str(uuid.uuid4()),
            action="EMAIL_RECEIVED",
            old_value=None,
            new_value={"source_email": "accounts@sunrise.example"},
            actor_type="SYSTEM",
            actor_id=None,
        )
        db.commit()
    get_settings.cache_clear()

    assert _only_audit(db).new_value == {"source_email": "accounts@sunrise.example"}


# ── apply_invoice_transition ─────────────────────────────────────────


def test_transition_updates_status_and_audits(db, seed):
    invoice = db.get(Invoice, seed.invoice(seed.participant(), seed.provider()))

    apply_invoice_transition(db, invoice=invoice, new_status=InvoiceStatus.APPROVED, actor=ACTOR)
    db.commit()

    assert invoice.status == InvoiceStatus.APPROVED.value
    assert invoice.row_version == 2
    assert invoice.status_changed_at is not None
    row = _only_audit(db)
    assert row.action == "STATUS_CHANGE"
    assert row.old_value == {"status": "PENDING_REVIEW"}
    assert row.new_value == {"status": "APPROVED"}


@pytest.mark.parametrize(
    "start, target",
    [
        ("PENDING_REVIEW", InvoiceStatus.PAID),
        ("REJECTED", InvoiceStatus.APPROVED),
        ("APPROVED", InvoiceStatus.PENDING_REVIEW),
        ("PROCESSING", InvoiceStatus.APPROVED),
    ],
)
def test_disallowed_transition_leaves_invoice_untouched(db, seed, start, target):
    invoice = db.get(Invoice, seed.invoice(seed.participant(), seed.provider(), status=start))

    with pytest.raises(InvalidStatus):
        apply_invoice_transition(db, invoice=invoice, new_status=target, actor=ACTOR)

    assert invoice.status == start
    assert invoice.row_version == 1
    assert db.execute(select(AuditLog)).scalars().all() == []


# ── parse_id ─────────────────────────────────────────────────────────


def test_parse_id_accepts_uuid_and_string():
    value = uuid.uuid4()
    assert parse_id(value) is value
    assert parse_id(str(value)) == value


@pytest.mark.parametrize("value", ["nope", "", None, 42])
def test_parse_id_malformed_is_not_found(value):
    with pytest.raises(NotFound, match="Invoice not found"):
        parse_id(value, label="Invoice")


# ── AuditAlertTracker ────────────────────────────────────────────────


def test_alert_tracker_warns_at_threshold_multiples():
    tracker = AuditAlertTracker(window_seconds=3600, thresholds={"APPROVAL_TOKEN_REJECTED": 3})

    results = [tracker.record("APPROVAL_TOKEN_REJECTED") for _ in range(6)]

    assert results == [False, False, True, False, False, True]
    assert tracker.count("APPROVAL_TOKEN_REJECTED") == 6


def test_alert_tracker_ignores_untracked_actions():
    tracker = AuditAlertTracker(window_seconds=3600, thresholds={"APPROVAL_TOKEN_REJECTED": 1})
    assert tracker.record("STATUS_CHANGE") is False
    assert tracker.count("STATUS_CHANGE") == 0


def test_alert_tracker_window_expires(monkeypatch):
    t = {"now": 1000.0}
    monkeypatch.setattr("claimflow.utils.alerting.time.monotonic", lambda: t["now"])
    tracker = AuditAlertTracker(window_seconds=60, thresholds={"RATE_LIMIT_BLOCKED": 2})

    tracker.record("RATE_LIMIT_BLOCKED")
    t["now"] += 61
    assert tracker.record("RATE_LIMIT_BLOCKED") is False
    assert tracker.count("RATE_LIMIT_BLOCKED") == 1
