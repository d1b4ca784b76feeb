"""
Tests for participant approval tokens and the public approval endpoints.

Covers:
  - Token claims, signature and expiry checks (expiry reported first)
  - Requesting approval only for participants who opted in
  - Single-use consumption, including a replay of the same token
  - Soft rejection back to staff review
  - Expiry sweep is idempotent
  - Rejected tokens are audited
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from claimflow.core.dependencies import get_db
from claimflow.main import app
from claimflow.models.invoice import AuditLog, DomainEventOutbox, Invoice, NotificationOutbox
from claimflow.schemas.invoice import ApprovalDecision
from claimflow.services.errors import (
    ApprovalNotEnabled,
    InvalidFormat,
    InvalidSignature,
    InvalidStatus,
    TokenAlreadyUsed,
    TokenExpired,
)
from claimflow.services.participant_approval import (
    hash_token,
    issue_approval_token,
    process_approval_response,
    request_participant_approval,
    skip_expired_approvals,
    verify_approval_token,
)
from claimflow.services.transition_service import Actor

ACTOR = Actor(actor_type="PLAN_MANAGER", actor_id="staff-1")
SECRET = "test-approval-secret"


# ═══════════════════════════════════════════════════════════════
# Token protocol
# ═══════════════════════════════════════════════════════════════


def test_token_round_trip_carries_claims():
    invoice_id, participant_id = str(uuid.uuid4()), str(uuid.uuid4())
    token, expires_at = issue_approval_token(invoice_id, participant_id, ttl_hours=72, secret=SECRET)

    claims = verify_approval_token(token, secret=SECRET)

    assert claims["invoiceId"] == invoice_id
    assert claims["participantId"] == participant_id
    assert len(claims["jti"]) == 32
    assert expires_at.tzinfo is not None
    assert claims["exp"] == int(expires_at.timestamp())


def test_each_token_has_unique_jti():
    first, _ = issue_approval_token("a", "b", secret=SECRET)
    second, _ = issue_approval_token("a", "b", secret=SECRET)
    assert verify_approval_token(first, secret=SECRET)["jti"] != verify_approval_token(second, secret=SECRET)["jti"]


def test_tampered_signature_is_rejected():
    token, _ = issue_approval_token("a", "b", secret="someone-else")
    with pytest.raises(InvalidSignature):
        verify_approval_token(token, secret=SECRET)


def test_expiry_is_checked_before_signature():
    issued = datetime.now(timezone.utc) - timedelta(hours=10)
    token, _ = issue_approval_token("a", "b", now=issued, ttl_hours=1, secret="someone-else")
    with pytest.raises(TokenExpired):
        verify_approval_token(token, secret=SECRET)


@pytest.mark.parametrize("token", ["", "not-a-token", "a.b", "a.b.c"])
def test_malformed_tokens(token):
    with pytest.raises(InvalidFormat):
        verify_approval_token(token, secret=SECRET)


def test_token_hash_is_keyed():
    assert hash_token("tok", secret="one") != hash_token("tok", secret="two")
    assert len(hash_token("tok", secret="one")) == 64


# ═══════════════════════════════════════════════════════════════
# Approval workflow
# ═══════════════════════════════════════════════════════════════


@pytest.fixture
def pending_invoice(seed):
    participant_id = seed.participant(approval_enabled=True, method="EMAIL", email="jordan@example.com")
    provider_id = seed.provider()
    return seed.invoice(participant_id, provider_id)


def test_request_requires_opt_in(db, seed):
    invoice_id = seed.invoice(seed.participant(approval_enabled=False), seed.provider())
    with pytest.raises(ApprovalNotEnabled):
        request_participant_approval(db, invoice_id, ACTOR)


def test_request_requires_pending_review(db, seed):
    participant_id = seed.participant(approval_enabled=True)
    invoice_id = seed.invoice(participant_id, seed.provider(), status="APPROVED")
    with pytest.raises(InvalidStatus):
        request_participant_approval(db, invoice_id, ACTOR)


def test_request_stores_only_token_hash_and_queues_email(db, pending_invoice):
    result = request_participant_approval(db, pending_invoice, ACTOR)
    db.commit()

    invoice = db.get(Invoice, pending_invoice)
    assert invoice.status == "PENDING_PARTICIPANT_APPROVAL"
    assert invoice.participant_approval_status == "PENDING"
    assert invoice.approval_method == "EMAIL"
    assert invoice.approval_token_hash == hash_token(result.token)
    assert invoice.approval_token_hash != result.token
    assert result.approval_url.endswith(f"/api/v1/public/invoice-approval/{result.token}")

    outbox = db.execute(select(NotificationOutbox)).scalars().all()
    assert len(outbox) == 1
    assert outbox[0].channel == "email"
    assert outbox[0].payload_json["to"] == "jordan@example.com"
    assert result.approval_url in outbox[0].payload_json["body_text"]


def test_approval_consumes_token_once(db, pending_invoice):
    result = request_participant_approval(db, pending_invoice, ACTOR)
    db.commit()

    invoice = process_approval_response(db, result.token, ApprovalDecision.APPROVED, ip_address="203.0.113.9")
    db.commit()
    assert invoice.status == "APPROVED"
    assert invoice.participant_approval_status == "APPROVED"
    assert invoice.approval_token_hash is None

    with pytest.raises(TokenAlreadyUsed):
        process_approval_response(db, result.token, ApprovalDecision.REJECTED)


def test_participant_rejection_returns_invoice_to_review(db, pending_invoice):
    result = request_participant_approval(db, pending_invoice, ACTOR)
    db.commit()

    invoice = process_approval_response(db, result.token, ApprovalDecision.REJECTED)
    db.commit()

    assert invoice.status == "PENDING_REVIEW"
    assert invoice.participant_approval_status == "REJECTED"
    actions = db.execute(select(AuditLog.action).where(AuditLog.entity_id == invoice.id)).scalars().all()
    assert "PARTICIPANT_REJECTED" in actions
    events = db.execute(select(DomainEventOutbox.event_type)).scalars().all()
    assert "invoices.participant-rejected" in events


def test_superseded_token_is_treated_as_used(db, pending_invoice):
    first = request_participant_approval(db, pending_invoice, ACTOR)
    db.commit()
    process_approval_response(db, first.token, ApprovalDecision.REJECTED)
    db.commit()

    second = request_participant_approval(db, pending_invoice, ACTOR)
    db.commit()

    with pytest.raises(TokenAlreadyUsed):
        process_approval_response(db, first.token, ApprovalDecision.APPROVED)
    assert process_approval_response(db, second.token, ApprovalDecision.APPROVED).status == "APPROVED"


def test_expired_approvals_are_skipped_once(db, pending_invoice):
    result = request_participant_approval(db, pending_invoice, ACTOR)
    invoice = db.get(Invoice, pending_invoice)
    invoice.approval_token_expires_at = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(minutes=1)
    db.commit()

    assert skip_expired_approvals(db) == 1
    db.commit()
    assert skip_expired_approvals(db) == 0

    db.refresh(invoice)
    assert invoice.status == "PENDING_REVIEW"
    assert invoice.participant_approval_status == "SKIPPED"
    assert invoice.approval_skipped_at is not None
    assert invoice.approval_token_hash is None
    with pytest.raises(TokenAlreadyUsed):
        process_approval_response(db, result.token, ApprovalDecision.APPROVED)


def test_unexpired_approvals_are_left_alone(db, pending_invoice):
    request_participant_approval(db, pending_invoice, ACTOR)
    db.commit()
    assert skip_expired_approvals(db) == 0
    assert db.get(Invoice, pending_invoice).status == "PENDING_PARTICIPANT_APPROVAL"


# ═══════════════════════════════════════════════════════════════
# Public endpoints
# ═══════════════════════════════════════════════════════════════


@pytest.fixture
def client(session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_public_status_and_decision(client, db, pending_invoice):
    result = request_participant_approval(db, pending_invoice, ACTOR)
    db.commit()

    resp = client.get(f"/api/v1/public/invoice-approval/{result.token}")
    assert resp.status_code == 200
    assert resp.json()["status"] == "PENDING_PARTICIPANT_APPROVAL"
    assert resp.json()["provider_name"] == "Sunrise Therapy Pty Ltd"
    assert resp.headers["Cache-Control"] == "no-store"

    resp = client.post(f"/api/v1/public/invoice-approval/{result.token}", json={"decision": "APPROVED"})
    assert resp.status_code == 200
    assert resp.json() == {"invoice_id": str(pending_invoice), "decision": "APPROVED", "status": "APPROVED"}

    resp = client.post(f"/api/v1/public/invoice-approval/{result.token}", json={"decision": "APPROVED"})
    assert resp.status_code == 409
    assert resp.json()["code"] == "TOKEN_USED"


def test_public_rejects_and_audits_bad_tokens(client, db):
    forged, _ = issue_approval_token(str(uuid.uuid4()), str(uuid.uuid4()), secret="someone-else")

    resp = client.get(f"/api/v1/public/invoice-approval/{forged}")
    assert resp.status_code == 400
    assert resp.json()["code"] == "INVALID_TOKEN"

    audits = db.execute(select(AuditLog).where(AuditLog.action == "APPROVAL_TOKEN_REJECTED")).scalars().all()
    assert len(audits) == 1
    assert audits[0].audit_meta == {"reason": "INVALID_TOKEN"}


def test_public_expired_token_is_gone(client):
    issued = datetime.now(timezone.utc) - timedelta(hours=100)
    token, _ = issue_approval_token(str(uuid.uuid4()), str(uuid.uuid4()), now=issued, ttl_hours=72)

    resp = client.post(f"/api/v1/public/invoice-approval/{token}", json={"decision": "APPROVED"})
    assert resp.status_code == 410
    assert resp.json()["code"] == "TOKEN_EXPIRED"


def test_public_decision_must_be_known(client, db, pending_invoice):
    result = request_participant_approval(db, pending_invoice, ACTOR)
    db.commit()

    resp = client.post(f"/api/v1/public/invoice-approval/{result.token}", json={"decision": "MAYBE"})
    assert resp.status_code == 400
    assert db.get(Invoice, pending_invoice).status == "PENDING_PARTICIPANT_APPROVAL"
