"""
Tests for the fund quarantine ledger.

Covers:
  - Capacity = allocated - spent - other ACTIVE quarantines
  - A reservation that loses the race to a concurrent one is re-checked
  - Draw-down bounds and the utilisation threshold event
  - Update, release and auto-create from a service agreement
"""

from __future__ import annotations

import uuid
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from claimflow.core.auth import ASSISTANT, PLAN_MANAGER, CurrentUser, get_current_user
from claimflow.core.dependencies import get_db
from claimflow.main import app
from claimflow.models.invoice import (
    Base,
    BudgetLine,
    DomainEventOutbox,
    FundQuarantine,
    ServiceAgreement,
    ServiceAgreementRateLine,
)
from claimflow.schemas.quarantine import QuarantineCreate, QuarantineUpdate
from claimflow.services import fund_quarantine
from claimflow.services.errors import (
    BudgetLineConflict,
    DrawDownExceedsQuarantine,
    InsufficientBudgetCapacity,
    InvalidStatus,
    QuarantineNotActive,
    ValidationFailed,
)
from claimflow.services.fund_quarantine import (
    auto_create_from_service_agreement,
    available_capacity,
    create_quarantine,
    draw_down,
    release_quarantine,
    update_quarantine,
)
from claimflow.services.transition_service import Actor

from conftest import Seed

ACTOR = Actor(actor_type="PLAN_MANAGER", actor_id="staff-1")


@pytest.fixture
def line(seed):
    participant_id = seed.participant()
    _, line_id = seed.budget_line(participant_id, allocated_cents=10_000, spent_cents=1_000)
    return line_id


def _create(db, line_id, cents, **extra):
    quarantine = create_quarantine(
        db, QuarantineCreate(budget_line_id=str(line_id), quarantined_cents=cents, **extra), ACTOR
    )
    db.commit()
    return quarantine


def _events(db, event_type):
    return db.execute(select(DomainEventOutbox).where(DomainEventOutbox.event_type == event_type)).scalars().all()


# ═══════════════════════════════════════════════════════════════
# Capacity
# ═══════════════════════════════════════════════════════════════


def test_capacity_accounts_for_spent_and_active_quarantines(db, line):
    first = _create(db, line, 4_000)
    budget_line = db.get(BudgetLine, line)

    assert available_capacity(db, budget_line) == 5_000
    assert available_capacity(db, budget_line, exclude_id=first.id) == 9_000
    assert budget_line.row_version == 2


def test_reservation_beyond_capacity_is_refused(db, line):
    _create(db, line, 8_000)
    with pytest.raises(InsufficientBudgetCapacity):
        _create(db, line, 1_001)
    db.rollback()
    _create(db, line, 1_000)


def test_released_quarantine_frees_capacity(db, line):
    q = _create(db, line, 9_000)
    release_quarantine(db, q.id, ACTOR)
    db.commit()

    assert q.status == "RELEASED"
    assert len(_events(db, "fund-quarantine.released")) == 1
    _create(db, line, 9_000)


def test_exhausted_retries_raise_conflict(db, line):
    with patch.object(fund_quarantine, "_bump_budget_line", return_value=False) as bump:
        with pytest.raises(BudgetLineConflict):
            _create(db, line, 100)
    assert bump.call_count == 3


@pytest.fixture
def file_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False)
    engine.dispose()


def test_concurrent_reservations_never_overcommit(file_factory):
    seed = Seed(file_factory)
    _, line_id = seed.budget_line(seed.participant(), allocated_cents=10_000)
    real_sum = fund_quarantine._active_quarantined_cents
    calls = {"count": 0}

    def racing_sum(db, budget_line_id, exclude_id=None):
        stale = real_sum(db, budget_line_id, exclude_id)
        calls["count"] += 1
        if calls["count"] == 1:
            # A competing reservation commits between our check and our swap.
            other = file_factory()
            try:
                _create(other, line_id, 6_000)
            finally:
                other.close()
        return stale

    first = file_factory()
    try:
        with patch.object(fund_quarantine, "_active_quarantined_cents", side_effect=racing_sum):
            with pytest.raises(InsufficientBudgetCapacity):
                create_quarantine(
                    first, QuarantineCreate(budget_line_id=str(line_id), quarantined_cents=6_000), ACTOR
                )
        first.rollback()
    finally:
        first.close()

    check = file_factory()
    try:
        total = check.execute(
            select(func.sum(FundQuarantine.quarantined_cents)).where(FundQuarantine.status == "ACTIVE")
        ).scalar_one()
        assert total == 6_000
        assert total <= check.get(BudgetLine, line_id).allocated_cents
    finally:
        check.close()


def test_concurrent_reservations_that_fit_both_succeed(file_factory):
    seed = Seed(file_factory)
    _, line_id = seed.budget_line(seed.participant(), allocated_cents=10_000)

    a, b = file_factory(), file_factory()
    try:
        _create(a, line_id, 4_000)
        _create(b, line_id, 6_000)
        assert available_capacity(a, a.get(BudgetLine, line_id)) == 0
    finally:
        a.close()
        b.close()


# ═══════════════════════════════════════════════════════════════
# Draw-down and updates
# ═══════════════════════════════════════════════════════════════


def test_draw_down_beyond_remaining_leaves_usage_unchanged(db, line):
    q = _create(db, line, 1_000)
    draw_down(db, q.id, 600, ACTOR)
    db.commit()

    with pytest.raises(DrawDownExceedsQuarantine):
        draw_down(db, q.id, 401, ACTOR)
    db.rollback()

    db.refresh(q)
    assert q.used_cents == 600


def test_threshold_event_fires_once_when_crossed(db, line):
    q = _create(db, line, 1_000)

    draw_down(db, q.id, 500, ACTOR)
    assert _events(db, "fund-quarantine.threshold-reached") == []

    draw_down(db, q.id, 300, ACTOR)
    events = _events(db, "fund-quarantine.threshold-reached")
    assert len(events) == 1
    assert events[0].payload_json["utilisation_percent"] == 80.0
    assert events[0].payload_json["threshold_percent"] == 80

    draw_down(db, q.id, 100, ACTOR)
    db.commit()
    assert len(_events(db, "fund-quarantine.threshold-reached")) == 1


def test_released_quarantine_cannot_be_drawn(db, line):
    q = _create(db, line, 1_000)
    release_quarantine(db, q.id, ACTOR)
    with pytest.raises(QuarantineNotActive):
        draw_down(db, q.id, 1, ACTOR)


def test_update_cannot_drop_below_used(db, line):
    q = _create(db, line, 1_000)
    draw_down(db, q.id, 700, ACTOR)
    db.commit()

    with pytest.raises(ValidationFailed):
        update_quarantine(db, q.id, QuarantineUpdate(quarantined_cents=500), ACTOR)


def test_update_growth_is_capacity_checked_excluding_itself(db, line):
    q = _create(db, line, 5_000)

    update_quarantine(db, q.id, QuarantineUpdate(quarantined_cents=9_000, notes="Extended"), ACTOR)
    db.commit()
    assert q.quarantined_cents == 9_000
    assert q.notes == "Extended"

    with pytest.raises(InsufficientBudgetCapacity):
        update_quarantine(db, q.id, QuarantineUpdate(quarantined_cents=9_001), ACTOR)


# ═══════════════════════════════════════════════════════════════
# Auto-create from a service agreement
# ═══════════════════════════════════════════════════════════════


def _agreement(db, participant_id, provider_id, *, status="ACTIVE", rate_lines=()):
    agreement = ServiceAgreement(
        agreement_ref=f"SA-{uuid.uuid4().hex[:8]}",
        participant_id=participant_id,
        provider_id=provider_id,
        status=status,
    )
    for category_code, rate, quantity in rate_lines:
        agreement.rate_lines.append(
            ServiceAgreementRateLine(category_code=category_code, agreed_rate_cents=rate, max_quantity=quantity)
        )
    db.add(agreement)
    db.commit()
    return agreement


def test_auto_create_reserves_per_rate_line_and_skips_misfits(db, seed):
    participant_id = seed.participant()
    provider_id = seed.provider()
    plan_id, _ = seed.budget_line(participant_id, allocated_cents=20_000, category_code="01")
    agreement = _agreement(
        db,
        participant_id,
        provider_id,
        rate_lines=[("01", 6_000, 2), ("01", 25_000, 1), ("15", 1_000, 1)],
    )
    by_rate = {rate_line.agreed_rate_cents: rate_line for rate_line in agreement.rate_lines}
    fitting, too_big, no_line = by_rate[6_000], by_rate[25_000], by_rate[1_000]

    created, skipped = auto_create_from_service_agreement(db, agreement.id, plan_id, ACTOR)
    db.commit()

    assert [q.quarantined_cents for q in created] == [12_000]
    assert created[0].provider_id == provider_id
    assert created[0].service_agreement_id == agreement.id
    assert sorted(skipped) == sorted([str(too_big.id), str(no_line.id)])
    assert str(fitting.id) not in skipped


def test_auto_create_requires_active_agreement(db, seed):
    participant_id = seed.participant()
    plan_id, _ = seed.budget_line(participant_id)
    agreement = _agreement(db, participant_id, seed.provider(), status="DRAFT")

    with pytest.raises(InvalidStatus):
        auto_create_from_service_agreement(db, agreement.id, plan_id, ACTOR)


# ═══════════════════════════════════════════════════════════════
# HTTP surface
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
    app.dependency_overrides[get_current_user] = lambda: CurrentUser(id="staff-1", role=PLAN_MANAGER)
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_http_create_draw_and_release(client, line):
    resp = client.post("/api/v1/fund-quarantines", json={"budget_line_id": str(line), "quarantined_cents": 2_000})
    assert resp.status_code == 201
    body = resp.json()
    assert body["remaining_cents"] == 2_000
    assert body["status"] == "ACTIVE"

    resp = client.post(f"/api/v1/fund-quarantines/{body['id']}/draw-down", json={"amount_cents": 500})
    assert resp.status_code == 200
    assert resp.json()["used_cents"] == 500
    assert resp.json()["remaining_cents"] == 1_500

    resp = client.post(f"/api/v1/fund-quarantines/{body['id']}/draw-down", json={"amount_cents": 5_000})
    assert resp.status_code == 422
    assert resp.json()["code"] == "DRAW_DOWN_EXCEEDS_QUARANTINE"

    resp = client.delete(f"/api/v1/fund-quarantines/{body['id']}")
    assert resp.status_code == 200
    assert resp.json()["status"] == "RELEASED"

    resp = client.get("/api/v1/fund-quarantines", params={"budget_line_id": str(line), "status": "RELEASED"})
    assert [item["id"] for item in resp.json()["items"]] == [body["id"]]


def test_http_insufficient_capacity(client, line):
    resp = client.post("/api/v1/fund-quarantines", json={"budget_line_id": str(line), "quarantined_cents": 9_001})
    assert resp.status_code == 422
    assert resp.json()["code"] == "INSUFFICIENT_BUDGET_CAPACITY"


def test_http_non_positive_amount_is_bad_request(client, line):
    resp = client.post("/api/v1/fund-quarantines", json={"budget_line_id": str(line), "quarantined_cents": 0})
    assert resp.status_code == 400


def test_http_assistant_can_write_quarantines(client, line):
    app.dependency_overrides[get_current_user] = lambda: CurrentUser(id="staff-2", role=ASSISTANT)

    resp = client.post("/api/v1/fund-quarantines", json={"budget_line_id": str(line), "quarantined_cents": 1_000})
    assert resp.status_code == 201
    quarantine_id = resp.json()["id"]

    resp = client.patch(f"/api/v1/fund-quarantines/{quarantine_id}", json={"quarantined_cents": 1_500})
    assert resp.status_code == 200
    assert resp.json()["quarantined_cents"] == 1_500

    resp = client.post(f"/api/v1/fund-quarantines/{quarantine_id}/draw-down", json={"amount_cents": 200})
    assert resp.status_code == 200

    resp = client.delete(f"/api/v1/fund-quarantines/{quarantine_id}")
    assert resp.status_code == 200
