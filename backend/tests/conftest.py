import os
import uuid
from datetime import date, datetime, timezone

os.environ.setdefault("APPROVAL_TOKEN_SECRET", "test-approval-secret")
os.environ.setdefault("EMAIL_INGEST_SECRET", "test-ingest-secret")
os.environ.setdefault("PUBLIC_BASE_URL", "https://claims.example.test")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from claimflow.core.config import get_settings
from claimflow.models.invoice import (
    Base,
    BudgetLine,
    Invoice,
    InvoiceLine,
    Participant,
    Plan,
    Provider,
)
from claimflow.utils.alerting import alert_tracker
from claimflow.utils.rate_limit import rate_limiter


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    # Some tests mutate env vars; never leak a cached Settings instance across tests.
    get_settings.cache_clear()
    rate_limiter.reset()
    alert_tracker.reset()
    yield
    get_settings.cache_clear()


def make_memory_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def session_factory():
    engine = make_memory_engine()
    yield sessionmaker(bind=engine, autoflush=False)
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def _now_naive():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Seed:
    """Builds committed rows for tests; returns ids so callers can reload."""

    def __init__(self, factory):
        self.factory = factory

    def _save(self, obj):
        db = self.factory()
        try:
            db.add(obj)
            db.commit()
            db.refresh(obj)
            return obj.id
        finally:
            db.close()

    def participant(self, *, approval_enabled=False, method=None, email=None, phone=None):
        return self._save(
            Participant(
                first_name="Jordan",
                last_name="Lee",
                ndis_number="430000001",
                email=email,
                phone=phone,
                invoice_approval_enabled=approval_enabled,
                invoice_approval_method=method,
            )
        )

    def provider(self, *, abn="51824753556", name="Sunrise Therapy Pty Ltd"):
        return self._save(Provider(name=name, abn=abn, email="accounts@sunrise.example"))

    def budget_line(self, participant_id, *, allocated_cents=100_000, spent_cents=0, category_code="01"):
        plan_id = self._save(
            Plan(participant_id=participant_id, start_date=date(2026, 7, 1), end_date=date(2027, 6, 30))
        )
        line_id = self._save(
            BudgetLine(
                plan_id=plan_id,
                category_code=category_code,
                category_name="Daily Activities",
                allocated_cents=allocated_cents,
                spent_cents=spent_cents,
                row_version=1,
            )
        )
        return plan_id, line_id

    def invoice(self, participant_id, provider_id, *, status="PENDING_REVIEW", total_cents=1250, lines=None):
        invoice = Invoice(
            participant_id=participant_id,
            provider_id=provider_id,
            invoice_number=f"INV-{uuid.uuid4().hex[:6].upper()}",
            invoice_date=date(2026, 10, 1),
            subtotal_cents=total_cents,
            gst_cents=0,
            total_cents=total_cents,
            status=status,
            status_changed_at=_now_naive(),
            ingest_source="MANUAL",
            row_version=1,
        )
        for line_no, line in enumerate(lines or [], start=1):
            invoice.lines.append(InvoiceLine(line_no=line_no, **line))
        return self._save(invoice)


def invoice_line(total_cents=1250, *, code="01_011_0107_1_1", category="01"):
    return {
        "support_item_code": code,
        "support_item_name": "Assistance with self-care activities",
        "category_code": category,
        "service_date": date(2026, 9, 28),
        "quantity": 1,
        "unit_price_cents": total_cents,
        "total_cents": total_cents,
        "gst_cents": 0,
    }


@pytest.fixture
def seed(session_factory):
    return Seed(session_factory)
