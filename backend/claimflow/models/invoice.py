import uuid

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import INET, JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func
from sqlalchemy.types import CHAR, TypeDecorator

Base = declarative_base()


class GUID(TypeDecorator):
    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, uuid.UUID):
            return value if dialect.name == "postgresql" else str(value)
        if isinstance(value, str):
            try:
                parsed = uuid.UUID(value)
            except ValueError:
                return value
            return parsed if dialect.name == "postgresql" else str(parsed)
        return value

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        try:
            return uuid.UUID(value)
        except ValueError:
            return value


UUID_TYPE = GUID()
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")
INET_TYPE = String(45).with_variant(INET, "postgresql")
CENTS = BigInteger().with_variant(Integer, "sqlite")


def _pk():
    return Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )


class Participant(Base):
    __tablename__ = "participants"

    id = _pk()
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    ndis_number = Column(String(20))
    email = Column(String(255))
    phone = Column(String(20))
    invoice_approval_enabled = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    invoice_approval_method = Column(String(8))  # APP / EMAIL / SMS
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Provider(Base):
    __tablename__ = "providers"

    id = _pk()
    name = Column(String(255), nullable=False)
    abn = Column(String(14), index=True)
    email = Column(String(255))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Plan(Base):
    __tablename__ = "plans"

    id = _pk()
    participant_id = Column(UUID_TYPE, ForeignKey("participants.id", ondelete="CASCADE"), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    status = Column(String(16), nullable=False, default="ACTIVE", server_default=text("'ACTIVE'"))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    budget_lines = relationship("BudgetLine", back_populates="plan")


class BudgetLine(Base):
    __tablename__ = "budget_lines"
    __table_args__ = (
        UniqueConstraint("plan_id", "category_code", name="uq_budget_line_plan_category"),
        CheckConstraint("allocated_cents >= 0", name="chk_budget_line_allocated_non_negative"),
    )

    id = _pk()
    plan_id = Column(UUID_TYPE, ForeignKey("plans.id", ondelete="CASCADE"), nullable=False)
    category_code = Column(String(8), nullable=False)
    category_name = Column(String(128), nullable=False, default="", server_default=text("''"))
    allocated_cents = Column(CENTS, nullable=False, default=0, server_default=text("0"))
    spent_cents = Column(CENTS, nullable=False, default=0, server_default=text("0"))
    row_version = Column(Integer, nullable=False, default=1, server_default=text("1"))

    plan = relationship("Plan", back_populates="budget_lines")


class ServiceAgreement(Base):
    __tablename__ = "service_agreements"

    id = _pk()
    agreement_ref = Column(String(32), nullable=False, unique=True)
    participant_id = Column(UUID_TYPE, ForeignKey("participants.id", ondelete="CASCADE"), nullable=False)
    provider_id = Column(UUID_TYPE, ForeignKey("providers.id", ondelete="RESTRICT"), nullable=False)
    status = Column(String(16), nullable=False, default="DRAFT", server_default=text("'DRAFT'"))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    rate_lines = relationship("ServiceAgreementRateLine", back_populates="agreement", order_by="ServiceAgreementRateLine.category_code")


class ServiceAgreementRateLine(Base):
    __tablename__ = "service_agreement_rate_lines"

    id = _pk()
    agreement_id = Column(UUID_TYPE, ForeignKey("service_agreements.id", ondelete="CASCADE"), nullable=False)
    category_code = Column(String(8), nullable=False)
    support_item_code = Column(String(32))
    agreed_rate_cents = Column(CENTS, nullable=False)
    max_quantity = Column(Numeric(10, 2))

    agreement = relationship("ServiceAgreement", back_populates="rate_lines")


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        Index("idx_invoices_status", "status"),
        Index("idx_invoices_participant", "participant_id"),
        Index("idx_invoices_ocr_job", "ocr_job_id"),
        Index("idx_invoices_approval_expiry", "status", "approval_token_expires_at"),
    )

    id = _pk()
    participant_id = Column(UUID_TYPE, ForeignKey("participants.id", ondelete="SET NULL"))
    provider_id = Column(UUID_TYPE, ForeignKey("providers.id", ondelete="SET NULL"))
    plan_id = Column(UUID_TYPE, ForeignKey("plans.id", ondelete="SET NULL"))
    budget_line_id = Column(UUID_TYPE, ForeignKey("budget_lines.id", ondelete="SET NULL"))

    invoice_number = Column(String(64), nullable=False, default="PENDING", server_default=text("'PENDING'"))
    invoice_date = Column(Date, nullable=False)
    subtotal_cents = Column(CENTS, nullable=False, default=0, server_default=text("0"))
    gst_cents = Column(CENTS, nullable=False, default=0, server_default=text("0"))
    total_cents = Column(CENTS, nullable=False, default=0, server_default=text("0"))
    status = Column(String(32), nullable=False, default="RECEIVED", server_default=text("'RECEIVED'"))
    status_changed_at = Column(DateTime(timezone=True))

    ingest_source = Column(String(16), nullable=False, default="MANUAL", server_default=text("'MANUAL'"))
    source_email = Column(String(255))
    storage_bucket = Column(String(128))
    storage_path = Column(Text)
    ocr_job_id = Column(String(128))
    ai_confidence = Column(Float)
    ai_extracted_at = Column(DateTime(timezone=True))
    ai_raw_data = Column(JSON_TYPE)

    approved_by_id = Column(String(64))
    approved_at = Column(DateTime(timezone=True))
    rejected_by_id = Column(String(64))
    rejected_at = Column(DateTime(timezone=True))
    rejection_reason = Column(Text)

    participant_approval_status = Column(String(16))  # PENDING / APPROVED / REJECTED / SKIPPED / NOT_REQUIRED
    approval_method = Column(String(8))
    approval_token_hash = Column(String(64))
    approval_token_expires_at = Column(DateTime(timezone=True))
    approval_sent_at = Column(DateTime(timezone=True))
    participant_approved_at = Column(DateTime(timezone=True))
    approval_skipped_at = Column(DateTime(timezone=True))

    row_version = Column(Integer, nullable=False, default=1, server_default=text("1"))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    participant = relationship("Participant")
    provider = relationship("Provider")
    lines = relationship(
        "InvoiceLine",
        back_populates="invoice",
        order_by="InvoiceLine.line_no",
        cascade="all, delete-orphan",
    )


class InvoiceLine(Base):
    __tablename__ = "invoice_lines"

    id = _pk()
    invoice_id = Column(UUID_TYPE, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    line_no = Column(Integer, nullable=False, default=1)
    support_item_code = Column(String(32), nullable=False)
    support_item_name = Column(String(255), nullable=False)
    category_code = Column(String(8), nullable=False)
    service_date = Column(Date, nullable=False)
    quantity = Column(Numeric(10, 2), nullable=False, default=1)
    unit_price_cents = Column(CENTS, nullable=False)
    total_cents = Column(CENTS, nullable=False)
    gst_cents = Column(CENTS, nullable=False, default=0, server_default=text("0"))

    invoice = relationship("Invoice", back_populates="lines")


class ClaimBatch(Base):
    __tablename__ = "claim_batches"

    id = _pk()
    batch_number = Column(String(32), nullable=False, unique=True)
    status = Column(String(16), nullable=False, default="PENDING", server_default=text("'PENDING'"))
    claim_count = Column(Integer, nullable=False, default=0, server_default=text("0"))
    total_cents = Column(CENTS, nullable=False, default=0, server_default=text("0"))
    notes = Column(Text)
    payer_batch_id = Column(String(64))
    submitted_by_id = Column(String(64))
    submitted_at = Column(DateTime(timezone=True))
    created_by_id = Column(String(64))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    claims = relationship("Claim", back_populates="batch", order_by="Claim.claim_reference")


class Claim(Base):
    __tablename__ = "claims"
    __table_args__ = (
        Index("idx_claims_status", "status"),
        CheckConstraint("claimed_cents >= 0", name="chk_claim_claimed_non_negative"),
    )

    id = _pk()
    claim_reference = Column(String(32), nullable=False, unique=True)
    invoice_id = Column(UUID_TYPE, ForeignKey("invoices.id", ondelete="RESTRICT"), nullable=False, unique=True)
    participant_id = Column(UUID_TYPE, ForeignKey("participants.id", ondelete="SET NULL"))
    batch_id = Column(UUID_TYPE, ForeignKey("claim_batches.id", ondelete="SET NULL"), index=True)
    claimed_cents = Column(CENTS, nullable=False)
    approved_cents = Column(CENTS)
    status = Column(String(16), nullable=False, default="PENDING", server_default=text("'PENDING'"))

    payer_reference = Column(String(64))
    submitted_by_id = Column(String(64))
    submitted_at = Column(DateTime(timezone=True))
    outcome_at = Column(DateTime(timezone=True))
    outcome_notes = Column(Text)
    outcome_by_id = Column(String(64))
    paid_at = Column(DateTime(timezone=True))

    created_by_id = Column(String(64))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    invoice = relationship("Invoice")
    batch = relationship("ClaimBatch", back_populates="claims")
    lines = relationship(
        "ClaimLine",
        back_populates="claim",
        order_by="ClaimLine.line_no",
        cascade="all, delete-orphan",
    )


class ClaimLine(Base):
    __tablename__ = "claim_lines"

    id = _pk()
    claim_id = Column(UUID_TYPE, ForeignKey("claims.id", ondelete="CASCADE"), nullable=False, index=True)
    invoice_line_id = Column(UUID_TYPE, ForeignKey("invoice_lines.id", ondelete="SET NULL"))
    line_no = Column(Integer, nullable=False, default=1)
    support_item_code = Column(String(32), nullable=False)
    support_item_name = Column(String(255), nullable=False)
    category_code = Column(String(8), nullable=False)
    service_date = Column(Date, nullable=False)
    quantity = Column(Numeric(10, 2), nullable=False, default=1)
    unit_price_cents = Column(CENTS, nullable=False)
    total_cents = Column(CENTS, nullable=False)
    gst_cents = Column(CENTS, nullable=False, default=0, server_default=text("0"))
    status = Column(String(16), nullable=False, default="PENDING", server_default=text("'PENDING'"))
    approved_cents = Column(CENTS)
    outcome_notes = Column(Text)

    claim = relationship("Claim", back_populates="lines")


class FundQuarantine(Base):
    __tablename__ = "fund_quarantines"
    __table_args__ = (
        CheckConstraint("quarantined_cents > 0", name="chk_fq_quarantined_positive"),
        CheckConstraint("used_cents >= 0 AND used_cents <= quarantined_cents", name="chk_fq_used_within_quarantined"),
        CheckConstraint("status IN ('ACTIVE','RELEASED','EXPIRED')", name="chk_fq_status"),
        Index("idx_fq_budget_line_status", "budget_line_id", "status"),
    )

    id = _pk()
    budget_line_id = Column(UUID_TYPE, ForeignKey("budget_lines.id", ondelete="CASCADE"), nullable=False)
    provider_id = Column(UUID_TYPE, ForeignKey("providers.id", ondelete="SET NULL"))
    service_agreement_id = Column(UUID_TYPE, ForeignKey("service_agreements.id", ondelete="SET NULL"))
    support_item_code = Column(String(32))
    quarantined_cents = Column(CENTS, nullable=False)
    used_cents = Column(CENTS, nullable=False, default=0, server_default=text("0"))
    status = Column(String(16), nullable=False, default="ACTIVE", server_default=text("'ACTIVE'"))
    notes = Column(Text)
    created_by_id = Column(String(64))
    row_version = Column(Integer, nullable=False, default=1, server_default=text("1"))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    budget_line = relationship("BudgetLine")
    provider = relationship("Provider")


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_action_timestamp", "action", "timestamp"),
    )

    id = _pk()
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(UUID_TYPE, nullable=False)
    action = Column(String(64), nullable=False)
    old_value = Column(JSON_TYPE)
    new_value = Column(JSON_TYPE)
    actor_type = Column(String(50), nullable=False)
    actor_id = Column(String(64))
    ip_address = Column(INET_TYPE)
    user_agent = Column(Text)
    audit_meta = Column("metadata", JSON_TYPE, nullable=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class DomainEventOutbox(Base):
    __tablename__ = "domain_event_outbox"
    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uq_domain_event_outbox_dedupe_key"),
        Index("idx_domain_event_outbox_due", "status", "next_attempt_at"),
    )

    id = _pk()
    event_type = Column(String(64), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(64), nullable=False)
    payload_json = Column(JSON_TYPE, nullable=False)
    dedupe_key = Column(String(160), nullable=False)

    status = Column(String(16), nullable=False, default="PENDING", server_default=text("'PENDING'"))
    attempt_count = Column(Integer, nullable=False, default=0, server_default=text("0"))
    next_attempt_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    delivered_at = Column(DateTime(timezone=True))
    last_error = Column(Text)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class NotificationOutbox(Base):
    __tablename__ = "notification_outbox"
    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uq_notification_outbox_dedupe_key"),
        Index("idx_notification_outbox_due", "status", "next_attempt_at"),
    )

    id = _pk()
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(64), nullable=False)

    channel = Column(String(16), nullable=False)  # email / sms / in_app
    template_key = Column(String(64), nullable=False)
    payload_json = Column(JSON_TYPE, nullable=False)
    dedupe_key = Column(String(160), nullable=False)

    status = Column(String(16), nullable=False, default="PENDING", server_default=text("'PENDING'"))
    attempt_count = Column(Integer, nullable=False, default=0, server_default=text("0"))
    next_attempt_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    sent_at = Column(DateTime(timezone=True))
    last_error = Column(Text)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
