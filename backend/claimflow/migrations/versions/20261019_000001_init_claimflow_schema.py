"""init claimflow schema

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 09:00:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20261019_000001"
down_revision = None
branch_labels = None
depends_on = None


def _id_column():
    return sa.Column(
        "id",
        postgresql.UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _created_at():
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("now()"),
    )


def _updated_at():
    return sa.Column(
        "updated_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("now()"),
    )


def _cents(name: str, nullable: bool = False, default: bool = True):
    return sa.Column(
        name,
        sa.BigInteger(),
        nullable=nullable,
        server_default=sa.text("0") if default else None,
    )


def _fk(name: str, target: str, ondelete: str, nullable: bool = True):
    return sa.Column(
        name,
        postgresql.UUID(as_uuid=True),
        sa.ForeignKey(target, ondelete=ondelete),
        nullable=nullable,
    )


def upgrade() -> None:
    json_type = sa.JSON().with_variant(postgresql.JSONB, "postgresql")

    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")

    op.create_table(
        "participants",
        _id_column(),
        sa.Column("first_name", sa.String(length=100), nullable=False),
        sa.Column("last_name", sa.String(length=100), nullable=False),
        sa.Column("ndis_number", sa.String(length=20), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=20), nullable=True),
        sa.Column(
            "invoice_approval_enabled",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("false"),
        ),
        sa.Column("invoice_approval_method", sa.String(length=8), nullable=True),
        _created_at(),
    )

    op.create_table(
        "providers",
        _id_column(),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("abn", sa.String(length=14), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        _created_at(),
    )
    op.create_index("ix_providers_abn", "providers", ["abn"], unique=False)

    op.create_table(
        "plans",
        _id_column(),
        _fk("participant_id", "participants.id", "CASCADE", nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'ACTIVE'")),
        _created_at(),
    )

    op.create_table(
        "budget_lines",
        _id_column(),
        _fk("plan_id", "plans.id", "CASCADE", nullable=False),
        sa.Column("category_code", sa.String(length=8), nullable=False),
        sa.Column("category_name", sa.String(length=128), nullable=False, server_default=sa.text("''")),
        _cents("allocated_cents"),
        _cents("spent_cents"),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.UniqueConstraint("plan_id", "category_code", name="uq_budget_line_plan_category"),
        sa.CheckConstraint("allocated_cents >= 0", name="chk_budget_line_allocated_non_negative"),
    )

    op.create_table(
        "service_agreements",
        _id_column(),
        sa.Column("agreement_ref", sa.String(length=32), nullable=False, unique=True),
        _fk("participant_id", "participants.id", "CASCADE", nullable=False),
        _fk("provider_id", "providers.id", "RESTRICT", nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'DRAFT'")),
        _created_at(),
    )

    op.create_table(
        "service_agreement_rate_lines",
        _id_column(),
        _fk("agreement_id", "service_agreements.id", "CASCADE", nullable=False),
        sa.Column("category_code", sa.String(length=8), nullable=False),
        sa.Column("support_item_code", sa.String(length=32), nullable=True),
        _cents("agreed_rate_cents", default=False),
        sa.Column("max_quantity", sa.Numeric(10, 2), nullable=True),
    )

    op.create_table(
        "invoices",
        _id_column(),
        _fk("participant_id", "participants.id", "SET NULL"),
        _fk("provider_id", "providers.id", "SET NULL"),
        _fk("plan_id", "plans.id", "SET NULL"),
        _fk("budget_line_id", "budget_lines.id", "SET NULL"),
        sa.Column("invoice_number", sa.String(length=64), nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("invoice_date", sa.Date(), nullable=False),
        _cents("subtotal_cents"),
        _cents("gst_cents"),
        _cents("total_cents"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default=sa.text("'RECEIVED'")),
        sa.Column("status_changed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ingest_source", sa.String(length=16), nullable=False, server_default=sa.text("'MANUAL'")),
        sa.Column("source_email", sa.String(length=255), nullable=True),
        sa.Column("storage_bucket", sa.String(length=128), nullable=True),
        sa.Column("storage_path", sa.Text(), nullable=True),
        sa.Column("ocr_job_id", sa.String(length=128), nullable=True),
        sa.Column("ai_confidence", sa.Float(), nullable=True),
        sa.Column("ai_extracted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ai_raw_data", json_type, nullable=True),
        sa.Column("approved_by_id", sa.String(length=64), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_by_id", sa.String(length=64), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("participant_approval_status", sa.String(length=16), nullable=True),
        sa.Column("approval_method", sa.String(length=8), nullable=True),
        sa.Column("approval_token_hash", sa.String(length=64), nullable=True),
        sa.Column("approval_token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approval_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("participant_approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approval_skipped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        _created_at(),
        _updated_at(),
    )
    op.create_index("idx_invoices_status", "invoices", ["status"], unique=False)
    op.create_index("idx_invoices_participant", "invoices", ["participant_id"], unique=False)
    op.create_index("idx_invoices_ocr_job", "invoices", ["ocr_job_id"], unique=False)
    op.create_index(
        "idx_invoices_approval_expiry",
        "invoices",
        ["status", "approval_token_expires_at"],
        unique=False,
    )
    op.create_index(
        "idx_invoices_email_source_key",
        "invoices",
        [sa.text("(ai_raw_data ->> 'source_key')")],
        unique=False,
        postgresql_where=sa.text("ingest_source = 'EMAIL'"),
    )

    op.create_table(
        "invoice_lines",
        _id_column(),
        _fk("invoice_id", "invoices.id", "CASCADE", nullable=False),
        sa.Column("line_no", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("support_item_code", sa.String(length=32), nullable=False),
        sa.Column("support_item_name", sa.String(length=255), nullable=False),
        sa.Column("category_code", sa.String(length=8), nullable=False),
        sa.Column("service_date", sa.Date(), nullable=False),
        sa.Column("quantity", sa.Numeric(10, 2), nullable=False, server_default=sa.text("1")),
        _cents("unit_price_cents", default=False),
        _cents("total_cents", default=False),
        _cents("gst_cents"),
    )
    op.create_index("ix_invoice_lines_invoice_id", "invoice_lines", ["invoice_id"], unique=False)

    op.create_table(
        "claim_batches",
        _id_column(),
        sa.Column("batch_number", sa.String(length=32), nullable=False, unique=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("claim_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _cents("total_cents"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("payer_batch_id", sa.String(length=64), nullable=True),
        sa.Column("submitted_by_id", sa.String(length=64), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by_id", sa.String(length=64), nullable=True),
        _created_at(),
    )

    op.create_table(
        "claims",
        _id_column(),
        sa.Column("claim_reference", sa.String(length=32), nullable=False, unique=True),
        sa.Column(
            "invoice_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("invoices.id", ondelete="RESTRICT"),
            nullable=False,
            unique=True,
        ),
        _fk("participant_id", "participants.id", "SET NULL"),
        _fk("batch_id", "claim_batches.id", "SET NULL"),
        _cents("claimed_cents", default=False),
        _cents("approved_cents", nullable=True, default=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("payer_reference", sa.String(length=64), nullable=True),
        sa.Column("submitted_by_id", sa.String(length=64), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("outcome_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("outcome_notes", sa.Text(), nullable=True),
        sa.Column("outcome_by_id", sa.String(length=64), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by_id", sa.String(length=64), nullable=True),
        _created_at(),
        sa.CheckConstraint("claimed_cents >= 0", name="chk_claim_claimed_non_negative"),
    )
    op.create_index("idx_claims_status", "claims", ["status"], unique=False)
    op.create_index("ix_claims_batch_id", "claims", ["batch_id"], unique=False)

    op.create_table(
        "claim_lines",
        _id_column(),
        _fk("claim_id", "claims.id", "CASCADE", nullable=False),
        _fk("invoice_line_id", "invoice_lines.id", "SET NULL"),
        sa.Column("line_no", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("support_item_code", sa.String(length=32), nullable=False),
        sa.Column("support_item_name", sa.String(length=255), nullable=False),
        sa.Column("category_code", sa.String(length=8), nullable=False),
        sa.Column("service_date", sa.Date(), nullable=False),
        sa.Column("quantity", sa.Numeric(10, 2), nullable=False, server_default=sa.text("1")),
        _cents("unit_price_cents", default=False),
        _cents("total_cents", default=False),
        _cents("gst_cents"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'PENDING'")),
        _cents("approved_cents", nullable=True, default=False),
        sa.Column("outcome_notes", sa.Text(), nullable=True),
    )
    op.create_index("ix_claim_lines_claim_id", "claim_lines", ["claim_id"], unique=False)

    op.create_table(
        "fund_quarantines",
        _id_column(),
        _fk("budget_line_id", "budget_lines.id", "CASCADE", nullable=False),
        _fk("provider_id", "providers.id", "SET NULL"),
        _fk("service_agreement_id", "service_agreements.id", "SET NULL"),
        sa.Column("support_item_code", sa.String(length=32), nullable=True),
        _cents("quarantined_cents", default=False),
        _cents("used_cents"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'ACTIVE'")),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by_id", sa.String(length=64), nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        _created_at(),
        _updated_at(),
        sa.CheckConstraint("quarantined_cents > 0", name="chk_fq_quarantined_positive"),
        sa.CheckConstraint(
            "used_cents >= 0 AND used_cents <= quarantined_cents",
            name="chk_fq_used_within_quarantined",
        ),
        sa.CheckConstraint("status IN ('ACTIVE','RELEASED','EXPIRED')", name="chk_fq_status"),
    )
    op.create_index(
        "idx_fq_budget_line_status",
        "fund_quarantines",
        ["budget_line_id", "status"],
        unique=False,
    )

    op.create_table(
        "audit_logs",
        _id_column(),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("entity_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("old_value", json_type, nullable=True),
        sa.Column("new_value", json_type, nullable=True),
        sa.Column("actor_type", sa.String(length=50), nullable=False),
        sa.Column("actor_id", sa.String(length=64), nullable=True),
        sa.Column("ip_address", postgresql.INET(), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("metadata", json_type, nullable=True),
        sa.Column(
            "timestamp",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    )
    op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"], unique=False)
    op.create_index("idx_audit_action_timestamp", "audit_logs", ["action", "timestamp"], unique=False)

    op.create_table(
        "domain_event_outbox",
        _id_column(),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("payload_json", json_type, nullable=False),
        sa.Column("dedupe_key", sa.String(length=160), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "next_attempt_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        _created_at(),
        sa.UniqueConstraint("dedupe_key", name="uq_domain_event_outbox_dedupe_key"),
    )
    op.create_index(
        "idx_domain_event_outbox_due",
        "domain_event_outbox",
        ["status", "next_attempt_at"],
        unique=False,
    )

    op.create_table(
        "notification_outbox",
        _id_column(),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("template_key", sa.String(length=64), nullable=False),
        sa.Column("payload_json", json_type, nullable=False),
        sa.Column("dedupe_key", sa.String(length=160), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "next_attempt_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        _created_at(),
        sa.UniqueConstraint("dedupe_key", name="uq_notification_outbox_dedupe_key"),
    )
    op.create_index(
        "idx_notification_outbox_due",
        "notification_outbox",
        ["status", "next_attempt_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_notification_outbox_due", table_name="notification_outbox")
    op.drop_table("notification_outbox")
    op.drop_index("idx_domain_event_outbox_due", table_name="domain_event_outbox")
    op.drop_table("domain_event_outbox")
    op.drop_index("idx_audit_action_timestamp", table_name="audit_logs")
    op.drop_index("idx_audit_entity", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("idx_fq_budget_line_status", table_name="fund_quarantines")
    op.drop_table("fund_quarantines")
    op.drop_index("ix_claim_lines_claim_id", table_name="claim_lines")
    op.drop_table("claim_lines")
    op.drop_index("ix_claims_batch_id", table_name="claims")
    op.drop_index("idx_claims_status", table_name="claims")
    op.drop_table("claims")
    op.drop_table("claim_batches")
    op.drop_index("ix_invoice_lines_invoice_id", table_name="invoice_lines")
    op.drop_table("invoice_lines")
    op.drop_index("idx_invoices_email_source_key", table_name="invoices")
    op.drop_index("idx_invoices_approval_expiry", table_name="invoices")
    op.drop_index("idx_invoices_ocr_job", table_name="invoices")
    op.drop_index("idx_invoices_participant", table_name="invoices")
    op.drop_index("idx_invoices_status", table_name="invoices")
    op.drop_table("invoices")
    op.drop_table("service_agreement_rate_lines")
    op.drop_table("service_agreements")
    op.drop_table("budget_lines")
    op.drop_table("plans")
    op.drop_index("ix_providers_abn", table_name="providers")
    op.drop_table("providers")
    op.drop_table("participants")
