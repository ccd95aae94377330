"""initial rcm schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "payment_intents",
        sa.Column("intent_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("provider_id", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("gateway_id", sa.String(), nullable=False),
        sa.Column("gateway_reference", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("state_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("request_hash", sa.String(), nullable=False),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("refunded_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pending_verification", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("pending_operation", sa.String(), nullable=True),
        sa.Column("failure_code", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("intent_id"),
        sa.UniqueConstraint("tenant_id", "idempotency_key", name="uq_intent_idempotency"),
    )
    op.create_index("ix_payment_intents_tenant_id", "payment_intents", ["tenant_id"])
    op.create_index("ix_payment_intents_provider_id", "payment_intents", ["provider_id"])
    op.create_index("ix_payment_intents_gateway_id", "payment_intents", ["gateway_id"])
    op.create_index("ix_payment_intents_status", "payment_intents", ["status"])
    op.create_index("ix_payment_intents_pending_verification", "payment_intents", ["pending_verification"])
    op.create_index("ix_payment_intents_created_at", "payment_intents", ["created_at"])
    op.create_index("ix_payment_intents_tenant_id_created_at", "payment_intents", ["tenant_id", "created_at"])

    op.create_table(
        "payment_timeline",
        sa.Column("timeline_id", sa.String(), nullable=False),
        sa.Column("intent_id", sa.String(), nullable=False),
        sa.Column("from_state", sa.String(), nullable=True),
        sa.Column("to_state", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["intent_id"], ["payment_intents.intent_id"]),
        sa.PrimaryKeyConstraint("timeline_id"),
    )
    op.create_index("ix_payment_timeline_intent_id", "payment_timeline", ["intent_id"])

    op.create_table(
        "gateway_configs",
        sa.Column("config_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("gateway_id", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=False),
        sa.Column("credentials_ref", sa.String(), nullable=True),
        sa.Column("capabilities", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("options", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False),
        sa.Column("is_sandbox", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("config_id"),
        sa.UniqueConstraint("tenant_id", "gateway_id", name="uq_gateway_tenant"),
    )
    op.create_index("ix_gateway_configs_tenant_id", "gateway_configs", ["tenant_id"])

    op.create_table(
        "gateway_requests",
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("gateway_id", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("operation", sa.String(), nullable=False),
        sa.Column("request_hash", sa.String(), nullable=False),
        sa.Column("response", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("tenant_id", "gateway_id", "idempotency_key"),
    )

    op.create_table(
        "transaction_records",
        sa.Column("record_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("source_key", sa.String(), nullable=False),
        sa.Column("intent_id", sa.String(), nullable=True),
        sa.Column("claim_id", sa.String(), nullable=True),
        sa.Column("service_date", sa.Date(), nullable=True),
        sa.Column("denial_reason", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("record_id"),
        sa.UniqueConstraint("tenant_id", "source_key", name="uq_transaction_source"),
    )
    op.create_index("ix_transaction_records_tenant_id", "transaction_records", ["tenant_id"])
    op.create_index("ix_transaction_records_kind", "transaction_records", ["kind"])
    op.create_index("ix_transaction_records_occurred_at", "transaction_records", ["occurred_at"])
    op.create_index("ix_transaction_records_claim_id", "transaction_records", ["claim_id"])
    op.create_index(
        "ix_transaction_records_tenant_id_occurred_at",
        "transaction_records",
        ["tenant_id", "occurred_at"],
    )

    op.create_table(
        "outbox_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("aggregate_type", sa.String(), nullable=False),
        sa.Column("aggregate_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("topic", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_outbox_events_aggregate_id", "outbox_events", ["aggregate_id"])
    op.create_index("ix_outbox_events_event_type", "outbox_events", ["event_type"])
    op.create_index("ix_outbox_events_status", "outbox_events", ["status"])
    op.create_index("ix_outbox_events_status_created_at", "outbox_events", ["status", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_outbox_events_status_created_at", table_name="outbox_events")
    op.drop_index("ix_outbox_events_status", table_name="outbox_events")
    op.drop_index("ix_outbox_events_event_type", table_name="outbox_events")
    op.drop_index("ix_outbox_events_aggregate_id", table_name="outbox_events")
    op.drop_table("outbox_events")
    op.drop_index("ix_transaction_records_tenant_id_occurred_at", table_name="transaction_records")
    op.drop_index("ix_transaction_records_claim_id", table_name="transaction_records")
    op.drop_index("ix_transaction_records_occurred_at", table_name="transaction_records")
    op.drop_index("ix_transaction_records_kind", table_name="transaction_records")
    op.drop_index("ix_transaction_records_tenant_id", table_name="transaction_records")
    op.drop_table("transaction_records")
    op.drop_table("gateway_requests")
    op.drop_index("ix_gateway_configs_tenant_id", table_name="gateway_configs")
    op.drop_table("gateway_configs")
    op.drop_index("ix_payment_timeline_intent_id", table_name="payment_timeline")
    op.drop_table("payment_timeline")
    op.drop_index("ix_payment_intents_tenant_id_created_at", table_name="payment_intents")
    op.drop_index("ix_payment_intents_created_at", table_name="payment_intents")
    op.drop_index("ix_payment_intents_pending_verification", table_name="payment_intents")
    op.drop_index("ix_payment_intents_status", table_name="payment_intents")
    op.drop_index("ix_payment_intents_gateway_id", table_name="payment_intents")
    op.drop_index("ix_payment_intents_provider_id", table_name="payment_intents")
    op.drop_index("ix_payment_intents_tenant_id", table_name="payment_intents")
    op.drop_table("payment_intents")
