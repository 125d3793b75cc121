"""Initial schema: payments, transactions, disputes, outbox

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "payments",
        sa.Column("id", sa.String(26), primary_key=True),
        sa.Column("idempotency_key", sa.String(255), nullable=False),
        sa.Column("payer_id", sa.String(255), nullable=False),
        sa.Column("payee_id", sa.String(255), nullable=False),
        sa.Column("reference_id", sa.String(255), nullable=True),
        sa.Column("amount", sa.Numeric(19, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("platform_commission", sa.Numeric(19, 2), nullable=False, server_default="0"),
        sa.Column("payee_payout", sa.Numeric(19, 2), nullable=False, server_default="0"),
        sa.Column("refunded_amount", sa.Numeric(19, 2), nullable=False, server_default="0"),
        sa.Column("commission_reversed", sa.Numeric(19, 2), nullable=False, server_default="0"),
        sa.Column("commission_rate", sa.Numeric(7, 4), nullable=True),
        sa.Column("status", sa.String(30), nullable=False),
        sa.Column("hold_days", sa.Integer, nullable=False),
        sa.Column("escrow_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("release_eligible_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_release_attempted", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("settlement_batch_id", sa.String(255), nullable=True),
        sa.Column("gateway_order_id", sa.String(255), nullable=True),
        sa.Column("gateway_payment_id", sa.String(255), nullable=True),
        sa.Column("gateway_signature", sa.String(255), nullable=True),
        sa.Column("payment_method", sa.String(50), nullable=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("refund_ids", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("status_history", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("metadata", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("authorized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("captured_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.Text, nullable=True),
        sa.Column("version", sa.BigInteger, nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
        sa.CheckConstraint("refunded_amount <= amount", name="ck_payments_refund_within_amount"),
    )
    op.create_index("ix_payments_idempotency_key", "payments", ["idempotency_key"], unique=True)
    op.create_index("ix_payments_gateway_order_id", "payments", ["gateway_order_id"], unique=True)
    # Gateway references are unique when present; NULLs never collide.
    op.create_index("uq_payments_gateway_payment_id", "payments", ["gateway_payment_id"], unique=True)
    op.create_index("uq_payments_gateway_signature", "payments", ["gateway_signature"], unique=True)
    op.create_index("ix_payments_payer_id", "payments", ["payer_id"])
    op.create_index("ix_payments_payee_id", "payments", ["payee_id"])
    op.create_index("ix_payments_created_at", "payments", ["created_at"])
    op.create_index(
        "ix_payments_release_eligible",
        "payments",
        ["release_eligible_at"],
        postgresql_where=sa.text("status = 'IN_ESCROW' AND auto_release_attempted = false"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(26), primary_key=True),
        sa.Column("payment_id", sa.String(26), sa.ForeignKey("payments.id"), nullable=False),
        sa.Column("type", sa.String(30), nullable=False),
        sa.Column("amount", sa.Numeric(19, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("external_reference", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_transactions_payment_id", "transactions", ["payment_id"])
    op.create_index("ix_transactions_created_at", "transactions", ["created_at"])
    op.create_index(
        "uq_transactions_refund_reference",
        "transactions",
        ["external_reference"],
        unique=True,
        postgresql_where=sa.text("type IN ('REFUND', 'PARTIAL_REFUND')"),
    )

    op.create_table(
        "disputes",
        sa.Column("id", sa.String(26), primary_key=True),
        sa.Column("payment_id", sa.String(26), sa.ForeignKey("payments.id"), nullable=False),
        sa.Column("raised_by", sa.String(255), nullable=False),
        sa.Column("raised_by_role", sa.String(10), nullable=False),
        sa.Column("reason", sa.Text, nullable=False),
        sa.Column("category", sa.String(100), nullable=True),
        sa.Column("disputed_amount", sa.Numeric(19, 2), nullable=False),
        sa.Column("status", sa.String(30), nullable=False),
        sa.Column("evidence", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("resolution_notes", sa.Text, nullable=True),
        sa.Column("resolved_by", sa.String(255), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_resolve_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("version", sa.BigInteger, nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_disputes_payment_id", "disputes", ["payment_id"])
    op.create_index("ix_disputes_status_auto_resolve_at", "disputes", ["status", "auto_resolve_at"])
    # At most one active dispute per payment; the repository maps violations by this name.
    op.create_index(
        "uq_disputes_active_payment",
        "disputes",
        ["payment_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('OPEN', 'UNDER_REVIEW')"),
    )

    op.create_table(
        "outbox",
        sa.Column("id", sa.String(26), primary_key=True),
        sa.Column("aggregate_type", sa.String(100), nullable=False),
        sa.Column("aggregate_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dead_lettered_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_outbox_pending",
        "outbox",
        ["created_at"],
        postgresql_where=sa.text("published_at IS NULL AND dead_lettered_at IS NULL"),
    )
    op.create_index("ix_outbox_aggregate", "outbox", ["aggregate_type", "aggregate_id"])


def downgrade() -> None:
    op.drop_table("outbox")
    op.drop_table("disputes")
    op.drop_table("transactions")
    op.drop_table("payments")
