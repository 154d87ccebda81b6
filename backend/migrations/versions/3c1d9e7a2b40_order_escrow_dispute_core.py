"""order, escrow and dispute core tables

Revision ID: 3c1d9e7a2b40
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision = "3c1d9e7a2b40"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(insp, table_name: str) -> bool:
    return table_name in set(insp.get_table_names())


def _timestamps(*, updated: bool = True) -> list:
    cols = [sa.Column("created_at", sa.DateTime(), nullable=False)]
    if updated:
        cols.append(sa.Column("updated_at", sa.DateTime(), nullable=False))
    return cols


def upgrade():
    bind = op.get_bind()
    insp = inspect(bind)

    if not _table_exists(insp, "orders"):
        op.create_table(
            "orders",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("item_id", sa.String(length=64), nullable=False),
            sa.Column("buyer_id", sa.String(length=64), nullable=False),
            sa.Column("seller_id", sa.String(length=64), nullable=False),
            sa.Column("rider_id", sa.String(length=64), nullable=True),
            sa.Column("total_minor", sa.Integer(), nullable=False),
            sa.Column("platform_fee_minor", sa.Integer(), nullable=False),
            sa.Column("seller_net_minor", sa.Integer(), nullable=False),
            sa.Column("fee_bps", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="created"),
            sa.Column("escrow_status", sa.String(length=32), nullable=False, server_default="none"),
            sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("payment_method", sa.String(length=32), nullable=False, server_default="card"),
            sa.Column("payment_reference", sa.String(length=128), nullable=True, unique=True),
            sa.Column("pickup_code_hash", sa.String(length=64), nullable=True),
            sa.Column("pickup_code_attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("dropoff_code_hash", sa.String(length=64), nullable=True),
            sa.Column("dropoff_code_attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("paid_at", sa.DateTime(), nullable=True),
            sa.Column("delivered_at", sa.DateTime(), nullable=True),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.Column("cancelled_at", sa.DateTime(), nullable=True),
            sa.Column("cancel_reason", sa.String(length=240), nullable=True),
            sa.Column("halted_at", sa.DateTime(), nullable=True),
            sa.Column("halt_reason", sa.String(length=240), nullable=True),
            *_timestamps(),
            sa.CheckConstraint("seller_net_minor + platform_fee_minor = total_minor", name="ck_orders_fee_split"),
        )
        for col in ("item_id", "buyer_id", "seller_id", "rider_id", "status", "escrow_status", "delivered_at"):
            op.create_index(f"ix_orders_{col}", "orders", [col])

    if not _table_exists(insp, "order_transitions"):
        op.create_table(
            "order_transitions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("from_status", sa.String(length=32), nullable=False, server_default=""),
            sa.Column("to_status", sa.String(length=32), nullable=False),
            sa.Column("event", sa.String(length=32), nullable=False),
            sa.Column("actor_type", sa.String(length=32), nullable=False, server_default="system"),
            sa.Column("actor_id", sa.String(length=64), nullable=True),
            sa.Column("reason", sa.String(length=240), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            *_timestamps(updated=False),
            sa.UniqueConstraint("order_id", "to_status", name="uq_order_transition_order_status"),
        )
        op.create_index("ix_order_transitions_order_id", "order_transitions", ["order_id"])

    if not _table_exists(insp, "wallets"):
        op.create_table(
            "wallets",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("available_minor", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("pending_minor", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("lifetime_earned_minor", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("lifetime_spent_minor", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("payout_destination", sa.String(length=128), nullable=True),
            sa.Column("frozen_at", sa.DateTime(), nullable=True),
            sa.Column("frozen_reason", sa.String(length=240), nullable=True),
            sa.Column("last_reconciled_at", sa.DateTime(), nullable=True),
            *_timestamps(),
        )
        op.create_index("ix_wallets_user_id", "wallets", ["user_id"], unique=True)

    if not _table_exists(insp, "ledger_entries"):
        op.create_table(
            "ledger_entries",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("amount_minor", sa.Integer(), nullable=False),
            sa.Column("entry_type", sa.String(length=32), nullable=False),
            sa.Column("reference_type", sa.String(length=32), nullable=True),
            sa.Column("reference_id", sa.String(length=64), nullable=True),
            sa.Column("description", sa.String(length=240), nullable=True),
            sa.Column("idempotency_key", sa.String(length=160), nullable=True, unique=True),
            *_timestamps(updated=False),
        )
        for col in ("user_id", "entry_type", "reference_id", "created_at"):
            op.create_index(f"ix_ledger_entries_{col}", "ledger_entries", [col])

    if not _table_exists(insp, "external_transfers"):
        op.create_table(
            "external_transfers",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("kind", sa.String(length=32), nullable=False),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=True),
            sa.Column("amount_minor", sa.Integer(), nullable=False),
            sa.Column("destination", sa.String(length=128), nullable=False),
            sa.Column("provider_reference", sa.String(length=128), nullable=True),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_error", sa.String(length=400), nullable=True),
            sa.Column("idempotency_key", sa.String(length=160), nullable=False, unique=True),
            *_timestamps(),
        )
        for col in ("kind", "status", "user_id", "order_id", "provider_reference"):
            op.create_index(f"ix_external_transfers_{col}", "external_transfers", [col])

    if not _table_exists(insp, "disputes"):
        op.create_table(
            "disputes",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False, unique=True),
            sa.Column("reporter_id", sa.String(length=64), nullable=False),
            sa.Column("reported_id", sa.String(length=64), nullable=False),
            sa.Column("dispute_type", sa.String(length=32), nullable=False),
            sa.Column("description", sa.Text(), nullable=False),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="open"),
            sa.Column("priority", sa.String(length=32), nullable=False, server_default="medium"),
            sa.Column("decision", sa.String(length=32), nullable=True),
            sa.Column("seller_award_minor", sa.Integer(), nullable=True),
            sa.Column("resolution", sa.Text(), nullable=True),
            sa.Column("resolved_by", sa.String(length=64), nullable=True),
            sa.Column("resolved_at", sa.DateTime(), nullable=True),
            sa.Column("closed_at", sa.DateTime(), nullable=True),
            *_timestamps(),
        )
        for col in ("reporter_id", "reported_id", "status"):
            op.create_index(f"ix_disputes_{col}", "disputes", [col])

    if not _table_exists(insp, "dispute_messages"):
        op.create_table(
            "dispute_messages",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("dispute_id", sa.Integer(), sa.ForeignKey("disputes.id"), nullable=False),
            sa.Column("sender_id", sa.String(length=64), nullable=True),
            sa.Column("content", sa.Text(), nullable=False),
            sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
            *_timestamps(updated=False),
        )
        op.create_index("ix_dispute_messages_dispute_id", "dispute_messages", ["dispute_id"])

    if not _table_exists(insp, "dispute_evidence"):
        op.create_table(
            "dispute_evidence",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("dispute_id", sa.Integer(), sa.ForeignKey("disputes.id"), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("evidence_type", sa.String(length=32), nullable=False),
            sa.Column("content", sa.Text(), nullable=False),
            sa.Column("description", sa.String(length=400), nullable=True),
            *_timestamps(updated=False),
        )
        op.create_index("ix_dispute_evidence_dispute_id", "dispute_evidence", ["dispute_id"])

    if not _table_exists(insp, "promotions"):
        op.create_table(
            "promotions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("seller_id", sa.String(length=64), nullable=False),
            sa.Column("item_id", sa.String(length=64), nullable=False),
            sa.Column("plan_code", sa.String(length=64), nullable=False),
            sa.Column("price_minor", sa.Integer(), nullable=False),
            sa.Column("duration_hours", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
            sa.Column("payment_method", sa.String(length=32), nullable=False, server_default="card"),
            sa.Column("payment_reference", sa.String(length=128), nullable=True, unique=True),
            sa.Column("paid_at", sa.DateTime(), nullable=True),
            sa.Column("starts_at", sa.DateTime(), nullable=True),
            sa.Column("ends_at", sa.DateTime(), nullable=True),
            sa.Column("cancelled_at", sa.DateTime(), nullable=True),
            *_timestamps(),
        )
        for col in ("seller_id", "item_id", "status", "ends_at"):
            op.create_index(f"ix_promotions_{col}", "promotions", [col])

    if not _table_exists(insp, "webhook_events"):
        op.create_table(
            "webhook_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("provider", sa.String(length=32), nullable=False, server_default="paystack"),
            sa.Column("event_id", sa.String(length=128), nullable=False),
            sa.Column("event_type", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("reference", sa.String(length=128), nullable=True),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="processed"),
            sa.Column("request_id", sa.String(length=80), nullable=True),
            sa.Column("payload_hash", sa.String(length=64), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("processed_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("provider", "event_id", name="uq_webhook_provider_event"),
        )
        op.create_index("ix_webhook_events_reference", "webhook_events", ["reference"])

    if not _table_exists(insp, "platform_events"):
        op.create_table(
            "platform_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            *_timestamps(updated=False),
            sa.Column("event_type", sa.String(length=80), nullable=False),
            sa.Column("actor_id", sa.String(length=64), nullable=True),
            sa.Column("subject_type", sa.String(length=40), nullable=True),
            sa.Column("subject_id", sa.String(length=64), nullable=True),
            sa.Column("recipients_json", sa.Text(), nullable=True),
            sa.Column("request_id", sa.String(length=80), nullable=True),
            sa.Column("idempotency_key", sa.String(length=180), nullable=True, unique=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("dispatched_at", sa.DateTime(), nullable=True),
            sa.Column("dispatch_attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_error", sa.String(length=400), nullable=True),
        )
        for col in ("created_at", "event_type", "subject_type", "subject_id", "dispatched_at"):
            op.create_index(f"ix_platform_events_{col}", "platform_events", [col])

    if not _table_exists(insp, "idempotency_keys"):
        op.create_table(
            "idempotency_keys",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("key", sa.String(length=128), nullable=False),
            sa.Column("scope", sa.String(length=128), nullable=False, server_default=""),
            sa.Column("user_id", sa.String(length=64), nullable=True),
            sa.Column("request_hash", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("response_json", sa.Text(), nullable=True),
            sa.Column("response_code", sa.Integer(), nullable=False, server_default="200"),
            *_timestamps(),
            sa.UniqueConstraint("scope", "key", name="uq_idempotency_scope_key"),
        )
        op.create_index("ix_idempotency_keys_key", "idempotency_keys", ["key"])

    if not _table_exists(insp, "job_runs"):
        op.create_table(
            "job_runs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("job_name", sa.String(length=64), nullable=False),
            sa.Column("ran_at", sa.DateTime(), nullable=False),
            sa.Column("ok", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("duration_ms", sa.Integer(), nullable=True),
            sa.Column("counts_json", sa.Text(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
        )
        for col in ("job_name", "ran_at", "ok"):
            op.create_index(f"ix_job_runs_{col}", "job_runs", [col])

    if not _table_exists(insp, "reconciliation_reports"):
        op.create_table(
            "reconciliation_reports",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("scope", sa.String(length=64), nullable=False, server_default="wallet_ledger"),
            sa.Column("summary_json", sa.Text(), nullable=True),
            sa.Column("wallet_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("drift_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_by", sa.String(length=64), nullable=True),
            *_timestamps(updated=False),
        )
        op.create_index("ix_reconciliation_reports_created_at", "reconciliation_reports", ["created_at"])


def downgrade():
    for table_name in (
        "reconciliation_reports",
        "job_runs",
        "idempotency_keys",
        "platform_events",
        "webhook_events",
        "promotions",
        "dispute_evidence",
        "dispute_messages",
        "disputes",
        "external_transfers",
        "ledger_entries",
        "wallets",
        "order_transitions",
        "orders",
    ):
        op.drop_table(table_name)
