"""Initial marketplace ledger.

This migration creates every ledger table:
    - ai_accounts, humans: tenants and workers
    - tasks, submissions, task_contacts: task lifecycle
    - orders: payment orders keyed by (id, version)
    - idempotency_keys: request idempotency ledger
    - ai_api_usage_monthly, ai_api_usage_minute, ai_api_usage_warnings: quota counters
    - webhook_endpoints, webhook_deliveries, outbox_events: outbound events
    - stripe_webhook_events: inbound settlement provider events

Revision ID: 001_initial_ledger
Revises:
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial_ledger"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

ENUMS = {
    "accountstatus": ("active", "suspended"),
    "apiaccessstatus": ("active", "disabled"),
    "humanstatus": ("available", "busy"),
    "taskstatus": ("open", "accepted", "review_pending", "completed", "failed"),
    "failurereason": (
        "no_human_available",
        "timeout",
        "invalid_request",
        "wrong_deliverable",
        "already_assigned",
        "not_assigned",
        "missing_human",
        "not_found",
        "requester_rejected",
        "unknown",
    ),
    "deliverablekind": ("photo", "video", "text"),
    "paidstatus": ("pending", "approved", "paid", "failed"),
    "contactstatus": ("pending", "open", "closed"),
    "orderstatus": (
        "created",
        "checkout_created",
        "paid",
        "partially_refunded",
        "refunded",
        "failed_mismatch",
    ),
    "refundstatus": ("pending", "partial", "full", "failed"),
    "webhookendpointstatus": ("active", "disabled"),
    "outboxstatus": ("pending", "processing", "dispatched", "failed"),
    "settlementeventstatus": ("pending", "processing", "processed", "failed"),
}


def _enum(name: str) -> postgresql.ENUM:
    # Types are created once up front; several tables share deliverablekind
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(
        name, sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
    )


def upgrade() -> None:
    """Create ledger tables with indexes and constraints."""
    bind = op.get_bind()
    for name, values in ENUMS.items():
        postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    op.create_table(
        "ai_accounts",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False, server_default=""),
        sa.Column("api_key_hash", sa.String(64), nullable=False),
        sa.Column("status", _enum("accountstatus"), nullable=False, server_default="active"),
        sa.Column(
            "api_access_status",
            _enum("apiaccessstatus"),
            nullable=False,
            server_default="active",
        ),
        sa.Column("monthly_limit", sa.Integer(), nullable=True),
        sa.Column("burst_per_minute", sa.Integer(), nullable=True),
        _timestamp("created_at"),
        _timestamp("deleted_at", nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "humans",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False, server_default=""),
        sa.Column("api_key_hash", sa.String(64), nullable=False),
        sa.Column("country", sa.String(2), nullable=False),
        sa.Column("location", sa.String(255), nullable=True),
        sa.Column("min_budget_usd", sa.Numeric(12, 2), nullable=False, server_default="5"),
        sa.Column("status", _enum("humanstatus"), nullable=False, server_default="available"),
        sa.Column("payout_email", sa.String(255), nullable=True),
        sa.Column("stripe_account_id", sa.String(64), nullable=True),
        sa.Column("payout_hold_status", sa.String(16), nullable=True),
        sa.Column("payout_hold_reason", sa.Text(), nullable=True),
        _timestamp("payout_hold_until", nullable=True),
        _timestamp("created_at"),
        _timestamp("deleted_at", nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "tasks",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("ai_account_id", sa.String(64), nullable=True),
        sa.Column("human_id", sa.String(64), nullable=True),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("description_display", sa.Text(), nullable=True),
        sa.Column("origin_country", sa.String(2), nullable=False),
        sa.Column("budget_usd", sa.Numeric(12, 2), nullable=False),
        sa.Column("quote_amount_minor", sa.Integer(), nullable=True),
        sa.Column("quote_currency", sa.String(3), nullable=True),
        sa.Column("deliverable", _enum("deliverablekind"), nullable=True),
        _timestamp("deadline_at", nullable=True),
        sa.Column("deadline_minutes", sa.Integer(), nullable=True),
        sa.Column("status", _enum("taskstatus"), nullable=False, server_default="open"),
        sa.Column("failure_reason", _enum("failurereason"), nullable=True),
        sa.Column("payout_destination", sa.String(255), nullable=True),
        sa.Column("submission_id", sa.String(36), nullable=True),
        _timestamp("review_pending_deadline_at", nullable=True),
        _timestamp("completed_at", nullable=True),
        sa.Column("paid_status", _enum("paidstatus"), nullable=False, server_default="pending"),
        _timestamp("paid_at", nullable=True),
        sa.Column("paid_method", sa.String(32), nullable=True),
        sa.Column("fee_rate", sa.Numeric(5, 4), nullable=True),
        sa.Column("fee_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("processor_fee_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("payout_amount", sa.Numeric(12, 2), nullable=True),
        _timestamp("deleted_at", nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["ai_account_id"],
            ["ai_accounts.id"],
            name="fk_tasks_ai_account_id",
            ondelete="RESTRICT",
        ),
        sa.ForeignKeyConstraint(
            ["human_id"], ["humans.id"], name="fk_tasks_human_id", ondelete="RESTRICT"
        ),
    )
    op.create_index("ix_tasks_status", "tasks", ["status"])
    op.create_index("ix_tasks_created_at", "tasks", ["created_at"])
    op.create_index("ix_tasks_ai_account_id_status", "tasks", ["ai_account_id", "status"])
    op.create_index("ix_tasks_human_id_status", "tasks", ["human_id", "status"])

    op.create_table(
        "submissions",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("task_id", sa.String(36), nullable=False),
        sa.Column("human_id", sa.String(64), nullable=False),
        sa.Column("kind", _enum("deliverablekind"), nullable=False),
        sa.Column("text", sa.Text(), nullable=True),
        sa.Column("content_url", sa.String(1000), nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["task_id"], ["tasks.id"], name="fk_submissions_task_id", ondelete="CASCADE"
        ),
    )
    op.create_index("ix_submissions_task_id", "submissions", ["task_id"])

    op.create_table(
        "task_contacts",
        sa.Column("task_id", sa.String(36), nullable=False),
        sa.Column("status", _enum("contactstatus"), nullable=False, server_default="pending"),
        _timestamp("opened_at", nullable=True),
        _timestamp("closed_at", nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("task_id"),
        sa.ForeignKeyConstraint(
            ["task_id"], ["tasks.id"], name="fk_task_contacts_task_id", ondelete="CASCADE"
        ),
    )

    op.create_table(
        "orders",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(36), nullable=False),
        sa.Column("ai_account_id", sa.String(64), nullable=False),
        sa.Column("human_id", sa.String(64), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("base_amount_minor", sa.Integer(), nullable=False),
        sa.Column("fx_cost_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_amount_minor", sa.Integer(), nullable=False),
        sa.Column("platform_fee_minor", sa.Integer(), nullable=False),
        sa.Column("intl_surcharge_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("application_fee_minor", sa.Integer(), nullable=False),
        sa.Column("payer_country", sa.String(2), nullable=False),
        sa.Column("payee_country", sa.String(2), nullable=False),
        sa.Column("is_international", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("destination_account_id", sa.String(64), nullable=False),
        sa.Column("status", _enum("orderstatus"), nullable=False, server_default="created"),
        sa.Column("checkout_session_id", sa.String(255), nullable=True),
        sa.Column("payment_intent_id", sa.String(255), nullable=True),
        sa.Column("charge_id", sa.String(255), nullable=True),
        sa.Column("mismatch_reason", sa.Text(), nullable=True),
        sa.Column("provider_error", sa.Text(), nullable=True),
        sa.Column("refund_status", _enum("refundstatus"), nullable=True),
        sa.Column("refund_amount_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("refund_reason", sa.String(64), nullable=True),
        sa.Column("refund_id", sa.String(255), nullable=True),
        _timestamp("refunded_at", nullable=True),
        sa.Column("refund_error_message", sa.Text(), nullable=True),
        sa.Column("refund_pending_amount_minor", sa.Integer(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id", "version", name="pk_orders"),
        sa.ForeignKeyConstraint(
            ["task_id"], ["tasks.id"], name="fk_orders_task_id", ondelete="RESTRICT"
        ),
        sa.CheckConstraint("total_amount_minor >= 0", name="ck_orders_total_non_negative"),
        sa.CheckConstraint(
            "refund_amount_minor >= 0 AND refund_amount_minor <= total_amount_minor",
            name="ck_orders_refund_bounded",
        ),
        sa.CheckConstraint(
            "application_fee_minor <= total_amount_minor",
            name="ck_orders_application_fee_bounded",
        ),
    )
    op.create_index("ix_orders_task_id", "orders", ["task_id"])
    op.create_index("ix_orders_checkout_session_id", "orders", ["checkout_session_id"])
    op.create_index("ix_orders_payment_intent_id", "orders", ["payment_intent_id"])

    op.create_table(
        "idempotency_keys",
        sa.Column("route", sa.String(128), nullable=False),
        sa.Column("idem_key", sa.String(255), nullable=False),
        sa.Column("ai_account_id", sa.String(64), nullable=False, server_default=""),
        sa.Column("request_hash", sa.String(64), nullable=False),
        sa.Column("status_code", sa.Integer(), nullable=True),
        sa.Column("response_body", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("route", "idem_key", "ai_account_id", name="pk_idempotency_keys"),
    )
    op.create_index("ix_idempotency_keys_created_at", "idempotency_keys", ["created_at"])

    op.create_table(
        "ai_api_usage_monthly",
        sa.Column("ai_account_id", sa.String(64), nullable=False),
        sa.Column("period_key", sa.String(7), nullable=False),
        sa.Column("request_count", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("ai_account_id", "period_key", name="pk_ai_api_usage_monthly"),
        sa.CheckConstraint("request_count >= 0", name="ck_ai_api_usage_monthly_non_negative"),
    )

    op.create_table(
        "ai_api_usage_minute",
        sa.Column("ai_account_id", sa.String(64), nullable=False),
        sa.Column("period_key", sa.String(12), nullable=False),
        sa.Column("request_count", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("ai_account_id", "period_key", name="pk_ai_api_usage_minute"),
        sa.CheckConstraint("request_count >= 0", name="ck_ai_api_usage_minute_non_negative"),
    )
    # Cleanup queries delete buckets older than one day
    op.create_index("ix_ai_api_usage_minute_created_at", "ai_api_usage_minute", ["created_at"])

    op.create_table(
        "ai_api_usage_warnings",
        sa.Column("ai_account_id", sa.String(64), nullable=False),
        sa.Column("period_key", sa.String(7), nullable=False),
        sa.Column("threshold_percent", sa.Integer(), nullable=False),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint(
            "ai_account_id", "period_key", "threshold_percent", name="pk_ai_api_usage_warnings"
        ),
    )

    op.create_table(
        "webhook_endpoints",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("ai_account_id", sa.String(64), nullable=False),
        sa.Column("url", sa.String(2048), nullable=False),
        sa.Column("secret_encrypted", sa.LargeBinary(), nullable=False),
        sa.Column("events", sa.String(255), nullable=False, server_default=""),
        sa.Column(
            "status", _enum("webhookendpointstatus"), nullable=False, server_default="active"
        ),
        _timestamp("created_at"),
        _timestamp("disabled_at", nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["ai_account_id"],
            ["ai_accounts.id"],
            name="fk_webhook_endpoints_ai_account_id",
            ondelete="CASCADE",
        ),
    )
    op.create_index("ix_webhook_endpoints_ai_account_id", "webhook_endpoints", ["ai_account_id"])

    op.create_table(
        "webhook_deliveries",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("webhook_id", sa.String(36), nullable=False),
        sa.Column("event_id", sa.String(36), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("task_id", sa.String(36), nullable=True),
        sa.Column("status_code", sa.Integer(), nullable=True),
        sa.Column("response_body", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_webhook_deliveries_webhook_id", "webhook_deliveries", ["webhook_id"])
    op.create_index("ix_webhook_deliveries_event_id", "webhook_deliveries", ["event_id"])

    op.create_table(
        "outbox_events",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("task_id", sa.String(36), nullable=False),
        sa.Column("ai_account_id", sa.String(64), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", _enum("outboxstatus"), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("claimed_at", nullable=True),
        _timestamp("dispatched_at", nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_outbox_events_task_id", "outbox_events", ["task_id"])
    op.create_index(
        "ix_outbox_events_status_created_at", "outbox_events", ["status", "created_at"]
    )

    op.create_table(
        "stripe_webhook_events",
        sa.Column("event_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("event_created", sa.Integer(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column(
            "status", _enum("settlementeventstatus"), nullable=False, server_default="pending"
        ),
        sa.Column("processing_error", sa.Text(), nullable=True),
        _timestamp("received_at"),
        _timestamp("claimed_at", nullable=True),
        _timestamp("processed_at", nullable=True),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("ix_stripe_webhook_events_status", "stripe_webhook_events", ["status"])


def downgrade() -> None:
    """Drop ledger tables and enum types."""
    op.drop_index("ix_stripe_webhook_events_status", table_name="stripe_webhook_events")
    op.drop_table("stripe_webhook_events")
    op.drop_index("ix_outbox_events_status_created_at", table_name="outbox_events")
    op.drop_index("ix_outbox_events_task_id", table_name="outbox_events")
    op.drop_table("outbox_events")
    op.drop_index("ix_webhook_deliveries_event_id", table_name="webhook_deliveries")
    op.drop_index("ix_webhook_deliveries_webhook_id", table_name="webhook_deliveries")
    op.drop_table("webhook_deliveries")
    op.drop_index("ix_webhook_endpoints_ai_account_id", table_name="webhook_endpoints")
    op.drop_table("webhook_endpoints")
    op.drop_table("ai_api_usage_warnings")
    op.drop_index("ix_ai_api_usage_minute_created_at", table_name="ai_api_usage_minute")
    op.drop_table("ai_api_usage_minute")
    op.drop_table("ai_api_usage_monthly")
    op.drop_index("ix_idempotency_keys_created_at", table_name="idempotency_keys")
    op.drop_table("idempotency_keys")
    op.drop_index("ix_orders_payment_intent_id", table_name="orders")
    op.drop_index("ix_orders_checkout_session_id", table_name="orders")
    op.drop_index("ix_orders_task_id", table_name="orders")
    op.drop_table("orders")
    op.drop_table("task_contacts")
    op.drop_index("ix_submissions_task_id", table_name="submissions")
    op.drop_table("submissions")
    op.drop_index("ix_tasks_human_id_status", table_name="tasks")
    op.drop_index("ix_tasks_ai_account_id_status", table_name="tasks")
    op.drop_index("ix_tasks_created_at", table_name="tasks")
    op.drop_index("ix_tasks_status", table_name="tasks")
    op.drop_table("tasks")
    op.drop_table("humans")
    op.drop_table("ai_accounts")

    bind = op.get_bind()
    for name in ENUMS:
        postgresql.ENUM(*ENUMS[name], name=name).drop(bind, checkfirst=True)
