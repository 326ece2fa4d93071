"""Create subscription ledger tables

Revision ID: 3f1c2a7b9d10
Revises:
Create Date: 2026-10-19 09:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3f1c2a7b9d10"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


PLATFORM_VALUES = ("app_store_a", "app_store_b")
STATUS_VALUES = (
    "pending",
    "active",
    "grace_period",
    "cancelled",
    "payment_failed",
    "on_hold",
    "paused",
    "deferred",
    "revoked",
    "refunded",
    "expired",
)
EVENT_TYPE_VALUES = (
    "validation",
    "webhook_notification",
    "expiry_sweep",
    "renewal_attempt",
    "cancellation",
    "refund",
)
PAYMENT_STATUS_VALUES = ("completed", "refunded")

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _string_enum(values, name, length):
    # Stored as VARCHAR + CHECK, matching native_enum=False on the models
    return sa.Enum(*values, name=name, native_enum=False, length=length)


def upgrade() -> None:
    """Upgrade database schema."""

    # ------------------------------------------------------------------
    # 1. users (entitlement projection embedded)
    # ------------------------------------------------------------------
    op.create_table(
        "users",
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("is_entitled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("entitlement_status", sa.String(length=32), nullable=False, server_default="none"),
        sa.Column("entitlement_subscription_id", sa.Uuid(), nullable=True),
        sa.Column("entitlement_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("entitlement_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
    )

    # ------------------------------------------------------------------
    # 2. subscriptions
    # ------------------------------------------------------------------
    op.create_table(
        "subscriptions",
        sa.Column("subscription_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("platform", _string_enum(PLATFORM_VALUES, "platform", 32), nullable=False),
        sa.Column("external_reference", sa.String(length=1024), nullable=False),
        sa.Column("original_transaction_id", sa.String(length=255), nullable=True),
        sa.Column("latest_transaction_id", sa.String(length=255), nullable=True),
        sa.Column("receipt_data", sa.Text(), nullable=True),
        sa.Column("product_id", sa.String(length=100), nullable=False),
        sa.Column("plan_type", sa.String(length=100), nullable=True),
        sa.Column("amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_payment_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("grace_period_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "status",
            _string_enum(STATUS_VALUES, "subscriptionstatus", 32),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("auto_renew", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("acknowledged", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("environment", sa.String(length=20), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.user_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("subscription_id"),
        sa.UniqueConstraint("platform", "external_reference", name="uq_subscription_platform_reference"),
    )
    # Validation dedup, user lookup, expiry and renewal sweeps
    op.create_index("idx_subscription_external_reference", "subscriptions", ["external_reference"])
    op.create_index("idx_subscription_user_status", "subscriptions", ["user_id", "status"])
    op.create_index("idx_subscription_status_period_end", "subscriptions", ["status", "current_period_end"])
    op.create_index(
        op.f("ix_subscriptions_original_transaction_id"),
        "subscriptions",
        ["original_transaction_id"],
    )

    # ------------------------------------------------------------------
    # 3. subscription_events (append-only audit log)
    # ------------------------------------------------------------------
    op.create_table(
        "subscription_events",
        sa.Column("event_id", sa.Uuid(), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=True),
        sa.Column("user_id", sa.String(length=128), nullable=True),
        sa.Column("event_type", _string_enum(EVENT_TYPE_VALUES, "subscriptioneventtype", 32), nullable=False),
        sa.Column("notification_kind", sa.String(length=64), nullable=True),
        sa.Column("previous_status", sa.String(length=32), nullable=True),
        sa.Column("new_status", sa.String(length=32), nullable=True),
        sa.Column("applied", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("payload", JSON_TYPE, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["subscription_id"],
            ["subscriptions.subscription_id"],
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index(
        "idx_sub_events_subscription",
        "subscription_events",
        ["subscription_id", "created_at"],
    )
    op.create_index(
        "idx_sub_events_user_type",
        "subscription_events",
        ["user_id", "event_type", "created_at"],
    )

    # ------------------------------------------------------------------
    # 4. payments
    # ------------------------------------------------------------------
    op.create_table(
        "payments",
        sa.Column("payment_id", sa.Uuid(), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("platform", _string_enum(PLATFORM_VALUES, "platform", 32), nullable=False),
        sa.Column("transaction_id", sa.String(length=255), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column(
            "status",
            _string_enum(PAYMENT_STATUS_VALUES, "paymentstatus", 16),
            nullable=False,
            server_default="completed",
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["subscription_id"],
            ["subscriptions.subscription_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("payment_id"),
        sa.UniqueConstraint("platform", "transaction_id", name="uq_payment_platform_transaction"),
    )
    op.create_index("idx_payments_status_created", "payments", ["status", "created_at"])

    # ------------------------------------------------------------------
    # 5. daily_analytics and sweep summaries
    # ------------------------------------------------------------------
    op.create_table(
        "daily_analytics",
        sa.Column("analytics_id", sa.Uuid(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("active_subscriptions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("new_subscriptions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cancelled_subscriptions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_revenue", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("analytics_id"),
        sa.UniqueConstraint("date"),
    )

    op.create_table(
        "analytics",
        sa.Column("run_id", sa.Uuid(), nullable=False),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("summary", JSON_TYPE, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("run_id"),
    )
    op.create_index(op.f("ix_analytics_type"), "analytics", ["type"])


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index(op.f("ix_analytics_type"), table_name="analytics")
    op.drop_table("analytics")
    op.drop_table("daily_analytics")

    op.drop_index("idx_payments_status_created", table_name="payments")
    op.drop_table("payments")

    op.drop_index("idx_sub_events_user_type", table_name="subscription_events")
    op.drop_index("idx_sub_events_subscription", table_name="subscription_events")
    op.drop_table("subscription_events")

    op.drop_index(op.f("ix_subscriptions_original_transaction_id"), table_name="subscriptions")
    op.drop_index("idx_subscription_status_period_end", table_name="subscriptions")
    op.drop_index("idx_subscription_user_status", table_name="subscriptions")
    op.drop_index("idx_subscription_external_reference", table_name="subscriptions")
    op.drop_table("subscriptions")

    op.drop_table("users")
