"""
Subscription Models
===================

SQLAlchemy models for the subscription ledger: one ``Subscription`` row per
purchase lineage, an append-only ``SubscriptionEvent`` audit log and the
``Payment`` rows that feed revenue analytics.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional
import uuid

from sqlalchemy import (
    Boolean,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from subrecon.db.base import Base, JSONType, TimestampMixin, UTCDateTime, generate_uuid, utcnow

if TYPE_CHECKING:
    from subrecon.models.user import User


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class Platform(str, Enum):
    """
    Payment platform a purchase lineage belongs to.

    ``app_store_a`` exposes a purchase lookup API keyed by purchase token;
    ``app_store_b`` exposes a receipt verification endpoint.
    """
    APP_STORE_A = "app_store_a"
    APP_STORE_B = "app_store_b"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states."""
    PENDING = "pending"
    ACTIVE = "active"
    GRACE_PERIOD = "grace_period"
    CANCELLED = "cancelled"
    PAYMENT_FAILED = "payment_failed"
    ON_HOLD = "on_hold"
    PAUSED = "paused"
    DEFERRED = "deferred"
    REVOKED = "revoked"
    REFUNDED = "refunded"
    EXPIRED = "expired"


class SubscriptionEventType(str, Enum):
    """Types of audit events appended to the event log."""
    VALIDATION = "validation"
    WEBHOOK_NOTIFICATION = "webhook_notification"
    EXPIRY_SWEEP = "expiry_sweep"
    RENEWAL_ATTEMPT = "renewal_attempt"
    CANCELLATION = "cancellation"
    REFUND = "refund"


class PaymentStatus(str, Enum):
    COMPLETED = "completed"
    REFUNDED = "refunded"


class Subscription(Base, TimestampMixin):
    """
    One purchase lineage on one platform.

    ``(platform, external_reference)`` is the natural dedup key. Renewals of
    the same lineage share ``original_transaction_id``. Rows are never
    deleted; terminal states are kept for audit.
    """

    __tablename__ = "subscriptions"

    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=generate_uuid,
    )
    user_id: Mapped[str] = mapped_column(
        String(128),
        ForeignKey("users.user_id", ondelete="CASCADE"),
        nullable=False,
    )

    # Identity
    platform: Mapped[Platform] = mapped_column(
        SQLEnum(Platform, native_enum=False, length=32, values_callable=_enum_values),
        nullable=False,
    )
    external_reference: Mapped[str] = mapped_column(
        String(1024),
        nullable=False,
    )
    original_transaction_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    latest_transaction_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    # Latest receipt for receipt-verified platforms, replayed by renewal refreshes
    receipt_data: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Economic facts
    product_id: Mapped[str] = mapped_column(String(100), nullable=False)
    plan_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)

    # Temporal facts
    current_period_start: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    current_period_end: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    last_payment_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    grace_period_started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    # State
    status: Mapped[SubscriptionStatus] = mapped_column(
        SQLEnum(SubscriptionStatus, native_enum=False, length=32, values_callable=_enum_values),
        default=SubscriptionStatus.PENDING,
        nullable=False,
    )
    # Bumped on every conditional update
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # Flags
    auto_renew: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    acknowledged: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    environment: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    user: Mapped["User"] = relationship(
        "User",
        back_populates="subscriptions",
    )

    __table_args__ = (
        UniqueConstraint("platform", "external_reference", name="uq_subscription_platform_reference"),
        Index("idx_subscription_external_reference", "external_reference"),
        Index("idx_subscription_user_status", "user_id", "status"),
        Index("idx_subscription_status_period_end", "status", "current_period_end"),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.subscription_id}, platform={self.platform}, "
            f"status={self.status})>"
        )

    @property
    def is_entitling(self) -> bool:
        """States that still grant access."""
        return self.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE_PERIOD)

    def is_valid_at(self, now: datetime) -> bool:
        """Entitling state with a period end still in the future."""
        return (
            self.is_entitling
            and self.current_period_end is not None
            and self.current_period_end > now
        )


class SubscriptionEvent(Base):
    """
    Append-only audit record.

    Used for support and debugging, never for control flow.
    """

    __tablename__ = "subscription_events"

    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=generate_uuid,
    )
    subscription_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("subscriptions.subscription_id", ondelete="SET NULL"),
        nullable=True,
    )
    user_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    event_type: Mapped[SubscriptionEventType] = mapped_column(
        SQLEnum(SubscriptionEventType, native_enum=False, length=32, values_callable=_enum_values),
        nullable=False,
    )
    notification_kind: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    previous_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    new_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    applied: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
    )

    __table_args__ = (
        Index("idx_sub_events_subscription", "subscription_id", "created_at"),
        Index("idx_sub_events_user_type", "user_id", "event_type", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<SubscriptionEvent(subscription_id={self.subscription_id}, type={self.event_type})>"


class Payment(Base):
    """A completed charge observed on a platform (initial purchase or renewal)."""

    __tablename__ = "payments"

    payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=generate_uuid,
    )
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("subscriptions.subscription_id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    platform: Mapped[Platform] = mapped_column(
        SQLEnum(Platform, native_enum=False, length=32, values_callable=_enum_values),
        nullable=False,
    )
    # Order id / transaction id of the charge; one row per charge.
    transaction_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        SQLEnum(PaymentStatus, native_enum=False, length=16, values_callable=_enum_values),
        default=PaymentStatus.COMPLETED,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("platform", "transaction_id", name="uq_payment_platform_transaction"),
        Index("idx_payments_status_created", "status", "created_at"),
    )
