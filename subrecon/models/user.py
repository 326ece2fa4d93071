"""
User Model
==========

Users as seen by the ledger, with the denormalized entitlement projection
embedded. The projection is a read optimization derived from the user's
latest entitling subscription, never a second source of truth.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Optional
import uuid

from sqlalchemy import Boolean, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from subrecon.db.base import Base, TimestampMixin, UTCDateTime

if TYPE_CHECKING:
    from subrecon.models.subscription import Subscription


class User(Base, TimestampMixin):
    """User account identity plus entitlement projection."""

    __tablename__ = "users"

    # Identity issued by the external auth provider
    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)

    # Entitlement projection
    is_entitled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    entitlement_status: Mapped[str] = mapped_column(String(32), default="none", nullable=False)
    entitlement_subscription_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    entitlement_expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    entitlement_updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    subscriptions: Mapped[list["Subscription"]] = relationship(
        "Subscription",
        back_populates="user",
        lazy="noload",
    )

    def __repr__(self) -> str:
        return f"<User(user_id={self.user_id}, is_entitled={self.is_entitled})>"
