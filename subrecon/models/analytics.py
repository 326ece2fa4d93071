"""
Analytics Models
================

Observational records written by the reconciliation sweeps. Nothing reads
these for control flow.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional
import uuid

from sqlalchemy import Date, Integer, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from subrecon.db.base import Base, JSONType, UTCDateTime, generate_uuid, utcnow


class DailyAnalytics(Base):
    """One summary row per day produced by the aggregate sweep."""

    __tablename__ = "daily_analytics"

    analytics_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=generate_uuid)
    date: Mapped[date] = mapped_column(Date, unique=True, nullable=False)
    active_subscriptions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    new_subscriptions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    cancelled_subscriptions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_revenue: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<DailyAnalytics(date={self.date}, active={self.active_subscriptions})>"


class SweepRun(Base):
    """Summary of a single expiry or renewal sweep run."""

    __tablename__ = "analytics"

    run_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=generate_uuid)
    type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    summary: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
