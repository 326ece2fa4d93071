"""
Database Models
===============

SQLAlchemy ORM models for all ledger entities.

All models are imported here to ensure they are registered
with SQLAlchemy's metadata for migrations and relationships.
"""

from subrecon.models.user import User
from subrecon.models.subscription import (
    Payment,
    PaymentStatus,
    Platform,
    Subscription,
    SubscriptionEvent,
    SubscriptionEventType,
    SubscriptionStatus,
)
from subrecon.models.analytics import DailyAnalytics, SweepRun

__all__ = [
    # User
    "User",
    # Subscription
    "Subscription",
    "SubscriptionEvent",
    "SubscriptionEventType",
    "SubscriptionStatus",
    "Platform",
    "Payment",
    "PaymentStatus",
    # Analytics
    "DailyAnalytics",
    "SweepRun",
]
