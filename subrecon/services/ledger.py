"""
Subscription Ledger
===================

Durable store operations for subscriptions, the user entitlement projection
and the append-only event log.

Every status write is a conditional update keyed on the row's current
``status`` and ``version``. A writer that lost a race gets
``StaleRecordError`` and its whole unit of work is rolled back by the
caller; nothing is silently dropped.

The ledger never commits. Callers own the transaction boundary and, after
committing, invalidate the caches of ``touched_users``.
"""

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional
import uuid

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from subrecon.core.errors import StaleRecordError
from subrecon.core.products import Product
from subrecon.core.state_machine import Actor, TransitionError, assert_can_create, plan_transition
from subrecon.db.base import utcnow
from subrecon.models.analytics import DailyAnalytics, SweepRun
from subrecon.models.subscription import (
    Payment,
    PaymentStatus,
    Platform,
    Subscription,
    SubscriptionEvent,
    SubscriptionEventType,
    SubscriptionStatus,
)
from subrecon.models.user import User

logger = logging.getLogger(__name__)

ENTITLING_STATES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE_PERIOD)


@dataclass(frozen=True)
class TransitionOutcome:
    """Result of one ``transition`` call."""

    applied: bool
    previous_status: SubscriptionStatus
    status: SubscriptionStatus
    rejected_reason: Optional[str] = None


def _json_safe(payload: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    if payload is None:
        return None
    return json.loads(json.dumps(payload, default=str))


class SubscriptionLedger:
    """Ledger operations bound to one session."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.touched_users: set[str] = set()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(self, subscription_id: uuid.UUID) -> Optional[Subscription]:
        return await self.db.get(Subscription, subscription_id)

    async def get_by_reference(self, platform: Platform, reference: str) -> Optional[Subscription]:
        """Look up the lineage row by its dedup key."""
        stmt = select(Subscription).where(
            Subscription.platform == platform,
            Subscription.external_reference == reference,
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_original_transaction(
        self,
        platform: Platform,
        original_transaction_id: str,
    ) -> Optional[Subscription]:
        """
        Find the row for a lineage by original-transaction id.

        Non-terminal rows win over expired ones; among equals the latest
        period end wins.
        """
        stmt = (
            select(Subscription)
            .where(
                Subscription.platform == platform,
                Subscription.original_transaction_id == original_transaction_id,
            )
            .order_by(
                (Subscription.status == SubscriptionStatus.EXPIRED).asc(),
                Subscription.current_period_end.desc(),
            )
            .limit(1)
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def get_user(self, user_id: str) -> Optional[User]:
        return await self.db.get(User, user_id)

    async def list_events(self, subscription_id: uuid.UUID) -> list[SubscriptionEvent]:
        stmt = (
            select(SubscriptionEvent)
            .where(SubscriptionEvent.subscription_id == subscription_id)
            .order_by(SubscriptionEvent.created_at, SubscriptionEvent.event_id)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def ensure_user(self, user_id: str) -> User:
        """Return the user row, creating an empty projection on first sight."""
        user = await self.db.get(User, user_id)
        if user is None:
            user = User(user_id=user_id)
            self.db.add(user)
            await self.db.flush()
        return user

    async def create_subscription(
        self,
        *,
        user_id: str,
        platform: Platform,
        reference: str,
        product: Product,
        status: SubscriptionStatus,
        period_start: Optional[datetime],
        period_end: datetime,
        auto_renew: bool,
        transaction_id: Optional[str],
        original_transaction_id: Optional[str],
        acknowledged: bool = False,
        environment: Optional[str] = None,
        receipt_data: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """
        Insert a new lineage row.

        Raises ``IntegrityError`` on flush when a concurrent writer already
        created the same (platform, reference).
        """
        assert_can_create(status, Actor.VALIDATION)
        now = now or utcnow()
        await self.ensure_user(user_id)

        subscription = Subscription(
            user_id=user_id,
            platform=platform,
            external_reference=reference,
            original_transaction_id=original_transaction_id,
            latest_transaction_id=transaction_id,
            receipt_data=receipt_data,
            product_id=product.product_id,
            plan_type=product.plan_type,
            amount=product.amount,
            currency=product.currency,
            current_period_start=period_start or now,
            current_period_end=period_end,
            last_payment_at=now if status != SubscriptionStatus.PENDING else None,
            grace_period_started_at=now if status == SubscriptionStatus.GRACE_PERIOD else None,
            status=status,
            version=1,
            auto_renew=auto_renew,
            acknowledged=acknowledged,
            environment=environment,
            created_at=now,
            updated_at=now,
        )
        self.db.add(subscription)
        await self.db.flush()
        self.touched_users.add(user_id)

        logger.info(
            "Created subscription %s for user %s (%s, %s)",
            subscription.subscription_id,
            user_id,
            platform.value,
            status.value,
        )
        return subscription

    async def _conditional_update(
        self,
        subscription: Subscription,
        values: dict[str, Any],
    ) -> None:
        """Write ``values`` only if the row still has the status and version we read."""
        stmt = (
            update(Subscription)
            .where(
                Subscription.subscription_id == subscription.subscription_id,
                Subscription.status == subscription.status,
                Subscription.version == subscription.version,
            )
            .values(version=Subscription.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount != 1:
            logger.warning(
                "Conditional update lost for subscription %s (status=%s, version=%s)",
                subscription.subscription_id,
                subscription.status.value,
                subscription.version,
            )
            raise StaleRecordError(
                f"Subscription {subscription.subscription_id} was modified concurrently",
                reason="stale_record",
            )
        await self.db.refresh(subscription)

    async def update_facts(self, subscription: Subscription, **changes: Any) -> None:
        """Refresh non-state facts (expiry, auto-renew, transaction ids)."""
        if not changes:
            return
        await self._conditional_update(subscription, changes)
        self.touched_users.add(subscription.user_id)

    @staticmethod
    def _timestamps_for(status: SubscriptionStatus, now: datetime) -> dict[str, Any]:
        if status == SubscriptionStatus.GRACE_PERIOD:
            return {"grace_period_started_at": now}
        if status == SubscriptionStatus.ACTIVE:
            return {"grace_period_started_at": None}
        if status == SubscriptionStatus.CANCELLED:
            return {"cancelled_at": now}
        if status == SubscriptionStatus.REFUNDED:
            return {"refunded_at": now}
        if status == SubscriptionStatus.REVOKED:
            return {"revoked_at": now}
        return {}

    async def transition(
        self,
        subscription: Subscription,
        target: SubscriptionStatus,
        *,
        actor: Actor,
        event_type: SubscriptionEventType,
        notification_kind: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
        changes: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> TransitionOutcome:
        """
        Move ``subscription`` to ``target`` and append the matching events.

        - Already in ``target``: only ``changes`` are written; one event with
          ``applied=False`` is appended.
        - Not allowed for ``actor``: nothing is written except one event with
          ``applied=False`` naming the rejection.
        - Otherwise each hop of the planned path is a conditional update with
          its own event, and the user's projection is recomputed.
        - A hop lost to a concurrent writer raises ``StaleRecordError``; the
          projection is first recomputed for any hops already written.
        """
        now = now or utcnow()
        previous = subscription.status
        changes = dict(changes or {})

        try:
            path = plan_transition(previous, target, actor)
        except TransitionError as e:
            logger.info(
                "Rejected transition %s -> %s for subscription %s (%s)",
                previous.value,
                target.value,
                subscription.subscription_id,
                e.reason,
            )
            await self.append_event(
                subscription,
                event_type,
                notification_kind=notification_kind,
                previous_status=previous,
                new_status=target,
                applied=False,
                payload={**(payload or {}), "rejected": e.reason},
                now=now,
            )
            return TransitionOutcome(False, previous, previous, rejected_reason=e.reason)

        if not path:
            if changes:
                await self.update_facts(subscription, **changes)
                await self.refresh_projection(subscription.user_id, now)
            await self.append_event(
                subscription,
                event_type,
                notification_kind=notification_kind,
                previous_status=previous,
                new_status=previous,
                applied=False,
                payload=payload,
                now=now,
            )
            return TransitionOutcome(False, previous, previous)

        hops_written = 0
        try:
            for index, hop in enumerate(path):
                before = subscription.status
                values = {"status": hop, **self._timestamps_for(hop, now)}
                if index == len(path) - 1:
                    values.update(changes)
                await self._conditional_update(subscription, values)
                hops_written += 1
                await self.append_event(
                    subscription,
                    event_type,
                    notification_kind=notification_kind,
                    previous_status=before,
                    new_status=hop,
                    applied=True,
                    payload=payload,
                    now=now,
                )
        except StaleRecordError:
            # Earlier hops stay written if the caller commits; keep the projection in step
            if hops_written:
                self.touched_users.add(subscription.user_id)
                await self.refresh_projection(subscription.user_id, now)
            raise

        self.touched_users.add(subscription.user_id)
        await self.refresh_projection(subscription.user_id, now)
        logger.info(
            "Subscription %s: %s -> %s (%s)",
            subscription.subscription_id,
            previous.value,
            subscription.status.value,
            actor.value,
        )
        return TransitionOutcome(True, previous, subscription.status)

    async def append_event(
        self,
        subscription: Optional[Subscription],
        event_type: SubscriptionEventType,
        *,
        notification_kind: Optional[str] = None,
        previous_status: Optional[SubscriptionStatus] = None,
        new_status: Optional[SubscriptionStatus] = None,
        applied: bool = True,
        payload: Optional[dict[str, Any]] = None,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SubscriptionEvent:
        event = SubscriptionEvent(
            subscription_id=subscription.subscription_id if subscription else None,
            user_id=subscription.user_id if subscription else user_id,
            event_type=event_type,
            notification_kind=notification_kind,
            previous_status=previous_status.value if previous_status else None,
            new_status=new_status.value if new_status else None,
            applied=applied,
            payload=_json_safe(payload),
            created_at=now or utcnow(),
        )
        self.db.add(event)
        await self.db.flush()
        return event

    async def record_payment(
        self,
        subscription: Subscription,
        transaction_id: Optional[str],
        amount: Optional[Decimal],
        currency: Optional[str],
        now: Optional[datetime] = None,
    ) -> Optional[Payment]:
        """Record a completed charge once per (platform, transaction id)."""
        if not transaction_id or amount is None or not currency:
            return None

        stmt = select(Payment).where(
            Payment.platform == subscription.platform,
            Payment.transaction_id == transaction_id,
        )
        existing = (await self.db.execute(stmt)).scalar_one_or_none()
        if existing is not None:
            return existing

        payment = Payment(
            subscription_id=subscription.subscription_id,
            user_id=subscription.user_id,
            platform=subscription.platform,
            transaction_id=transaction_id,
            amount=amount,
            currency=currency,
            status=PaymentStatus.COMPLETED,
            created_at=now or utcnow(),
        )
        self.db.add(payment)
        await self.db.flush()
        return payment

    async def mark_payment_refunded(self, platform: Platform, transaction_id: Optional[str]) -> bool:
        """Flag a charge as refunded so it drops out of revenue figures."""
        if not transaction_id:
            return False
        stmt = (
            update(Payment)
            .where(
                Payment.platform == platform,
                Payment.transaction_id == transaction_id,
                Payment.status == PaymentStatus.COMPLETED,
            )
            .values(status=PaymentStatus.REFUNDED)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount > 0

    async def refresh_projection(self, user_id: str, now: Optional[datetime] = None) -> User:
        """Recompute the user's entitlement projection from their subscriptions."""
        now = now or utcnow()
        user = await self.ensure_user(user_id)

        stmt = (
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status.in_(ENTITLING_STATES),
            )
            .order_by(Subscription.current_period_end.desc())
            .limit(1)
        )
        source = (await self.db.execute(stmt)).scalars().first()

        if source is not None:
            user.is_entitled = True
            user.entitlement_status = source.status.value
            user.entitlement_subscription_id = source.subscription_id
            user.entitlement_expires_at = source.current_period_end
        else:
            latest_stmt = (
                select(Subscription)
                .where(Subscription.user_id == user_id)
                .order_by(Subscription.updated_at.desc())
                .limit(1)
            )
            latest = (await self.db.execute(latest_stmt)).scalars().first()
            user.is_entitled = False
            user.entitlement_status = "expired" if latest is not None else "none"
            user.entitlement_subscription_id = latest.subscription_id if latest else None
            user.entitlement_expires_at = latest.current_period_end if latest else None

        user.entitlement_updated_at = now
        await self.db.flush()
        self.touched_users.add(user_id)
        return user

    # -------------------------------------------------------------------------
    # Sweep queries
    # -------------------------------------------------------------------------

    @staticmethod
    def _after(after: Optional[tuple[datetime, uuid.UUID]]):
        last_end, last_id = after
        return or_(
            Subscription.current_period_end > last_end,
            and_(
                Subscription.current_period_end == last_end,
                Subscription.subscription_id > last_id,
            ),
        )

    async def expiry_candidates(
        self,
        now: datetime,
        grace_cutoff: datetime,
        limit: int,
        after: Optional[tuple[datetime, uuid.UUID]] = None,
    ) -> list[Subscription]:
        """
        Rows the expiry sweep must move, oldest period end first.

        Active rows whose period has ended, plus grace rows whose period
        ended before ``grace_cutoff``.
        """
        conditions = [
            or_(
                and_(
                    Subscription.status == SubscriptionStatus.ACTIVE,
                    Subscription.current_period_end < now,
                ),
                and_(
                    Subscription.status == SubscriptionStatus.GRACE_PERIOD,
                    Subscription.current_period_end < grace_cutoff,
                ),
            )
        ]
        if after is not None:
            conditions.append(self._after(after))
        stmt = (
            select(Subscription)
            .where(*conditions)
            .order_by(Subscription.current_period_end, Subscription.subscription_id)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def expiring(
        self,
        until: datetime,
        limit: int,
        after: Optional[tuple[datetime, uuid.UUID]] = None,
    ) -> list[Subscription]:
        """
        Active auto-renewing rows whose period ends by ``until``.

        Keyset-paginated on (period end, id) so rows whose refresh failed are
        not selected again within one run.
        """
        conditions = [
            Subscription.status == SubscriptionStatus.ACTIVE,
            Subscription.auto_renew.is_(True),
            Subscription.current_period_end <= until,
        ]
        if after is not None:
            conditions.append(self._after(after))
        stmt = (
            select(Subscription)
            .where(*conditions)
            .order_by(Subscription.current_period_end, Subscription.subscription_id)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    # -------------------------------------------------------------------------
    # Aggregates
    # -------------------------------------------------------------------------

    async def count_entitling(self) -> int:
        stmt = select(func.count()).select_from(Subscription).where(
            Subscription.status.in_(ENTITLING_STATES)
        )
        return int((await self.db.execute(stmt)).scalar_one())

    async def count_created_between(self, start: datetime, end: datetime) -> int:
        stmt = select(func.count()).select_from(Subscription).where(
            Subscription.created_at >= start,
            Subscription.created_at < end,
        )
        return int((await self.db.execute(stmt)).scalar_one())

    async def count_cancelled_between(self, start: datetime, end: datetime) -> int:
        stmt = select(func.count()).select_from(Subscription).where(
            Subscription.cancelled_at >= start,
            Subscription.cancelled_at < end,
        )
        return int((await self.db.execute(stmt)).scalar_one())

    async def revenue_between(self, start: datetime, end: datetime) -> Decimal:
        stmt = select(func.coalesce(func.sum(Payment.amount), 0)).where(
            Payment.status == PaymentStatus.COMPLETED,
            Payment.created_at >= start,
            Payment.created_at < end,
        )
        total = (await self.db.execute(stmt)).scalar_one()
        return Decimal(str(total)).quantize(Decimal("0.01"))

    async def save_daily_analytics(
        self,
        day: date,
        *,
        active: int,
        new: int,
        cancelled: int,
        revenue: Decimal,
    ) -> DailyAnalytics:
        """Write the summary for ``day``, replacing an earlier run for the same day."""
        stmt = select(DailyAnalytics).where(DailyAnalytics.date == day)
        row = (await self.db.execute(stmt)).scalar_one_or_none()
        if row is None:
            row = DailyAnalytics(date=day)
            self.db.add(row)
        row.active_subscriptions = active
        row.new_subscriptions = new
        row.cancelled_subscriptions = cancelled
        row.total_revenue = revenue
        row.created_at = utcnow()
        await self.db.flush()
        return row

    async def record_sweep(self, sweep_type: str, summary: dict[str, Any]) -> SweepRun:
        run = SweepRun(type=sweep_type, summary=_json_safe(summary), created_at=utcnow())
        self.db.add(run)
        await self.db.flush()
        return run
