"""
Scheduled Jobs
==============

Reconciliation sweeps over the ledger:
- Expiry sweep (hourly): lapsed active rows to grace_period, rows past the
  grace window to expired
- Renewal sweep (daily): refresh period end of auto-renewing rows close to
  expiry
- Aggregate sweep (daily): one summary row for the previous UTC day

Each sweep works in bounded batches and commits after every batch, so an
interrupted run keeps what it committed and the next run picks up the
rest. Selection is always "still needs work", which makes re-runs
idempotent.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Optional

import newrelic.agent
from sqlalchemy.ext.asyncio import AsyncSession

from subrecon.config import settings
from subrecon.core.errors import StaleRecordError, SubscriptionError
from subrecon.core.retry import RetryPolicy
from subrecon.core.state_machine import Actor
from subrecon.db.base import utcnow
from subrecon.models.subscription import (
    Subscription,
    SubscriptionEventType,
    SubscriptionStatus,
)
from subrecon.services.cache import CacheInvalidator
from subrecon.services.ledger import SubscriptionLedger
from subrecon.services.validators.base import PaymentState
from subrecon.services.validators.registry import ValidatorRegistry

logger = logging.getLogger(__name__)


class ScheduledJobService:
    """Service for scheduled reconciliation jobs."""

    def __init__(
        self,
        db: AsyncSession,
        registry: Optional[ValidatorRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
        batch_size: Optional[int] = None,
        grace_period: Optional[timedelta] = None,
        renewal_lookahead: Optional[timedelta] = None,
    ):
        self.db = db
        self.registry = registry
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.clock = clock
        self.batch_size = batch_size or settings.SWEEP_BATCH_SIZE
        self.grace_period = grace_period if grace_period is not None else timedelta(
            days=settings.SUBSCRIPTION_GRACE_PERIOD_DAYS
        )
        self.renewal_lookahead = renewal_lookahead if renewal_lookahead is not None else timedelta(
            days=settings.RENEWAL_LOOKAHEAD_DAYS
        )
        self.ledger = SubscriptionLedger(db)

    async def _commit_batch(self) -> None:
        try:
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        await CacheInvalidator.on_subscription_changes(self.ledger.touched_users)
        self.ledger.touched_users.clear()

    # -------------------------------------------------------------------------
    # Expiry sweep
    # -------------------------------------------------------------------------

    async def expire_overdue_subscriptions(self, max_batches: Optional[int] = None) -> dict:
        """
        Move lapsed subscriptions through grace_period to expired.

        Run hourly.

        Args:
            max_batches: stop after this many committed batches (None = until done)

        Returns:
            Summary of processed subscriptions
        """
        now = self.clock()
        grace_cutoff = now - self.grace_period

        to_grace = 0
        expired = 0
        batches = 0
        errors: list[dict[str, Any]] = []
        after = None

        while max_batches is None or batches < max_batches:
            batch = await self.ledger.expiry_candidates(now, grace_cutoff, self.batch_size, after)
            if not batch:
                break
            after = (batch[-1].current_period_end, batch[-1].subscription_id)

            for subscription in batch:
                target = (
                    SubscriptionStatus.EXPIRED
                    if subscription.current_period_end < grace_cutoff
                    else SubscriptionStatus.GRACE_PERIOD
                )
                try:
                    outcome = await self.ledger.transition(
                        subscription,
                        target,
                        actor=Actor.SCHEDULER,
                        event_type=SubscriptionEventType.EXPIRY_SWEEP,
                        payload={
                            "period_end": subscription.current_period_end,
                            "grace_cutoff": grace_cutoff,
                        },
                        now=now,
                    )
                except StaleRecordError as e:
                    # Changed under us; the next run re-reads it
                    errors.append({"subscription_id": str(subscription.subscription_id), "error": str(e)})
                    continue

                if not outcome.applied:
                    continue
                if outcome.status == SubscriptionStatus.EXPIRED:
                    expired += 1
                else:
                    to_grace += 1

            await self._commit_batch()
            batches += 1
            logger.info("Expiry sweep batch %d committed (%d rows)", batches, len(batch))

        processed = to_grace + expired
        summary = {
            "job": "expire_overdue_subscriptions",
            "processed": processed,
            "grace_period": to_grace,
            "expired": expired,
            "batches": batches,
            "errors": errors,
            "run_at": now.isoformat(),
        }
        await self.ledger.record_sweep(
            "expired_subscriptions_check",
            {"processedCount": processed, "gracePeriod": to_grace, "expired": expired, "errors": len(errors)},
        )
        await self._commit_batch()

        newrelic.agent.record_custom_metric("Custom/Subscriptions/Expired", expired)
        newrelic.agent.record_custom_metric("Custom/Subscriptions/GracePeriodEntered", to_grace)
        logger.info("Expiry sweep finished: %d to grace, %d expired, %d errors", to_grace, expired, len(errors))
        return summary

    # -------------------------------------------------------------------------
    # Renewal sweep
    # -------------------------------------------------------------------------

    async def _refresh_subscription(self, subscription: Subscription, now: datetime) -> bool:
        """
        Pull the latest period from the platform and advance it.

        Returns True when the period end moved forward. Platform failures
        propagate; they leave the row untouched.
        """
        if self.registry is None:
            raise SubscriptionError("No validators configured", reason="no_validator")
        validator = self.registry.get(subscription.platform)

        reference = subscription.receipt_data or subscription.external_reference
        product_id = subscription.product_id
        facts = await self.retry_policy.run(
            lambda: validator.validate(reference, product_id),
            label=f"renewal refresh {subscription.subscription_id}",
        )

        changes: dict[str, Any] = {}
        if facts.auto_renew != subscription.auto_renew:
            changes["auto_renew"] = facts.auto_renew

        advanced = (
            facts.payment_state == PaymentState.CONFIRMED
            and facts.expires_at > subscription.current_period_end
        )
        if advanced:
            changes["current_period_end"] = facts.expires_at
            changes["last_payment_at"] = now
            if facts.purchased_at is not None:
                changes["current_period_start"] = facts.purchased_at
            if facts.transaction_id:
                changes["latest_transaction_id"] = facts.transaction_id

        if changes:
            await self.ledger.update_facts(subscription, **changes)
        if advanced:
            await self.ledger.record_payment(
                subscription, facts.transaction_id, subscription.amount, subscription.currency, now
            )
            await self.ledger.refresh_projection(subscription.user_id, now)

        await self.ledger.append_event(
            subscription,
            SubscriptionEventType.RENEWAL_ATTEMPT,
            previous_status=subscription.status,
            new_status=subscription.status,
            applied=False,
            payload={
                "renewed": advanced,
                "expires_at": facts.expires_at,
                "payment_state": facts.payment_state.value,
            },
            now=now,
        )
        return advanced

    async def renew_expiring_subscriptions(self) -> dict:
        """
        Refresh auto-renewing subscriptions that expire within the lookahead.

        Run daily. A failed refresh is not a state change; the expiry sweep
        handles rows that really lapse.

        Returns:
            Summary of processed subscriptions
        """
        now = self.clock()
        until = now + self.renewal_lookahead

        renewed = 0
        unchanged = 0
        failed = 0
        batches = 0
        errors: list[dict[str, Any]] = []
        after = None

        while True:
            batch = await self.ledger.expiring(until, self.batch_size, after)
            if not batch:
                break
            after = (batch[-1].current_period_end, batch[-1].subscription_id)

            for subscription in batch:
                try:
                    if await self._refresh_subscription(subscription, now):
                        renewed += 1
                    else:
                        unchanged += 1
                except SubscriptionError as e:
                    failed += 1
                    errors.append({
                        "subscription_id": str(subscription.subscription_id),
                        "error": e.reason or str(e),
                    })
                    logger.warning(
                        "Renewal refresh failed for subscription %s: %s",
                        subscription.subscription_id,
                        e,
                    )
                    await self.ledger.append_event(
                        subscription,
                        SubscriptionEventType.RENEWAL_ATTEMPT,
                        previous_status=subscription.status,
                        new_status=subscription.status,
                        applied=False,
                        payload={"renewed": False, "error": e.reason or str(e)},
                        now=now,
                    )

            await self._commit_batch()
            batches += 1

        summary = {
            "job": "renew_expiring_subscriptions",
            "processed": renewed + unchanged + failed,
            "renewed": renewed,
            "unchanged": unchanged,
            "failed": failed,
            "batches": batches,
            "errors": errors,
            "run_at": now.isoformat(),
        }
        await self.ledger.record_sweep(
            "subscription_renewals",
            {"successCount": renewed, "unchangedCount": unchanged, "failureCount": failed},
        )
        await self._commit_batch()

        newrelic.agent.record_custom_metric("Custom/Subscriptions/Renewed", renewed)
        newrelic.agent.record_custom_metric("Custom/Subscriptions/RenewalFailures", failed)
        logger.info("Renewal sweep finished: %d renewed, %d unchanged, %d failed", renewed, unchanged, failed)
        return summary

    # -------------------------------------------------------------------------
    # Aggregate sweep
    # -------------------------------------------------------------------------

    async def generate_daily_analytics(self, day: Optional[date] = None) -> dict:
        """
        Persist counts and revenue for one UTC day (default: yesterday).

        Run daily at 01:00 UTC. Observational only.
        """
        now = self.clock()
        day = day or (now.astimezone(timezone.utc).date() - timedelta(days=1))
        start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        end = start + timedelta(days=1)

        active = await self.ledger.count_entitling()
        new = await self.ledger.count_created_between(start, end)
        cancelled = await self.ledger.count_cancelled_between(start, end)
        revenue = await self.ledger.revenue_between(start, end)

        await self.ledger.save_daily_analytics(
            day,
            active=active,
            new=new,
            cancelled=cancelled,
            revenue=revenue,
        )
        await self._commit_batch()

        newrelic.agent.record_custom_metric("Custom/Subscriptions/Active", active)
        logger.info(
            "Daily analytics for %s: active=%d new=%d cancelled=%d revenue=%s",
            day.isoformat(),
            active,
            new,
            cancelled,
            revenue,
        )
        return {
            "job": "generate_daily_analytics",
            "date": day.isoformat(),
            "active_subscriptions": active,
            "new_subscriptions": new,
            "cancelled_subscriptions": cancelled,
            "total_revenue": str(revenue),
            "run_at": now.isoformat(),
        }


# Job runner functions (called from the APScheduler worker)

async def run_expiry_sweep(db: AsyncSession, **kwargs) -> dict:
    """Run the hourly expiry sweep."""
    service = ScheduledJobService(db, **kwargs)
    return await service.expire_overdue_subscriptions()


async def run_renewal_sweep(db: AsyncSession, registry: ValidatorRegistry, **kwargs) -> dict:
    """Run the daily renewal sweep."""
    service = ScheduledJobService(db, registry=registry, **kwargs)
    return await service.renew_expiring_subscriptions()


async def run_daily_analytics(db: AsyncSession, **kwargs) -> dict:
    """Run the daily aggregate sweep."""
    service = ScheduledJobService(db, **kwargs)
    return await service.generate_daily_analytics()
