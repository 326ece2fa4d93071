"""
Validation Pipeline
===================

Turns a client purchase (interactive buy or restore) into a canonical
ledger Subscription.

Steps:
1. Idempotency check by (platform, reference); a still-valid row is
   returned unchanged with ``is_duplicate``.
2. Platform validation, retried on transient failures only.
3. Product allow-list enforcement on what the platform confirmed.
4. Subscription create/refresh, payment record, validation event and
   projection update, committed together.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

import newrelic.agent
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from subrecon.core.errors import (
    ErrorCodes,
    InvalidArgumentError,
    LedgerError,
    ReferenceInUseError,
    SubscriptionError,
    UnauthenticatedError,
)
from subrecon.core.products import Product, ProductCatalog
from subrecon.core.retry import RetryPolicy
from subrecon.core.state_machine import Actor
from subrecon.db.base import utcnow
from subrecon.models.subscription import (
    Platform,
    Subscription,
    SubscriptionEventType,
    SubscriptionStatus,
)
from subrecon.services.cache import CacheInvalidator
from subrecon.services.ledger import SubscriptionLedger
from subrecon.services.validators.base import PaymentState, PurchaseFacts
from subrecon.services.validators.registry import ValidatorRegistry

logger = logging.getLogger(__name__)


class SubscriptionExpiredError(SubscriptionError):
    """The reference belongs to a subscription that has already expired."""

    code = ErrorCodes.FAILED_PRECONDITION


@dataclass(frozen=True)
class ValidationResult:
    subscription: Subscription
    is_duplicate: bool


class ValidationPipeline:
    """Validates purchases and records them in the ledger."""

    def __init__(
        self,
        db: AsyncSession,
        registry: ValidatorRegistry,
        catalog: Optional[ProductCatalog] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.registry = registry
        self.catalog = catalog or ProductCatalog.from_settings()
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.clock = clock
        self.ledger = SubscriptionLedger(db)

    async def validate_purchase(
        self,
        user_id: str,
        platform: Platform,
        platform_ref: str,
        product_id: str,
    ) -> ValidationResult:
        """
        Validate a purchase and return its ledger row.

        Raises:
            UnauthenticatedError: no caller identity
            InvalidArgumentError: missing reference or non allow-listed product
            ReferenceInUseError: reference already bound to another user
            SubscriptionExpiredError: reference belongs to an expired row
            ValidatorError: platform rejected the purchase
            LedgerError: the ledger write failed
        """
        if not user_id:
            raise UnauthenticatedError("User must be authenticated")
        if not platform_ref or not platform_ref.strip():
            raise InvalidArgumentError("platformRef is required", reason="missing_reference")
        if not product_id:
            raise InvalidArgumentError("productId is required", reason="missing_product")

        validator = self.registry.get(platform)
        self.catalog.require(product_id)
        reference = validator.reference_key(platform_ref)
        now = self.clock()

        # 1. Idempotency check
        existing = await self.ledger.get_by_reference(platform, reference)
        if existing is not None:
            self._check_owner(existing, user_id)
            if existing.is_valid_at(now):
                logger.info(
                    "Duplicate validation for subscription %s (user %s)",
                    existing.subscription_id,
                    user_id,
                )
                newrelic.agent.record_custom_metric("Custom/Subscriptions/DuplicateValidations", 1)
                return ValidationResult(existing, True)
            if existing.status == SubscriptionStatus.EXPIRED:
                raise SubscriptionExpiredError(
                    "This subscription has expired; purchase again to renew access",
                    reason="subscription_expired",
                )

        # 2. Platform validation
        facts = await self.retry_policy.run(
            lambda: validator.validate(platform_ref, product_id),
            label=f"{platform.value} validation",
        )

        # 3. Allow-list on what the platform confirmed
        product = self.catalog.require(facts.product_id)
        if facts.product_id != product_id:
            raise InvalidArgumentError(
                "Platform reports a different product than requested",
                reason="product_mismatch",
            )

        status = (
            SubscriptionStatus.GRACE_PERIOD
            if facts.payment_state == PaymentState.GRACE
            else SubscriptionStatus.ACTIVE
        )
        receipt_data = platform_ref.strip() if platform == Platform.APP_STORE_B else None

        # 4. Ledger writes
        try:
            result = await self._record(
                user_id, platform, reference, product, facts, status, receipt_data, existing, now
            )
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            winner = await self.ledger.get_by_reference(platform, reference)
            if winner is None:
                logger.exception("Ledger write failed for %s reference", platform.value)
                raise LedgerError("Could not record subscription", reason="ledger_write_failed")
            self._check_owner(winner, user_id)
            logger.info("Concurrent validation created subscription %s first", winner.subscription_id)
            return ValidationResult(winner, True)
        except Exception:
            await self.db.rollback()
            raise

        await CacheInvalidator.on_subscription_changes(self.ledger.touched_users)
        if not result.is_duplicate:
            newrelic.agent.record_custom_metric("Custom/Subscriptions/Validations", 1)
        return result

    @staticmethod
    def _check_owner(subscription: Subscription, user_id: str) -> None:
        if subscription.user_id != user_id:
            logger.warning(
                "Reference of subscription %s presented by user %s",
                subscription.subscription_id,
                user_id,
            )
            raise ReferenceInUseError(
                "This purchase is already linked to another account",
                reason="reference_in_use",
            )

    async def _record(
        self,
        user_id: str,
        platform: Platform,
        reference: str,
        product: Product,
        facts: PurchaseFacts,
        status: SubscriptionStatus,
        receipt_data: Optional[str],
        existing: Optional[Subscription],
        now: datetime,
    ) -> ValidationResult:
        target = existing
        if target is None and facts.original_transaction_id:
            lineage = await self.ledger.get_by_original_transaction(platform, facts.original_transaction_id)
            if lineage is not None and lineage.status != SubscriptionStatus.EXPIRED:
                self._check_owner(lineage, user_id)
                if lineage.is_valid_at(now) and lineage.current_period_end >= facts.expires_at:
                    return ValidationResult(lineage, True)
                target = lineage

        if target is None:
            subscription = await self.ledger.create_subscription(
                user_id=user_id,
                platform=platform,
                reference=reference,
                product=product,
                status=status,
                period_start=facts.purchased_at,
                period_end=facts.expires_at,
                auto_renew=facts.auto_renew,
                transaction_id=facts.transaction_id,
                original_transaction_id=facts.original_transaction_id,
                acknowledged=facts.acknowledged,
                environment=facts.environment,
                receipt_data=receipt_data,
                now=now,
            )
            await self._after_write(subscription, product, facts, now, created=True)
            return ValidationResult(subscription, False)

        await self._refresh(target, product, facts, status, receipt_data, now)
        return ValidationResult(target, False)

    async def _refresh(
        self,
        subscription: Subscription,
        product: Product,
        facts: PurchaseFacts,
        status: SubscriptionStatus,
        receipt_data: Optional[str],
        now: datetime,
    ) -> None:
        """Bring a lapsed, non-terminal row up to date with fresh platform facts."""
        changes: dict[str, Any] = {
            "current_period_end": facts.expires_at,
            "auto_renew": facts.auto_renew,
            "latest_transaction_id": facts.transaction_id,
            "acknowledged": facts.acknowledged or subscription.acknowledged,
        }
        if facts.transaction_id and facts.transaction_id != subscription.latest_transaction_id:
            changes["last_payment_at"] = now
            changes["current_period_start"] = facts.purchased_at or now
        if receipt_data is not None:
            changes["receipt_data"] = receipt_data

        if subscription.status == SubscriptionStatus.ACTIVE:
            # Leaving active is not ours to decide; refresh facts only
            await self.ledger.update_facts(subscription, **changes)
            await self._after_write(subscription, product, facts, now, created=False)
            return

        outcome = await self.ledger.transition(
            subscription,
            status,
            actor=Actor.VALIDATION,
            event_type=SubscriptionEventType.VALIDATION,
            payload=self._event_payload(facts, product),
            changes=changes,
            now=now,
        )
        if outcome.rejected_reason:
            raise SubscriptionExpiredError(
                f"Subscription is {subscription.status.value} and cannot be reactivated by validation",
                reason=outcome.rejected_reason,
            )
        await self.ledger.record_payment(
            subscription, facts.transaction_id, product.amount, product.currency, now
        )

    async def _after_write(
        self,
        subscription: Subscription,
        product: Product,
        facts: PurchaseFacts,
        now: datetime,
        created: bool,
    ) -> None:
        await self.ledger.record_payment(
            subscription, facts.transaction_id, product.amount, product.currency, now
        )
        await self.ledger.append_event(
            subscription,
            SubscriptionEventType.VALIDATION,
            previous_status=None if created else subscription.status,
            new_status=subscription.status,
            applied=created,
            payload=self._event_payload(facts, product),
            now=now,
        )
        await self.ledger.refresh_projection(subscription.user_id, now)

    @staticmethod
    def _event_payload(facts: PurchaseFacts, product: Product) -> dict[str, Any]:
        return {
            "product_id": product.product_id,
            "payment_state": facts.payment_state.value,
            "expires_at": facts.expires_at.isoformat(),
            "auto_renew": facts.auto_renew,
            "transaction_id": facts.transaction_id,
            "original_transaction_id": facts.original_transaction_id,
            "environment": facts.environment,
        }
