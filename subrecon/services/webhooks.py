"""
Webhook Normalizer
==================

Maps each platform's asynchronous notification vocabulary onto the
subscription state machine.

Handles:
- app_store_a push envelopes (``message.data`` is base64 JSON)
- app_store_b legacy status-update notifications and V2 ``signedPayload``
- Lookup by external reference or original-transaction id
- Fixed kind -> transition table, one audit event per matched delivery

Delivery is at-least-once and unordered. Replays converge because the
state machine treats "already there" as a no-op, and expiry refreshes only
ever move the period end forward.
"""

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

import newrelic.agent
from sqlalchemy.ext.asyncio import AsyncSession

from subrecon.core.errors import InvalidArgumentError
from subrecon.core.security import read_signed_claims
from subrecon.core.state_machine import Actor
from subrecon.db.base import utcnow
from subrecon.models.subscription import (
    Platform,
    Subscription,
    SubscriptionEventType,
    SubscriptionStatus as S,
)
from subrecon.services.cache import CacheInvalidator
from subrecon.services.ledger import SubscriptionLedger
from subrecon.services.validators.base import ValidatorError, utc_from_millis
from subrecon.services.validators.registry import ValidatorRegistry

logger = logging.getLogger(__name__)


class MalformedNotificationError(InvalidArgumentError):
    """The payload could not be decoded into a notification."""


@dataclass(frozen=True)
class Notification:
    """Platform notification reduced to what the ledger needs."""

    platform: Platform
    kind: str
    external_reference: Optional[str] = None
    original_transaction_id: Optional[str] = None
    transaction_id: Optional[str] = None
    product_id: Optional[str] = None
    subtype: Optional[str] = None
    expires_at: Optional[datetime] = None
    auto_renew: Optional[bool] = None
    in_grace: bool = False
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


class Effect(str, Enum):
    AUDIT = "audit"
    TRANSITION = "transition"
    AUTO_RENEW = "auto_renew"
    FAILED_RENEWAL = "failed_renewal"


@dataclass(frozen=True)
class Rule:
    effect: Effect
    target: Optional[S] = None
    refresh_expiry: bool = False


@dataclass(frozen=True)
class WebhookOutcome:
    """What happened to one delivery."""

    result: str
    kind: Optional[str] = None
    subscription_id: Optional[str] = None
    status: Optional[str] = None


# =============================================================================
# Mapping tables
# =============================================================================

APP_STORE_A_KINDS = {
    1: "SUBSCRIPTION_RECOVERED",
    2: "SUBSCRIPTION_RENEWED",
    3: "SUBSCRIPTION_CANCELED",
    4: "SUBSCRIPTION_PURCHASED",
    5: "SUBSCRIPTION_ON_HOLD",
    6: "SUBSCRIPTION_IN_GRACE_PERIOD",
    7: "SUBSCRIPTION_RESTARTED",
    8: "SUBSCRIPTION_PRICE_CHANGE_CONFIRMED",
    9: "SUBSCRIPTION_DEFERRED",
    10: "SUBSCRIPTION_PAUSED",
    11: "SUBSCRIPTION_PAUSE_SCHEDULE_CHANGED",
    12: "SUBSCRIPTION_REVOKED",
    13: "SUBSCRIPTION_EXPIRED",
}

APP_STORE_A_RULES = {
    "SUBSCRIPTION_RECOVERED": Rule(Effect.TRANSITION, S.ACTIVE, refresh_expiry=True),
    "SUBSCRIPTION_RENEWED": Rule(Effect.TRANSITION, S.ACTIVE, refresh_expiry=True),
    "SUBSCRIPTION_CANCELED": Rule(Effect.TRANSITION, S.CANCELLED),
    # Creation belongs to interactive validation
    "SUBSCRIPTION_PURCHASED": Rule(Effect.AUDIT),
    "SUBSCRIPTION_ON_HOLD": Rule(Effect.TRANSITION, S.ON_HOLD),
    "SUBSCRIPTION_IN_GRACE_PERIOD": Rule(Effect.TRANSITION, S.GRACE_PERIOD),
    "SUBSCRIPTION_RESTARTED": Rule(Effect.TRANSITION, S.ACTIVE, refresh_expiry=True),
    "SUBSCRIPTION_PRICE_CHANGE_CONFIRMED": Rule(Effect.AUDIT),
    "SUBSCRIPTION_DEFERRED": Rule(Effect.TRANSITION, S.DEFERRED, refresh_expiry=True),
    "SUBSCRIPTION_PAUSED": Rule(Effect.TRANSITION, S.PAUSED),
    "SUBSCRIPTION_PAUSE_SCHEDULE_CHANGED": Rule(Effect.AUDIT),
    "SUBSCRIPTION_REVOKED": Rule(Effect.TRANSITION, S.REVOKED),
    "SUBSCRIPTION_EXPIRED": Rule(Effect.TRANSITION, S.EXPIRED),
}

APP_STORE_B_RULES = {
    "INITIAL_BUY": Rule(Effect.AUDIT),
    "SUBSCRIBED": Rule(Effect.AUDIT),
    "DID_RENEW": Rule(Effect.TRANSITION, S.ACTIVE, refresh_expiry=True),
    "INTERACTIVE_RENEWAL": Rule(Effect.TRANSITION, S.ACTIVE, refresh_expiry=True),
    "DID_RECOVER": Rule(Effect.TRANSITION, S.ACTIVE, refresh_expiry=True),
    "RENEWAL_EXTENDED": Rule(Effect.TRANSITION, S.ACTIVE, refresh_expiry=True),
    "DID_FAIL_TO_RENEW": Rule(Effect.FAILED_RENEWAL),
    "DID_CHANGE_RENEWAL_STATUS": Rule(Effect.AUTO_RENEW),
    "DID_CHANGE_RENEWAL_PREF": Rule(Effect.AUDIT),
    "PRICE_INCREASE": Rule(Effect.AUDIT),
    "PRICE_INCREASE_CONSENT": Rule(Effect.AUDIT),
    "OFFER_REDEEMED": Rule(Effect.AUDIT),
    "CONSUMPTION_REQUEST": Rule(Effect.AUDIT),
    "REFUND_DECLINED": Rule(Effect.AUDIT),
    "CANCEL": Rule(Effect.TRANSITION, S.CANCELLED),
    "DID_CANCEL": Rule(Effect.TRANSITION, S.CANCELLED),
    "REFUND": Rule(Effect.TRANSITION, S.REFUNDED),
    "REVOKE": Rule(Effect.TRANSITION, S.REVOKED),
    "EXPIRED": Rule(Effect.TRANSITION, S.EXPIRED),
    "GRACE_PERIOD_EXPIRED": Rule(Effect.TRANSITION, S.EXPIRED),
}

_RULES = {
    Platform.APP_STORE_A: APP_STORE_A_RULES,
    Platform.APP_STORE_B: APP_STORE_B_RULES,
}


# =============================================================================
# Decoding
# =============================================================================

def _as_dict(raw_payload: Any) -> dict[str, Any]:
    if isinstance(raw_payload, (bytes, bytearray)):
        raw_payload = raw_payload.decode("utf-8")
    if isinstance(raw_payload, str):
        try:
            raw_payload = json.loads(raw_payload)
        except json.JSONDecodeError as e:
            raise MalformedNotificationError("Payload is not valid JSON", reason="invalid_json") from e
    if not isinstance(raw_payload, dict):
        raise MalformedNotificationError("Payload must be a JSON object", reason="invalid_payload")
    return raw_payload


def decode_app_store_a(payload: dict[str, Any]) -> Optional[Notification]:
    """
    Decode a push envelope.

    Returns None for envelopes that carry no subscription notification
    (test and one-time product notifications).
    """
    message = payload.get("message")
    if not isinstance(message, dict) or not message.get("data"):
        raise MalformedNotificationError("Envelope has no message data", reason="invalid_envelope")

    try:
        decoded = json.loads(base64.b64decode(message["data"], validate=False).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError, TypeError) as e:
        raise MalformedNotificationError("Message data is not base64 JSON", reason="invalid_message_data") from e
    if not isinstance(decoded, dict):
        raise MalformedNotificationError("Message data must be a JSON object", reason="invalid_message_data")

    body = decoded.get("subscriptionNotification")
    if not body:
        logger.info("app_store_a envelope without subscription notification (message %s)", message.get("messageId"))
        return None

    purchase_token = body.get("purchaseToken")
    if not purchase_token:
        raise MalformedNotificationError("Notification has no purchase token", reason="missing_reference")

    notification_type = body.get("notificationType")
    kind = APP_STORE_A_KINDS.get(notification_type, f"UNKNOWN_{notification_type}")

    return Notification(
        platform=Platform.APP_STORE_A,
        kind=kind,
        external_reference=purchase_token,
        product_id=body.get("subscriptionId"),
        raw={"messageId": message.get("messageId"), **decoded},
    )


def _decode_signed_v2(payload: dict[str, Any]) -> Notification:
    try:
        claims = read_signed_claims(payload["signedPayload"])
        data = claims.get("data") or {}
        transaction = read_signed_claims(data["signedTransactionInfo"]) if data.get("signedTransactionInfo") else {}
        renewal = read_signed_claims(data["signedRenewalInfo"]) if data.get("signedRenewalInfo") else {}
    except ValueError as e:
        raise MalformedNotificationError("signedPayload could not be read", reason="invalid_signed_payload") from e

    kind = claims.get("notificationType")
    if not kind:
        raise MalformedNotificationError("Notification has no type", reason="missing_type")

    subtype = claims.get("subtype")
    grace_expires = utc_from_millis(renewal.get("gracePeriodExpiresDate"))
    auto_renew = renewal.get("autoRenewStatus")
    if kind == "DID_CHANGE_RENEWAL_STATUS" and subtype in ("AUTO_RENEW_ENABLED", "AUTO_RENEW_DISABLED"):
        auto_renew = 1 if subtype == "AUTO_RENEW_ENABLED" else 0

    return Notification(
        platform=Platform.APP_STORE_B,
        kind=kind,
        original_transaction_id=transaction.get("originalTransactionId") or renewal.get("originalTransactionId"),
        transaction_id=transaction.get("transactionId"),
        product_id=transaction.get("productId"),
        subtype=subtype,
        expires_at=utc_from_millis(transaction.get("expiresDate")),
        auto_renew=None if auto_renew is None else bool(int(auto_renew)),
        in_grace=subtype == "GRACE_PERIOD" or (bool(renewal.get("isInBillingRetryPeriod")) and grace_expires is not None),
        raw={
            "notificationType": kind,
            "subtype": subtype,
            "notificationUUID": claims.get("notificationUUID"),
            "transaction": transaction,
            "renewal": renewal,
        },
    )


def _decode_legacy(payload: dict[str, Any]) -> Notification:
    kind = payload.get("notification_type")
    if not kind:
        raise MalformedNotificationError("Notification has no type", reason="missing_type")

    unified = payload.get("unified_receipt") or {}
    receipts = unified.get("latest_receipt_info") or []
    product_id = payload.get("auto_renew_product_id")
    matching = [txn for txn in receipts if not product_id or txn.get("product_id") == product_id] or receipts
    latest = max(matching, key=lambda txn: int(txn.get("expires_date_ms") or 0)) if matching else {}

    original_id = latest.get("original_transaction_id") or payload.get("original_transaction_id")
    renewal = {}
    for info in unified.get("pending_renewal_info") or []:
        if info.get("original_transaction_id") == original_id:
            renewal = info
            break

    auto_renew_flag = payload.get("auto_renew_status")
    if auto_renew_flag is None and renewal.get("auto_renew_status") is not None:
        auto_renew_flag = renewal.get("auto_renew_status") == "1"
    elif isinstance(auto_renew_flag, str):
        auto_renew_flag = auto_renew_flag.lower() == "true"

    grace_expires = utc_from_millis(renewal.get("grace_period_expires_date_ms"))

    return Notification(
        platform=Platform.APP_STORE_B,
        kind=kind,
        original_transaction_id=original_id,
        transaction_id=latest.get("transaction_id"),
        product_id=latest.get("product_id") or product_id,
        expires_at=utc_from_millis(latest.get("expires_date_ms")),
        auto_renew=auto_renew_flag,
        in_grace=renewal.get("is_in_billing_retry_period") == "1" and grace_expires is not None,
        raw={
            "notification_type": kind,
            "environment": payload.get("environment"),
            "latest_transaction": latest,
            "pending_renewal_info": renewal,
        },
    )


def decode_app_store_b(payload: dict[str, Any]) -> Optional[Notification]:
    if payload.get("signedPayload"):
        notification = _decode_signed_v2(payload)
    else:
        notification = _decode_legacy(payload)

    if notification.kind == "TEST":
        logger.info("app_store_b test notification received")
        return None
    if not notification.original_transaction_id:
        raise MalformedNotificationError("Notification has no original transaction id", reason="missing_reference")
    return notification


_DECODERS: dict[Platform, Callable[[dict[str, Any]], Optional[Notification]]] = {
    Platform.APP_STORE_A: decode_app_store_a,
    Platform.APP_STORE_B: decode_app_store_b,
}


def decode_notification(platform: Platform, raw_payload: Any) -> Optional[Notification]:
    """Decode a raw webhook body for ``platform``. Raises ``MalformedNotificationError``."""
    return _DECODERS[platform](_as_dict(raw_payload))


# =============================================================================
# Normalizer
# =============================================================================

class WebhookNormalizer:
    """Applies decoded notifications to the ledger."""

    def __init__(
        self,
        db: AsyncSession,
        registry: Optional[ValidatorRegistry] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.registry = registry
        self.clock = clock
        self.ledger = SubscriptionLedger(db)

    async def handle_notification(self, platform: Platform, raw_payload: Any) -> WebhookOutcome:
        """
        Decode and apply one delivery, committing on success.

        Unknown subscriptions and unknown kinds are acknowledged without
        error. Ledger failures roll back and propagate so the platform
        redelivers.
        """
        notification = decode_notification(platform, raw_payload)
        if notification is None:
            return WebhookOutcome("ignored")

        try:
            outcome = await self._apply(notification)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await CacheInvalidator.on_subscription_changes(self.ledger.touched_users)
        newrelic.agent.record_custom_metric(f"Custom/Subscriptions/Webhooks/{outcome.result}", 1)
        return outcome

    async def _find(self, notification: Notification) -> Optional[Subscription]:
        if notification.external_reference:
            subscription = await self.ledger.get_by_reference(
                notification.platform, notification.external_reference
            )
            if subscription is not None:
                return subscription
        if notification.original_transaction_id:
            return await self.ledger.get_by_original_transaction(
                notification.platform, notification.original_transaction_id
            )
        return None

    async def _apply(self, notification: Notification) -> WebhookOutcome:
        now = self.clock()
        subscription = await self._find(notification)
        if subscription is None:
            # Expected when a purchase notification beats the interactive validation call
            logger.info(
                "No subscription for %s notification %s (reference=%s, original=%s)",
                notification.platform.value,
                notification.kind,
                notification.external_reference,
                notification.original_transaction_id,
            )
            return WebhookOutcome("unmatched", kind=notification.kind)

        rule = _RULES[notification.platform].get(notification.kind)
        if rule is None:
            logger.warning(
                "Ignoring unknown %s notification kind %s for subscription %s",
                notification.platform.value,
                notification.kind,
                subscription.subscription_id,
            )
            return WebhookOutcome("ignored", kind=notification.kind, subscription_id=str(subscription.subscription_id))

        payload = {
            "subtype": notification.subtype,
            "transaction_id": notification.transaction_id,
            "expires_at": notification.expires_at,
            "notification": notification.raw,
        }

        if rule.effect == Effect.AUDIT:
            await self.ledger.append_event(
                subscription,
                SubscriptionEventType.WEBHOOK_NOTIFICATION,
                notification_kind=notification.kind,
                previous_status=subscription.status,
                new_status=subscription.status,
                applied=False,
                payload=payload,
                now=now,
            )
            return self._outcome("unchanged", notification, subscription)

        if rule.effect == Effect.AUTO_RENEW:
            if notification.auto_renew is not None and notification.auto_renew != subscription.auto_renew:
                await self.ledger.update_facts(subscription, auto_renew=notification.auto_renew)
            await self.ledger.append_event(
                subscription,
                SubscriptionEventType.WEBHOOK_NOTIFICATION,
                notification_kind=notification.kind,
                previous_status=subscription.status,
                new_status=subscription.status,
                applied=False,
                payload={**payload, "auto_renew": notification.auto_renew},
                now=now,
            )
            return self._outcome("unchanged", notification, subscription)

        target = rule.target
        if rule.effect == Effect.FAILED_RENEWAL:
            target = S.GRACE_PERIOD if notification.in_grace else S.PAYMENT_FAILED

        changes = await self._changes_for(notification, subscription, rule)
        outcome = await self.ledger.transition(
            subscription,
            target,
            actor=Actor.WEBHOOK,
            event_type=self._event_type(target),
            notification_kind=notification.kind,
            payload=payload,
            changes=changes,
            now=now,
        )

        if outcome.rejected_reason:
            return self._outcome("rejected", notification, subscription)

        if target == S.REFUNDED and outcome.applied:
            await self.ledger.mark_payment_refunded(subscription.platform, notification.transaction_id)
        if changes.get("latest_transaction_id"):
            await self.ledger.record_payment(
                subscription,
                changes["latest_transaction_id"],
                subscription.amount,
                subscription.currency,
                now,
            )

        return self._outcome("applied" if outcome.applied else "unchanged", notification, subscription)

    async def _changes_for(
        self,
        notification: Notification,
        subscription: Subscription,
        rule: Rule,
    ) -> dict[str, Any]:
        changes: dict[str, Any] = {}
        if notification.auto_renew is not None and notification.auto_renew != subscription.auto_renew:
            changes["auto_renew"] = notification.auto_renew
        if not rule.refresh_expiry:
            return changes

        expires_at = notification.expires_at
        transaction_id = notification.transaction_id
        if expires_at is None:
            expires_at, transaction_id = await self._fetch_period(subscription)

        # Period end only moves forward; late deliveries of older renewals are no-ops
        if expires_at is not None and (
            subscription.current_period_end is None or expires_at > subscription.current_period_end
        ):
            changes["current_period_end"] = expires_at
            changes["last_payment_at"] = self.clock()
            if transaction_id and transaction_id != subscription.latest_transaction_id:
                changes["latest_transaction_id"] = transaction_id
        return changes

    async def _fetch_period(self, subscription: Subscription) -> tuple[Optional[datetime], Optional[str]]:
        """Ask the platform for the current period end and charge; (None, None) when unavailable."""
        if self.registry is None:
            return None, None
        validator = self.registry.find(subscription.platform)
        if validator is None:
            return None, None
        reference = subscription.receipt_data or subscription.external_reference
        try:
            facts = await validator.validate(reference, subscription.product_id)
        except ValidatorError as e:
            logger.warning(
                "Expiry refresh failed for subscription %s: %s",
                subscription.subscription_id,
                e,
            )
            return None, None
        return facts.expires_at, facts.transaction_id

    @staticmethod
    def _event_type(target: S) -> SubscriptionEventType:
        if target == S.CANCELLED:
            return SubscriptionEventType.CANCELLATION
        if target == S.REFUNDED:
            return SubscriptionEventType.REFUND
        return SubscriptionEventType.WEBHOOK_NOTIFICATION

    @staticmethod
    def _outcome(result: str, notification: Notification, subscription: Subscription) -> WebhookOutcome:
        logger.info(
            "Webhook %s %s for subscription %s: %s (status=%s)",
            notification.platform.value,
            notification.kind,
            subscription.subscription_id,
            result,
            subscription.status.value,
        )
        return WebhookOutcome(
            result,
            kind=notification.kind,
            subscription_id=str(subscription.subscription_id),
            status=subscription.status.value,
        )
