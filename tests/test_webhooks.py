"""
Webhook Normalizer Tests
========================

Tests for WebhookNormalizer including:
- app_store_a push envelopes mapped onto transitions
- Replays converging without double-applying
- Unknown subscriptions and unknown kinds acknowledged
- Terminal states rejecting reactivation
- app_store_b legacy notifications, expiry only moving forward
- Refunds flagging the charge
"""

import base64
import json
from datetime import timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from jose import jwt
from sqlalchemy import select

from subrecon.models.subscription import (
    Payment,
    PaymentStatus,
    Platform,
    SubscriptionEventType,
    SubscriptionStatus,
)
from subrecon.services.ledger import SubscriptionLedger
from subrecon.services.validation import ValidationPipeline
from subrecon.services.webhooks import (
    MalformedNotificationError,
    WebhookNormalizer,
    decode_notification,
)

from tests.conftest import NOW, USER_ID, make_facts

A = Platform.APP_STORE_A
B = Platform.APP_STORE_B
ORIGINAL_ID = "1000000000000001"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _millis(value) -> str:
    return str(int(value.timestamp() * 1000))


def _sign(claims: dict) -> str:
    return jwt.encode(claims, "platform-signing-key", algorithm="HS256")


def _signed_v2(
    kind: str,
    expires,
    *,
    subtype=None,
    transaction_id: str = "1000000000000003",
    **renewal,
) -> dict:
    transaction = {
        "originalTransactionId": ORIGINAL_ID,
        "transactionId": transaction_id,
        "productId": "premium_monthly",
        "expiresDate": int(_millis(expires)),
    }
    renewal_info = {"originalTransactionId": ORIGINAL_ID, "autoRenewStatus": 1, **renewal}
    claims = {
        "notificationType": kind,
        "notificationUUID": "5b7c1a4e-0000-4000-8000-000000000001",
        "data": {
            "signedTransactionInfo": _sign(transaction),
            "signedRenewalInfo": _sign(renewal_info),
        },
    }
    if subtype:
        claims["subtype"] = subtype
    return {"signedPayload": _sign(claims)}


def _envelope(token: str, notification_type: int, message_id: str = "m-1") -> dict:
    data = {
        "version": "1.0",
        "packageName": "com.example.app",
        "eventTimeMillis": _millis(NOW),
        "subscriptionNotification": {
            "version": "1.0",
            "notificationType": notification_type,
            "purchaseToken": token,
            "subscriptionId": "premium_monthly",
        },
    }
    return {
        "message": {
            "data": base64.b64encode(json.dumps(data).encode("utf-8")).decode("ascii"),
            "messageId": message_id,
        },
        "subscription": "projects/example/subscriptions/play-rtdn",
    }


def _legacy(kind: str, expires, transaction_id: str = "1000000000000002", **renewal) -> dict:
    return {
        "notification_type": kind,
        "environment": "PROD",
        "auto_renew_product_id": "premium_monthly",
        "unified_receipt": {
            "latest_receipt_info": [
                {
                    "product_id": "premium_monthly",
                    "transaction_id": transaction_id,
                    "original_transaction_id": ORIGINAL_ID,
                    "expires_date_ms": _millis(expires),
                }
            ],
            "pending_renewal_info": [
                {
                    "original_transaction_id": ORIGINAL_ID,
                    "auto_renew_status": "1",
                    **renewal,
                }
            ],
        },
    }


@pytest.fixture
def normalizer(db_session, registry, clock):
    return WebhookNormalizer(db_session, registry=registry, clock=clock)


@pytest_asyncio.fixture
async def google_subscription(db_session, registry, catalog, retry_policy, clock, fake_validator):
    fake_validator.responses["tok-1"] = make_facts()
    pipeline = ValidationPipeline(db_session, registry, catalog=catalog, retry_policy=retry_policy, clock=clock)
    result = await pipeline.validate_purchase(USER_ID, A, "tok-1", "premium_monthly")
    return result.subscription


@pytest_asyncio.fixture
async def apple_subscription(db_session, catalog):
    ledger = SubscriptionLedger(db_session)
    subscription = await ledger.create_subscription(
        user_id=USER_ID,
        platform=B,
        reference="sha256:receipt",
        product=catalog.get("premium_monthly"),
        status=SubscriptionStatus.ACTIVE,
        period_start=NOW - timedelta(days=1),
        period_end=NOW + timedelta(days=29),
        auto_renew=True,
        transaction_id="1000000000000002",
        original_transaction_id=ORIGINAL_ID,
        now=NOW,
    )
    await ledger.record_payment(subscription, "1000000000000002", Decimal("9.99"), "USD", NOW)
    await db_session.commit()
    return subscription


# ---------------------------------------------------------------------------
# app_store_a
# ---------------------------------------------------------------------------

class TestAppStoreANotifications:
    """Push envelopes keyed by purchase token."""

    @pytest.mark.asyncio
    async def test_cancel_then_replay(self, normalizer, google_subscription, db_session, clock):
        """A redelivered cancellation is a no-op."""
        first = await normalizer.handle_notification(A, _envelope("tok-1", 3))
        clock.advance(minutes=5)
        second = await normalizer.handle_notification(A, _envelope("tok-1", 3))

        assert first.result == "applied"
        assert first.status == "cancelled"
        assert second.result == "unchanged"
        assert second.status == "cancelled"

        events = await SubscriptionLedger(db_session).list_events(google_subscription.subscription_id)
        cancellations = [e for e in events if e.event_type == SubscriptionEventType.CANCELLATION]
        assert [e.applied for e in cancellations] == [True, False]
        assert google_subscription.cancelled_at == NOW

    @pytest.mark.asyncio
    async def test_renewal_refreshes_expiry_from_platform(
        self, normalizer, google_subscription, fake_validator, db_session
    ):
        await normalizer.handle_notification(A, _envelope("tok-1", 3))
        fake_validator.responses["tok-1"] = make_facts(
            expires_at=NOW + timedelta(days=60),
            transaction_id="GPA.1111-2222-3333-44444..0",
        )

        outcome = await normalizer.handle_notification(A, _envelope("tok-1", 2, message_id="m-2"))

        assert outcome.result == "applied"
        assert outcome.status == "active"
        assert google_subscription.current_period_end == NOW + timedelta(days=60)
        assert google_subscription.latest_transaction_id == "GPA.1111-2222-3333-44444..0"

        payments = (await db_session.execute(select(Payment))).scalars().all()
        assert len(payments) == 2

    @pytest.mark.asyncio
    async def test_expired_goes_through_grace(self, normalizer, google_subscription, db_session):
        outcome = await normalizer.handle_notification(A, _envelope("tok-1", 13))

        assert outcome.result == "applied"
        assert outcome.status == "expired"

        ledger = SubscriptionLedger(db_session)
        events = await ledger.list_events(google_subscription.subscription_id)
        hops = [(e.previous_status, e.new_status) for e in events if e.applied and e.notification_kind]
        assert sorted(hops) == [("active", "grace_period"), ("grace_period", "expired")]

        user = await ledger.get_user(USER_ID)
        assert user.is_entitled is False
        assert user.entitlement_status == "expired"

    @pytest.mark.asyncio
    async def test_expired_cannot_be_recovered(self, db_session, google_subscription, clock):
        normalizer = WebhookNormalizer(db_session, clock=clock)
        await normalizer.handle_notification(A, _envelope("tok-1", 13))

        outcome = await normalizer.handle_notification(A, _envelope("tok-1", 1, message_id="m-2"))

        assert outcome.result == "rejected"
        assert outcome.status == "expired"
        events = await SubscriptionLedger(db_session).list_events(google_subscription.subscription_id)
        recovered = [e for e in events if e.notification_kind == "SUBSCRIPTION_RECOVERED"]
        assert len(recovered) == 1
        assert recovered[0].applied is False
        assert recovered[0].payload["rejected"] == "invalid_transition"

    @pytest.mark.asyncio
    async def test_unknown_subscription_is_unmatched(self, normalizer):
        outcome = await normalizer.handle_notification(A, _envelope("tok-unknown", 2))
        assert outcome.result == "unmatched"
        assert outcome.kind == "SUBSCRIPTION_RENEWED"

    @pytest.mark.asyncio
    async def test_notification_before_validation_converges(
        self, normalizer, db_session, registry, catalog, retry_policy, clock, fake_validator
    ):
        """A renewal that arrives before the row exists is picked up on redelivery."""
        early = await normalizer.handle_notification(A, _envelope("tok-9", 2))
        assert early.result == "unmatched"
        assert fake_validator.calls == []

        fake_validator.responses["tok-9"] = make_facts()
        pipeline = ValidationPipeline(db_session, registry, catalog=catalog, retry_policy=retry_policy, clock=clock)
        subscription = (await pipeline.validate_purchase(USER_ID, A, "tok-9", "premium_monthly")).subscription
        assert subscription.current_period_end == NOW + timedelta(days=30)

        fake_validator.responses["tok-9"] = make_facts(
            expires_at=NOW + timedelta(days=60),
            transaction_id="GPA.1111-2222-3333-44444..0",
        )
        clock.advance(minutes=5)
        redelivered = await normalizer.handle_notification(A, _envelope("tok-9", 2))
        clock.advance(minutes=5)
        again = await normalizer.handle_notification(A, _envelope("tok-9", 2))

        assert redelivered.subscription_id == str(subscription.subscription_id)
        assert again.result == "unchanged"
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.current_period_end == NOW + timedelta(days=60)
        assert subscription.latest_transaction_id == "GPA.1111-2222-3333-44444..0"

        payments = (await db_session.execute(select(Payment))).scalars().all()
        assert len(payments) == 2

    @pytest.mark.asyncio
    async def test_unknown_kind_is_ignored(self, normalizer, google_subscription):
        outcome = await normalizer.handle_notification(A, _envelope("tok-1", 99))
        assert outcome.result == "ignored"
        assert outcome.kind == "UNKNOWN_99"
        assert google_subscription.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_purchase_notification_is_audit_only(self, normalizer, google_subscription, db_session):
        outcome = await normalizer.handle_notification(A, _envelope("tok-1", 4))
        assert outcome.result == "unchanged"
        assert google_subscription.version == 1

    @pytest.mark.asyncio
    async def test_test_envelope_is_ignored(self, normalizer):
        data = base64.b64encode(json.dumps({"testNotification": {"version": "1.0"}}).encode()).decode()
        outcome = await normalizer.handle_notification(A, {"message": {"data": data, "messageId": "t"}})
        assert outcome.result == "ignored"

    @pytest.mark.asyncio
    async def test_records_metric(self, normalizer, google_subscription, _no_external_services):
        await normalizer.handle_notification(A, _envelope("tok-1", 3))
        _no_external_services.assert_any_call("Custom/Subscriptions/Webhooks/applied", 1)


class TestMalformedPayloads:
    """Payloads that cannot be decoded."""

    @pytest.mark.parametrize("payload", [
        "not json",
        "[1, 2]",
        {"message": {}},
        {"message": {"data": "!!!not-base64!!!"}},
    ])
    def test_app_store_a(self, payload):
        with pytest.raises(MalformedNotificationError):
            decode_notification(A, payload)

    def test_missing_purchase_token(self):
        data = base64.b64encode(json.dumps({"subscriptionNotification": {"notificationType": 2}}).encode()).decode()
        with pytest.raises(MalformedNotificationError) as exc_info:
            decode_notification(A, {"message": {"data": data}})
        assert exc_info.value.reason == "missing_reference"

    def test_app_store_b_without_type(self):
        with pytest.raises(MalformedNotificationError):
            decode_notification(B, {"unified_receipt": {}})

    def test_app_store_b_without_original_transaction(self):
        with pytest.raises(MalformedNotificationError):
            decode_notification(B, {"notification_type": "DID_RENEW"})

    def test_app_store_b_test_notification(self):
        assert decode_notification(B, {"notification_type": "TEST"}) is None


# ---------------------------------------------------------------------------
# app_store_b
# ---------------------------------------------------------------------------

class TestAppStoreBNotifications:
    """Legacy status-update notifications keyed by original transaction id."""

    @pytest.mark.asyncio
    async def test_renewal_moves_expiry_forward_only(self, normalizer, apple_subscription):
        renewed = await normalizer.handle_notification(
            B, _legacy("DID_RENEW", NOW + timedelta(days=60), transaction_id="1000000000000003")
        )
        assert renewed.result == "unchanged"
        assert apple_subscription.current_period_end == NOW + timedelta(days=60)
        assert apple_subscription.latest_transaction_id == "1000000000000003"

        # A late delivery of an older renewal
        late = await normalizer.handle_notification(
            B, _legacy("DID_RENEW", NOW + timedelta(days=30), transaction_id="1000000000000002")
        )
        assert late.result == "unchanged"
        assert apple_subscription.current_period_end == NOW + timedelta(days=60)
        assert apple_subscription.latest_transaction_id == "1000000000000003"

    @pytest.mark.asyncio
    async def test_refund_flags_payment(self, normalizer, apple_subscription, db_session):
        outcome = await normalizer.handle_notification(B, _legacy("REFUND", NOW + timedelta(days=29)))

        assert outcome.result == "applied"
        assert outcome.status == "refunded"
        assert apple_subscription.refunded_at == NOW

        status = (await db_session.execute(select(Payment.status))).scalar_one()
        assert status == PaymentStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_failed_renewal_in_billing_retry_is_grace(self, normalizer, apple_subscription):
        outcome = await normalizer.handle_notification(
            B,
            _legacy(
                "DID_FAIL_TO_RENEW",
                NOW - timedelta(hours=1),
                is_in_billing_retry_period="1",
                grace_period_expires_date_ms=_millis(NOW + timedelta(days=3)),
            ),
        )
        assert outcome.result == "applied"
        assert outcome.status == "grace_period"

    @pytest.mark.asyncio
    async def test_failed_renewal_without_grace(self, normalizer, apple_subscription):
        outcome = await normalizer.handle_notification(B, _legacy("DID_FAIL_TO_RENEW", NOW - timedelta(hours=1)))
        assert outcome.status == "payment_failed"

    @pytest.mark.asyncio
    async def test_auto_renew_toggle(self, normalizer, apple_subscription):
        payload = _legacy("DID_CHANGE_RENEWAL_STATUS", NOW + timedelta(days=29))
        payload["auto_renew_status"] = "false"

        outcome = await normalizer.handle_notification(B, payload)

        assert outcome.result == "unchanged"
        assert outcome.status == "active"
        assert apple_subscription.auto_renew is False


class TestAppStoreBSignedNotifications:
    """V2 notifications carrying a signedPayload with nested signed claims."""

    def test_decodes_nested_claims(self):
        notification = decode_notification(B, _signed_v2("DID_RENEW", NOW + timedelta(days=60)))

        assert notification.kind == "DID_RENEW"
        assert notification.original_transaction_id == ORIGINAL_ID
        assert notification.transaction_id == "1000000000000003"
        assert notification.product_id == "premium_monthly"
        assert notification.expires_at == NOW + timedelta(days=60)
        assert notification.auto_renew is True
        assert notification.in_grace is False
        assert notification.raw["notificationUUID"] == "5b7c1a4e-0000-4000-8000-000000000001"

    def test_renewal_status_subtype_overrides_renewal_info(self):
        payload = _signed_v2("DID_CHANGE_RENEWAL_STATUS", NOW + timedelta(days=29), subtype="AUTO_RENEW_DISABLED")
        notification = decode_notification(B, payload)
        assert notification.auto_renew is False

    def test_unreadable_signed_payload(self):
        with pytest.raises(MalformedNotificationError) as exc_info:
            decode_notification(B, {"signedPayload": "not-a-jws"})
        assert exc_info.value.reason == "invalid_signed_payload"

    def test_test_notification_is_ignored(self):
        claims = {"notificationType": "TEST", "data": {}}
        assert decode_notification(B, {"signedPayload": _sign(claims)}) is None

    @pytest.mark.asyncio
    async def test_renewal_moves_expiry(self, normalizer, apple_subscription):
        outcome = await normalizer.handle_notification(B, _signed_v2("DID_RENEW", NOW + timedelta(days=60)))

        assert outcome.status == "active"
        assert apple_subscription.current_period_end == NOW + timedelta(days=60)
        assert apple_subscription.latest_transaction_id == "1000000000000003"

    @pytest.mark.asyncio
    async def test_grace_period_subtype(self, normalizer, apple_subscription):
        payload = _signed_v2("DID_FAIL_TO_RENEW", NOW - timedelta(hours=1), subtype="GRACE_PERIOD")

        outcome = await normalizer.handle_notification(B, payload)

        assert outcome.result == "applied"
        assert outcome.status == "grace_period"

    @pytest.mark.asyncio
    async def test_billing_retry_without_subtype_is_payment_failed(self, normalizer, apple_subscription):
        payload = _signed_v2("DID_FAIL_TO_RENEW", NOW - timedelta(hours=1), isInBillingRetryPeriod=True)

        outcome = await normalizer.handle_notification(B, payload)

        assert outcome.status == "payment_failed"
