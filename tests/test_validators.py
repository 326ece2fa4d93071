"""
Platform Validator Tests
========================

Both validators run against an ``httpx.MockTransport`` so no request leaves
the process.
"""

import json
from datetime import timedelta
from decimal import Decimal

import httpx
import pytest

from subrecon.models.subscription import Platform
from subrecon.services.validators.app_store import AppStoreValidator
from subrecon.services.validators.base import (
    BadPurchaseRequestError,
    PaymentState,
    PaymentUnconfirmedError,
    PlatformAuthError,
    PurchaseExpiredError,
    PurchaseNotFoundError,
    TransientPlatformError,
)
from subrecon.services.validators.google_play import GooglePlayValidator, base_order_id
from subrecon.services.validators.registry import ValidatorRegistry

from tests.conftest import NOW


def _millis(value) -> str:
    return str(int(value.timestamp() * 1000))


def _google(catalog, handler) -> GooglePlayValidator:
    return GooglePlayValidator(
        catalog,
        package_name="com.example.app",
        access_token="test-token",
        api_base="https://play.test/v3/",
        transport=httpx.MockTransport(handler),
        clock=lambda: NOW,
    )


def _apple(catalog, handler) -> AppStoreValidator:
    return AppStoreValidator(
        catalog,
        shared_secret="shared",
        production_url="https://buy.test/verifyReceipt",
        sandbox_url="https://sandbox.test/verifyReceipt",
        transport=httpx.MockTransport(handler),
        clock=lambda: NOW,
    )


def _purchase(**overrides) -> dict:
    data = {
        "startTimeMillis": _millis(NOW - timedelta(days=1)),
        "expiryTimeMillis": _millis(NOW + timedelta(days=29)),
        "autoRenewing": True,
        "paymentState": 1,
        "orderId": "GPA.1234-5678-9012-34567..2",
        "priceAmountMicros": "9990000",
        "priceCurrencyCode": "USD",
        "acknowledgementState": 1,
    }
    data.update(overrides)
    return data


def _receipt(status=0, expires=None, product_id="premium_monthly", **renewal) -> dict:
    expires = expires or NOW + timedelta(days=29)
    return {
        "status": status,
        "environment": "Production",
        "latest_receipt_info": [
            {
                "product_id": product_id,
                "transaction_id": "1000000000000002",
                "original_transaction_id": "1000000000000001",
                "purchase_date_ms": _millis(NOW - timedelta(days=1)),
                "expires_date_ms": _millis(expires),
            },
            {
                "product_id": product_id,
                "transaction_id": "1000000000000001",
                "original_transaction_id": "1000000000000001",
                "purchase_date_ms": _millis(NOW - timedelta(days=31)),
                "expires_date_ms": _millis(NOW - timedelta(days=1)),
            },
        ],
        "pending_renewal_info": [
            {
                "original_transaction_id": "1000000000000001",
                "auto_renew_status": "1",
                **renewal,
            }
        ],
    }


class TestGooglePlayValidator:
    """Tests for the app_store_a purchase lookup."""

    @pytest.mark.asyncio
    async def test_confirmed_purchase(self, catalog):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=_purchase())

        facts = await _google(catalog, handler).validate("token-abc", "premium_monthly")

        assert facts.payment_state == PaymentState.CONFIRMED
        assert facts.expires_at == NOW + timedelta(days=29)
        assert facts.transaction_id == "GPA.1234-5678-9012-34567..2"
        assert facts.original_transaction_id == "GPA.1234-5678-9012-34567"
        assert facts.amount == Decimal("9.99")
        assert facts.auto_renew is True

        url = str(requests[0].url)
        assert url == (
            "https://play.test/v3/applications/com.example.app"
            "/purchases/subscriptions/premium_monthly/tokens/token-abc"
        )
        assert requests[0].headers["Authorization"] == "Bearer test-token"

    @pytest.mark.asyncio
    async def test_pending_payment_is_unconfirmed(self, catalog):
        handler = lambda request: httpx.Response(200, json=_purchase(paymentState=0, autoRenewing=False))
        with pytest.raises(PaymentUnconfirmedError):
            await _google(catalog, handler).validate("token-abc", "premium_monthly")

    @pytest.mark.asyncio
    async def test_unsettled_initial_purchase_is_unconfirmed(self, catalog):
        """Pending payment on an order without a renewal suffix is not grace."""
        handler = lambda request: httpx.Response(
            200, json=_purchase(paymentState=0, orderId="GPA.1234-5678-9012-34567")
        )
        with pytest.raises(PaymentUnconfirmedError):
            await _google(catalog, handler).validate("token-abc", "premium_monthly")

    @pytest.mark.asyncio
    async def test_billing_retry_is_grace(self, catalog):
        handler = lambda request: httpx.Response(200, json=_purchase(paymentState=0, orderId="GPA.1234-5678-9012-34567..0"))
        facts = await _google(catalog, handler).validate("token-abc", "premium_monthly")
        assert facts.payment_state == PaymentState.GRACE

    @pytest.mark.asyncio
    async def test_lapsed_purchase_is_expired(self, catalog):
        data = _purchase(expiryTimeMillis=_millis(NOW - timedelta(hours=1)))
        del data["paymentState"]
        handler = lambda request: httpx.Response(200, json=data)
        with pytest.raises(PurchaseExpiredError):
            await _google(catalog, handler).validate("token-abc", "premium_monthly")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code, error", [
        (404, PurchaseNotFoundError),
        (410, PurchaseNotFoundError),
        (400, BadPurchaseRequestError),
        (401, PlatformAuthError),
        (403, PlatformAuthError),
        (429, TransientPlatformError),
        (503, TransientPlatformError),
    ])
    async def test_status_classification(self, catalog, status_code, error):
        handler = lambda request: httpx.Response(status_code, json={"error": {"code": status_code}})
        with pytest.raises(error):
            await _google(catalog, handler).validate("token-abc", "premium_monthly")

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, catalog):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(TransientPlatformError) as exc_info:
            await _google(catalog, handler).validate("token-abc", "premium_monthly")
        assert exc_info.value.retryable is True
        assert exc_info.value.reason == "timeout"

    @pytest.mark.asyncio
    async def test_unknown_product_never_reaches_platform(self, catalog):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json=_purchase())

        with pytest.raises(BadPurchaseRequestError) as exc_info:
            await _google(catalog, handler).validate("token-abc", "gold_lifetime")
        assert exc_info.value.reason == "unknown_product"
        assert calls == []

    @pytest.mark.asyncio
    async def test_empty_reference_rejected(self, catalog):
        handler = lambda request: httpx.Response(200, json=_purchase())
        with pytest.raises(BadPurchaseRequestError):
            await _google(catalog, handler).validate("   ", "premium_monthly")

    @pytest.mark.asyncio
    async def test_missing_credentials(self, catalog):
        validator = GooglePlayValidator(catalog, package_name="", access_token="", api_base="https://play.test")
        with pytest.raises(PlatformAuthError):
            await validator.validate("token-abc", "premium_monthly")

    def test_base_order_id(self):
        assert base_order_id("GPA.1-2-3..0") == "GPA.1-2-3"
        assert base_order_id("GPA.1-2-3") == "GPA.1-2-3"
        assert base_order_id(None) is None


class TestAppStoreValidator:
    """Tests for the app_store_b receipt verification."""

    @pytest.mark.asyncio
    async def test_latest_transaction_is_used(self, catalog):
        handler = lambda request: httpx.Response(200, json=_receipt())
        facts = await _apple(catalog, handler).validate("receipt-data", "premium_monthly")

        assert facts.payment_state == PaymentState.CONFIRMED
        assert facts.transaction_id == "1000000000000002"
        assert facts.original_transaction_id == "1000000000000001"
        assert facts.expires_at == NOW + timedelta(days=29)
        assert facts.auto_renew is True
        assert facts.environment == "production"

    @pytest.mark.asyncio
    async def test_sandbox_receipt_falls_back_to_sandbox(self, catalog):
        urls = []

        def handler(request: httpx.Request) -> httpx.Response:
            urls.append(str(request.url))
            if request.url.host == "buy.test":
                return httpx.Response(200, json={"status": 21007})
            body = _receipt()
            del body["environment"]
            return httpx.Response(200, json=body)

        facts = await _apple(catalog, handler).validate("receipt-data", "premium_monthly")

        assert urls == ["https://buy.test/verifyReceipt", "https://sandbox.test/verifyReceipt"]
        assert facts.environment == "sandbox"

    @pytest.mark.asyncio
    async def test_request_body(self, catalog):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json=_receipt())

        await _apple(catalog, handler).validate("  receipt-data  ", "premium_monthly")
        assert bodies == [{
            "receipt-data": "receipt-data",
            "password": "shared",
            "exclude-old-transactions": True,
        }]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code, error", [
        (21002, BadPurchaseRequestError),
        (21004, PlatformAuthError),
        (21005, TransientPlatformError),
        (21006, PurchaseExpiredError),
        (21010, PurchaseNotFoundError),
        (21150, TransientPlatformError),
    ])
    async def test_receipt_status_classification(self, catalog, status_code, error):
        handler = lambda request: httpx.Response(200, json={"status": status_code})
        with pytest.raises(error):
            await _apple(catalog, handler).validate("receipt-data", "premium_monthly")

    @pytest.mark.asyncio
    async def test_product_not_in_receipt(self, catalog):
        handler = lambda request: httpx.Response(200, json=_receipt(product_id="premium_annual"))
        with pytest.raises(PurchaseNotFoundError) as exc_info:
            await _apple(catalog, handler).validate("receipt-data", "premium_monthly")
        assert exc_info.value.reason == "product_not_in_receipt"

    @pytest.mark.asyncio
    async def test_billing_retry_within_grace(self, catalog):
        body = _receipt(
            expires=NOW - timedelta(hours=2),
            is_in_billing_retry_period="1",
            grace_period_expires_date_ms=_millis(NOW + timedelta(days=2)),
        )
        handler = lambda request: httpx.Response(200, json=body)
        facts = await _apple(catalog, handler).validate("receipt-data", "premium_monthly")
        assert facts.payment_state == PaymentState.GRACE

    @pytest.mark.asyncio
    async def test_lapsed_receipt_is_expired(self, catalog):
        handler = lambda request: httpx.Response(200, json=_receipt(expires=NOW - timedelta(hours=2)))
        with pytest.raises(PurchaseExpiredError):
            await _apple(catalog, handler).validate("receipt-data", "premium_monthly")

    @pytest.mark.asyncio
    async def test_http_5xx_is_transient(self, catalog):
        handler = lambda request: httpx.Response(502, text="bad gateway")
        with pytest.raises(TransientPlatformError):
            await _apple(catalog, handler).validate("receipt-data", "premium_monthly")

    def test_reference_key_is_digest(self, catalog):
        validator = _apple(catalog, lambda request: httpx.Response(200))
        key = validator.reference_key(" receipt-data ")
        assert key.startswith("sha256:")
        assert key == validator.reference_key("receipt-data")


class TestValidatorRegistry:
    """Tests for ValidatorRegistry"""

    def test_lookup_by_platform(self, catalog):
        google = _google(catalog, lambda request: httpx.Response(200))
        registry = ValidatorRegistry([google])
        assert registry.get(Platform.APP_STORE_A) is google
        assert registry.find(Platform.APP_STORE_B) is None
        assert Platform.APP_STORE_A in registry

    def test_unsupported_platform(self, catalog):
        registry = ValidatorRegistry([])
        with pytest.raises(Exception) as exc_info:
            registry.get(Platform.APP_STORE_B)
        assert exc_info.value.reason == "unsupported_platform"
