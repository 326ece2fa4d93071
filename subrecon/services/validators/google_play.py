"""
app_store_a Validator
=====================

Purchase lookup against the Google Play Developer API
(``purchases.subscriptions.get``), keyed by purchase token.
"""

import logging
from decimal import Decimal
from typing import Any, Optional
from urllib.parse import quote

import httpx

from subrecon.config import settings
from subrecon.core.products import ProductCatalog
from subrecon.models.subscription import Platform
from subrecon.services.validators.base import (
    BadPurchaseRequestError,
    PaymentState,
    PlatformAuthError,
    PlatformValidator,
    PurchaseFacts,
    PurchaseNotFoundError,
    TransientPlatformError,
    utc_from_millis,
)

logger = logging.getLogger(__name__)

# paymentState values
PAYMENT_PENDING = 0
PAYMENT_RECEIVED = 1
PAYMENT_FREE_TRIAL = 2
PAYMENT_DEFERRED = 3


def base_order_id(order_id: Optional[str]) -> Optional[str]:
    """
    Strip the renewal suffix from an order id.

    Renewals are reported as ``GPA.1234-5678..0``, ``..1`` and so on; the part
    before ``..`` is shared by the whole lineage.
    """
    if not order_id:
        return None
    return order_id.split("..", 1)[0]


def is_renewal_order(order_id: Optional[str]) -> bool:
    """True for order ids that carry a renewal suffix (``..0`` is the first renewal)."""
    return bool(order_id) and ".." in order_id


class GooglePlayValidator(PlatformValidator):
    """Validator for purchase tokens issued by app_store_a."""

    platform = Platform.APP_STORE_A

    def __init__(
        self,
        catalog: ProductCatalog,
        package_name: str,
        access_token: str,
        api_base: str,
        **kwargs,
    ):
        super().__init__(catalog, **kwargs)
        self.package_name = package_name
        self.access_token = access_token
        self.api_base = api_base.rstrip("/")

    @classmethod
    def from_settings(cls, catalog: ProductCatalog, **kwargs) -> "GooglePlayValidator":
        return cls(
            catalog,
            package_name=settings.GOOGLE_PLAY_PACKAGE_NAME,
            access_token=settings.GOOGLE_PLAY_ACCESS_TOKEN,
            api_base=settings.GOOGLE_PLAY_API_BASE,
            timeout=settings.PLATFORM_REQUEST_TIMEOUT_SECONDS,
            **kwargs,
        )

    def _url(self, purchase_token: str, product_id: str) -> str:
        return (
            f"{self.api_base}/applications/{quote(self.package_name, safe='')}"
            f"/purchases/subscriptions/{quote(product_id, safe='')}"
            f"/tokens/{quote(purchase_token, safe='')}"
        )

    async def _fetch(self, platform_ref: str, product_id: str) -> PurchaseFacts:
        if not self.package_name or not self.access_token:
            raise PlatformAuthError("app_store_a credentials are not configured", reason="not_configured")

        url = self._url(platform_ref, product_id)
        headers = {"Authorization": f"Bearer {self.access_token}"}
        response = await self._send(lambda client: client.get(url, headers=headers), "app_store_a")

        self._raise_for_status(response)

        try:
            data = response.json()
        except ValueError as e:
            raise TransientPlatformError("app_store_a returned a non-JSON body", reason="bad_response") from e

        return self.parse_purchase(data, product_id)

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        code = response.status_code
        if code == 200:
            return

        logger.warning("app_store_a returned status %d: %s", code, response.text[:200])
        if code in (404, 410):
            raise PurchaseNotFoundError("Purchase token not found or no longer valid")
        if code == 400:
            raise BadPurchaseRequestError("Malformed purchase token or product id")
        if code in (401, 403):
            raise PlatformAuthError("app_store_a rejected our credentials")
        if code == 429 or code >= 500:
            raise TransientPlatformError(f"app_store_a unavailable (status {code})", reason="platform_unavailable")
        raise BadPurchaseRequestError(f"app_store_a rejected the request (status {code})")

    def parse_purchase(self, data: dict[str, Any], product_id: str) -> PurchaseFacts:
        """Convert a ``SubscriptionPurchase`` resource into ``PurchaseFacts``."""
        expires_at = utc_from_millis(data.get("expiryTimeMillis"))
        if expires_at is None:
            raise BadPurchaseRequestError("Purchase has no expiry time", reason="bad_response")

        auto_renew = bool(data.get("autoRenewing", False))
        payment_state = data.get("paymentState")
        order_id = data.get("orderId")

        if payment_state in (PAYMENT_RECEIVED, PAYMENT_FREE_TRIAL):
            state = PaymentState.CONFIRMED
        elif (
            payment_state == PAYMENT_PENDING
            and auto_renew
            and expires_at > self._clock()
            and is_renewal_order(order_id)
        ):
            # Billing retry on a renewal keeps the expiry extended while the
            # payment is pending; an initial purchase that has not settled
            # is unconfirmed. Account hold reports an expiry in the past.
            state = PaymentState.GRACE
        elif payment_state is None and expires_at <= self._clock():
            # Lapsed subscriptions drop paymentState entirely
            state = PaymentState.CONFIRMED
        else:
            state = PaymentState.PENDING

        amount = None
        micros = data.get("priceAmountMicros")
        if micros not in (None, ""):
            amount = (Decimal(str(micros)) / Decimal(1_000_000)).quantize(Decimal("0.01"))

        return PurchaseFacts(
            payment_state=state,
            expires_at=expires_at,
            auto_renew=auto_renew,
            transaction_id=order_id,
            original_transaction_id=base_order_id(order_id),
            product_id=product_id,
            purchased_at=utc_from_millis(data.get("startTimeMillis")),
            acknowledged=data.get("acknowledgementState") == 1,
            environment="sandbox" if data.get("purchaseType") == 0 else "production",
            amount=amount,
            currency=data.get("priceCurrencyCode"),
            raw=data,
        )
