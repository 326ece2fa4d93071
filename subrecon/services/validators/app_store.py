"""
app_store_b Validator
=====================

Receipt verification against the App Store ``verifyReceipt`` endpoint.

The production endpoint is always tried first. A ``21007`` status means the
receipt belongs to the sandbox, in which case the sandbox endpoint is asked
and its answer is final.
"""

import hashlib
import logging
from typing import Any, Optional

from subrecon.config import settings
from subrecon.core.products import ProductCatalog
from subrecon.models.subscription import Platform
from subrecon.services.validators.base import (
    BadPurchaseRequestError,
    PaymentState,
    PlatformAuthError,
    PlatformValidator,
    PurchaseExpiredError,
    PurchaseFacts,
    PurchaseNotFoundError,
    TransientPlatformError,
    utc_from_millis,
)

logger = logging.getLogger(__name__)

STATUS_OK = 0
STATUS_MALFORMED = 21002
STATUS_UNAUTHENTICATED_RECEIPT = 21003
STATUS_SECRET_MISMATCH = 21004
STATUS_SERVER_UNAVAILABLE = 21005
STATUS_SUBSCRIPTION_EXPIRED = 21006
STATUS_SANDBOX_RECEIPT = 21007
STATUS_PRODUCTION_RECEIPT = 21008
STATUS_INTERNAL_ERROR = 21009
STATUS_ACCOUNT_NOT_FOUND = 21010


def _is_retryable_status(code: int) -> bool:
    return code in (STATUS_SERVER_UNAVAILABLE, STATUS_INTERNAL_ERROR) or 21100 <= code <= 21199


class AppStoreValidator(PlatformValidator):
    """Validator for receipts issued by app_store_b."""

    platform = Platform.APP_STORE_B

    def __init__(
        self,
        catalog: ProductCatalog,
        shared_secret: str,
        production_url: str,
        sandbox_url: str,
        **kwargs,
    ):
        super().__init__(catalog, **kwargs)
        self.shared_secret = shared_secret
        self.production_url = production_url
        self.sandbox_url = sandbox_url

    @classmethod
    def from_settings(cls, catalog: ProductCatalog, **kwargs) -> "AppStoreValidator":
        return cls(
            catalog,
            shared_secret=settings.APPLE_SHARED_SECRET,
            production_url=settings.APPLE_PRODUCTION_URL,
            sandbox_url=settings.APPLE_SANDBOX_URL,
            timeout=settings.PLATFORM_REQUEST_TIMEOUT_SECONDS,
            **kwargs,
        )

    def reference_key(self, platform_ref: str) -> str:
        """Receipts are large and change on every renewal; key them by digest."""
        digest = hashlib.sha256(platform_ref.strip().encode("utf-8")).hexdigest()
        return f"sha256:{digest}"

    async def _verify(self, url: str, receipt: str) -> dict[str, Any]:
        body = {
            "receipt-data": receipt,
            "password": self.shared_secret,
            "exclude-old-transactions": True,
        }
        response = await self._send(lambda client: client.post(url, json=body), "app_store_b")

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientPlatformError(
                f"app_store_b unavailable (status {response.status_code})",
                reason="platform_unavailable",
            )
        if response.status_code != 200:
            logger.warning("app_store_b returned HTTP %d: %s", response.status_code, response.text[:200])
            raise BadPurchaseRequestError(f"app_store_b rejected the request (status {response.status_code})")

        try:
            return response.json()
        except ValueError as e:
            raise TransientPlatformError("app_store_b returned a non-JSON body", reason="bad_response") from e

    async def verify_receipt(self, receipt: str) -> dict[str, Any]:
        """
        Verify a receipt, falling back to the sandbox on ``21007``.

        Returns:
            The decoded verifyReceipt response with status 0
        """
        if not self.shared_secret:
            raise PlatformAuthError("app_store_b shared secret is not configured", reason="not_configured")

        data = await self._verify(self.production_url, receipt)
        status_code = data.get("status")

        if status_code == STATUS_SANDBOX_RECEIPT:
            logger.info("Sandbox receipt sent to production, retrying against sandbox")
            data = await self._verify(self.sandbox_url, receipt)
            status_code = data.get("status")
            data.setdefault("environment", "Sandbox")

        self._raise_for_receipt_status(status_code, data)
        return data

    @staticmethod
    def _raise_for_receipt_status(status_code: Any, data: dict[str, Any]) -> None:
        if status_code == STATUS_OK:
            return

        logger.warning("app_store_b verifyReceipt status %s", status_code)
        if not isinstance(status_code, int):
            raise TransientPlatformError("app_store_b response has no status", reason="bad_response")
        if data.get("is-retryable") or _is_retryable_status(status_code):
            raise TransientPlatformError(
                f"app_store_b temporarily unavailable (status {status_code})",
                reason="platform_unavailable",
            )
        if status_code in (STATUS_MALFORMED, STATUS_UNAUTHENTICATED_RECEIPT):
            raise BadPurchaseRequestError("Receipt is malformed or could not be authenticated")
        if status_code == STATUS_SECRET_MISMATCH:
            raise PlatformAuthError("app_store_b shared secret mismatch")
        if status_code == STATUS_SUBSCRIPTION_EXPIRED:
            raise PurchaseExpiredError("Receipt is valid but the subscription has expired")
        if status_code == STATUS_ACCOUNT_NOT_FOUND:
            raise PurchaseNotFoundError("Receipt could not be authorized")
        if status_code == STATUS_PRODUCTION_RECEIPT:
            # Only reachable when the sandbox answers for a production receipt
            raise BadPurchaseRequestError("Production receipt sent to sandbox", reason="wrong_environment")
        raise BadPurchaseRequestError(f"Receipt rejected (status {status_code})")

    async def _fetch(self, platform_ref: str, product_id: str) -> PurchaseFacts:
        data = await self.verify_receipt(platform_ref.strip())
        return self.parse_receipt(data, product_id)

    def parse_receipt(self, data: dict[str, Any], product_id: str) -> PurchaseFacts:
        """Pick the latest transaction for ``product_id`` and its renewal info."""
        receipt_info = data.get("latest_receipt_info") or (data.get("receipt") or {}).get("in_app") or []
        transactions = [txn for txn in receipt_info if txn.get("product_id") == product_id]
        if not transactions:
            raise PurchaseNotFoundError(f"No transaction for {product_id} in receipt", reason="product_not_in_receipt")

        latest = max(transactions, key=lambda txn: int(txn.get("expires_date_ms") or 0))
        expires_at = utc_from_millis(latest.get("expires_date_ms"))
        if expires_at is None:
            raise BadPurchaseRequestError("Receipt transaction has no expiry", reason="bad_response")

        if latest.get("cancellation_date_ms"):
            raise PurchaseExpiredError("Transaction was cancelled by the platform", reason="refunded")

        original_id = latest.get("original_transaction_id")
        renewal = self._renewal_info(data, original_id)
        auto_renew = renewal.get("auto_renew_status") == "1"
        in_billing_retry = renewal.get("is_in_billing_retry_period") == "1"
        grace_expires_at = utc_from_millis(renewal.get("grace_period_expires_date_ms"))

        now = self._clock()
        if expires_at > now:
            state = PaymentState.CONFIRMED
        elif in_billing_retry and grace_expires_at is not None and grace_expires_at > now:
            state = PaymentState.GRACE
        else:
            # Expired; reported as confirmed so the expiry check names it
            state = PaymentState.CONFIRMED

        environment = str(data.get("environment") or "Production").lower()

        return PurchaseFacts(
            payment_state=state,
            expires_at=expires_at,
            auto_renew=auto_renew,
            transaction_id=latest.get("transaction_id"),
            original_transaction_id=original_id,
            product_id=product_id,
            purchased_at=utc_from_millis(latest.get("purchase_date_ms")),
            grace_expires_at=grace_expires_at,
            acknowledged=True,
            environment=environment,
            raw={"latest_transaction": latest, "pending_renewal_info": renewal},
        )

    @staticmethod
    def _renewal_info(data: dict[str, Any], original_id: Optional[str]) -> dict[str, Any]:
        for info in data.get("pending_renewal_info") or []:
            if info.get("original_transaction_id") == original_id:
                return info
        return {}
