"""
Ledger HTTP client.

Thin httpx wrapper over the two client-facing endpoints. Every failure
to get an authoritative answer is raised as ``BackendUnavailableError``
so the fallback chain can move on to the next strategy.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)


class BackendError(Exception):
    """Base class for ledger client errors."""


class BackendUnavailableError(BackendError):
    """Network failure, timeout, 5xx or an unreadable response."""


class BackendRejectedError(BackendError):
    """The ledger answered with a definitive 4xx error."""

    def __init__(self, status_code: int, code: str, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.reason = reason


@dataclass(frozen=True)
class EntitlementStatus:
    is_subscribed: bool
    status: str
    expiry_date: Optional[datetime] = None


@dataclass(frozen=True)
class ValidationReceipt:
    subscription_id: str
    expiry_date: Optional[datetime]
    is_duplicate: bool


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


class LedgerClient:
    """Calls the ledger's entitlement and validation endpoints."""

    STATUS_PATH = "/api/v1/subscription/status"
    VALIDATE_PATH = "/api/v1/subscription/validate"

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self.transport,
            headers={"Authorization": f"Bearer {self.token}"},
        )

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise BackendUnavailableError(f"Ledger request timed out: {e}") from e
        except httpx.TransportError as e:
            raise BackendUnavailableError(f"Ledger unreachable: {e}") from e

        if response.status_code >= 500:
            raise BackendUnavailableError(f"Ledger returned {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise BackendUnavailableError("Ledger returned a non-JSON body") from e

        if response.status_code >= 400:
            error = (body or {}).get("error") or {}
            raise BackendRejectedError(
                response.status_code,
                error.get("code", "internal"),
                error.get("message", f"Ledger returned {response.status_code}"),
                error.get("reason"),
            )
        return body

    async def get_status(self) -> EntitlementStatus:
        body = await self._request("GET", self.STATUS_PATH)
        if "isSubscribed" not in body:
            raise BackendUnavailableError("Ledger status response is missing isSubscribed")
        return EntitlementStatus(
            is_subscribed=bool(body["isSubscribed"]),
            status=body.get("status", "none"),
            expiry_date=_parse_datetime(body.get("expiryDate")),
        )

    async def validate_purchase(self, platform: str, platform_ref: str, product_id: str) -> ValidationReceipt:
        body = await self._request(
            "POST",
            self.VALIDATE_PATH,
            json={"platform": platform, "platformRef": platform_ref, "productId": product_id},
        )
        logger.debug("Ledger validation response: %s", body)
        return ValidationReceipt(
            subscription_id=str(body.get("subscriptionId", "")),
            expiry_date=_parse_datetime(body.get("expiryDate")),
            is_duplicate=bool(body.get("isDuplicate", False)),
        )
