"""
Platform Validator Base
=======================

Shared contract for the per-platform purchase validators.

A validator wraps exactly one external call (purchase lookup or receipt
verification), parses the platform response into ``PurchaseFacts`` and
classifies failures into the ``ValidatorError`` family. Only
``TransientPlatformError`` is retryable.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
import logging
from typing import Any, Callable, Optional

import httpx

from subrecon.core.errors import ErrorCodes, SubscriptionError
from subrecon.core.products import ProductCatalog
from subrecon.models.subscription import Platform

logger = logging.getLogger(__name__)


class PaymentState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    # Platform billing retry window: period lapsed, access still honored
    GRACE = "grace"


@dataclass(frozen=True)
class PurchaseFacts:
    """Normalized view of one purchase as reported by its platform."""

    payment_state: PaymentState
    expires_at: datetime
    auto_renew: bool
    transaction_id: Optional[str]
    original_transaction_id: Optional[str]
    product_id: str
    purchased_at: Optional[datetime] = None
    grace_expires_at: Optional[datetime] = None
    acknowledged: bool = False
    environment: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


# =============================================================================
# Validator Errors
# =============================================================================

class ValidatorError(SubscriptionError):
    """Base class for platform validation failures."""

    kind: str = "validator_error"

    def __init__(self, message: str = "", *, reason: Optional[str] = None):
        super().__init__(message, reason=reason or self.kind)


class PurchaseNotFoundError(ValidatorError):
    """Token unknown to the platform or no longer available (410-class)."""

    code = ErrorCodes.NOT_FOUND
    kind = "not_found"


class BadPurchaseRequestError(ValidatorError):
    """Malformed token, receipt or product."""

    code = ErrorCodes.INVALID_ARGUMENT
    kind = "bad_request"


class PlatformAuthError(ValidatorError):
    """Our credentials for the platform integration were rejected."""

    code = ErrorCodes.PERMISSION_DENIED
    kind = "auth_failure"


class PaymentUnconfirmedError(ValidatorError):
    """Payment has not settled yet."""

    code = ErrorCodes.FAILED_PRECONDITION
    kind = "unconfirmed"


class PurchaseExpiredError(ValidatorError):
    """Facts show a lapsed period."""

    code = ErrorCodes.FAILED_PRECONDITION
    kind = "expired"


class TransientPlatformError(ValidatorError):
    """Network failure, timeout or platform-side 5xx."""

    code = ErrorCodes.INTERNAL
    kind = "transient"
    retryable = True


# =============================================================================
# Helpers
# =============================================================================

def utc_from_millis(value: Any) -> Optional[datetime]:
    """Parse a platform epoch-milliseconds value (int or numeric string)."""
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


# =============================================================================
# Validator Interface
# =============================================================================

class PlatformValidator(ABC):
    """
    One payment platform's purchase validation.

    Subclasses implement ``_fetch`` (the single external call plus parsing)
    and ``reference_key`` (the ledger dedup key for a client reference).
    """

    platform: Platform

    def __init__(
        self,
        catalog: ProductCatalog,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.catalog = catalog
        self.timeout = timeout
        self._transport = transport
        self._clock = clock

    @property
    def kind(self) -> str:
        return self.platform.value

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def reference_key(self, platform_ref: str) -> str:
        """Ledger dedup key for a client-supplied reference."""
        return platform_ref

    async def validate(self, platform_ref: str, product_id: str) -> PurchaseFacts:
        """
        Validate a purchase with the platform.

        Raises:
            BadPurchaseRequestError: empty reference or non allow-listed product
            ValidatorError: any platform-side failure
        """
        if not platform_ref or not platform_ref.strip():
            raise BadPurchaseRequestError("Platform reference is required", reason="missing_reference")
        if product_id not in self.catalog:
            raise BadPurchaseRequestError(f"Unknown product id: {product_id}", reason="unknown_product")

        facts = await self._fetch(platform_ref, product_id)
        self._check_facts(facts)
        return facts

    def _check_facts(self, facts: PurchaseFacts) -> None:
        now = self._clock()
        if facts.payment_state == PaymentState.PENDING:
            raise PaymentUnconfirmedError("Payment has not been confirmed by the platform")
        if facts.payment_state == PaymentState.GRACE:
            if facts.grace_expires_at is not None and facts.grace_expires_at <= now:
                raise PurchaseExpiredError("Billing retry window has closed")
            return
        if facts.expires_at <= now:
            raise PurchaseExpiredError("Subscription period has expired")

    @abstractmethod
    async def _fetch(self, platform_ref: str, product_id: str) -> PurchaseFacts:
        """Call the platform once and parse its answer."""

    async def _send(self, request: Callable[[httpx.AsyncClient], Any], label: str) -> httpx.Response:
        """Run one HTTP request, mapping transport failures to ``TransientPlatformError``."""
        async with self._client() as client:
            try:
                return await request(client)
            except httpx.TimeoutException as e:
                logger.warning("%s request timed out: %s", label, e)
                raise TransientPlatformError(f"{label} request timed out", reason="timeout") from e
            except httpx.TransportError as e:
                logger.warning("%s transport error: %s", label, e)
                raise TransientPlatformError(f"{label} unreachable", reason="network") from e
