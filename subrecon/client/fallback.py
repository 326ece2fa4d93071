"""
Client Entitlement Fallback Chain
=================================

Answers "is this user entitled right now" on the client, in order:

1. Fresh cached entitlement (unless force_refresh)
2. Platform re-validation of the last stored purchase reference
3. Ledger status read
4. Last-known-good value, if the last successful validation is < 24h old
5. Offline grace period (fixed length, anchored when the network paths
   first failed), then deny

Every successful network strategy resets the failure counter, records the
validation time and clears the grace record. The grace start is persisted
so the window cannot be restarted by simply asking again.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from subrecon.client.backend import BackendError, LedgerClient
from subrecon.client.cache import CacheKind, EntitlementCache
from subrecon.client.store import KeyValueStore
from subrecon.models.subscription import Platform
from subrecon.services.validators.base import (
    PaymentUnconfirmedError,
    PurchaseExpiredError,
    PurchaseNotFoundError,
    ValidatorError,
)
from subrecon.services.validators.registry import ValidatorRegistry

logger = logging.getLogger(__name__)

FALLBACK_SUBSCRIPTION_KEY = "fallback_subscription_status"
LAST_SUCCESSFUL_VALIDATION_KEY = "last_successful_validation"
VALIDATION_FAILURE_COUNT_KEY = "validation_failure_count"
LAST_VALIDATION_ATTEMPT_KEY = "last_validation_attempt"
OFFLINE_SUBSCRIPTION_DATA_KEY = "offline_subscription_data"
PLATFORM_RECEIPT_BACKUP_KEY = "platform_receipt_backup"
OFFLINE_GRACE_STARTED_KEY = "offline_grace_started_at"

MAX_VALIDATION_FAILURES = 5
OFFLINE_GRACE_PERIOD = timedelta(days=3)
CACHED_VALUE_TRUST_WINDOW = timedelta(hours=24)

# Platform answers that are definitive "not entitled" rather than outages
_PLATFORM_NEGATIVE = (PurchaseExpiredError, PurchaseNotFoundError, PaymentUnconfirmedError)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


@dataclass(frozen=True)
class FallbackStatus:
    is_in_offline_grace_period: bool
    grace_started_at: Optional[datetime]
    grace_expires_at: Optional[datetime]
    validation_failure_count: int
    last_validation_attempt: Optional[datetime]
    last_successful_validation: Optional[datetime]
    last_known_entitled: Optional[bool]

    @property
    def is_degraded(self) -> bool:
        return self.validation_failure_count >= MAX_VALIDATION_FAILURES

    def to_dict(self) -> dict[str, Any]:
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "isInOfflineGracePeriod": self.is_in_offline_grace_period,
            "graceStartedAt": iso(self.grace_started_at),
            "graceExpiresAt": iso(self.grace_expires_at),
            "validationFailureCount": self.validation_failure_count,
            "lastValidationAttempt": iso(self.last_validation_attempt),
            "lastSuccessfulValidation": iso(self.last_successful_validation),
            "lastKnownEntitled": self.last_known_entitled,
            "isDegraded": self.is_degraded,
        }


class EntitlementClient:
    """
    Client-side entitlement check with degraded-mode fallbacks.

    State is per user and per device; nothing here coordinates with other
    devices.
    """

    def __init__(
        self,
        store: KeyValueStore,
        cache: Optional[EntitlementCache] = None,
        ledger: Optional[LedgerClient] = None,
        validators: Optional[ValidatorRegistry] = None,
        clock: Callable[[], datetime] = _utcnow,
        grace_period: timedelta = OFFLINE_GRACE_PERIOD,
        trust_window: timedelta = CACHED_VALUE_TRUST_WINDOW,
    ):
        self.store = store
        self.clock = clock
        self.cache = cache or EntitlementCache(store, clock=clock)
        self.ledger = ledger
        self.validators = validators
        self.grace_period = grace_period
        self.trust_window = trust_window

    @staticmethod
    def _key(name: str, user_id: str) -> str:
        return f"{name}:{user_id}"

    async def _get_time(self, name: str, user_id: str) -> Optional[datetime]:
        return _parse_time(await self.store.get(self._key(name, user_id)))

    async def _set_time(self, name: str, user_id: str, value: datetime) -> None:
        await self.store.set(self._key(name, user_id), value.isoformat())

    async def _last_known(self, user_id: str) -> Optional[bool]:
        raw = await self.store.get(self._key(FALLBACK_SUBSCRIPTION_KEY, user_id))
        if raw is None:
            return None
        return raw == "true"

    async def _failure_count(self, user_id: str) -> int:
        raw = await self.store.get(self._key(VALIDATION_FAILURE_COUNT_KEY, user_id))
        try:
            return int(raw) if raw is not None else 0
        except ValueError:
            return 0

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def is_entitled(self, user_id: str, force_refresh: bool = False) -> bool:
        if not force_refresh:
            cached = await self.cache.get(user_id, CacheKind.ENTITLEMENT)
            if cached is not None:
                return bool(cached)

        platform_negative = False
        try:
            if await self._check_platform(user_id):
                await self._record_success(user_id, True, source="platform")
                return True
        except _PLATFORM_NEGATIVE as e:
            logger.info("Platform reports no entitlement for %s: %s", user_id, e.reason)
            platform_negative = True
        except ValidatorError as e:
            logger.warning("Platform re-validation unavailable for %s: %s", user_id, e)

        try:
            entitled = await self._check_ledger(user_id)
        except BackendError as e:
            logger.warning("Ledger status unavailable for %s: %s", user_id, e)
        else:
            if entitled is not None:
                await self._record_success(user_id, entitled, source="ledger")
                return entitled

        if platform_negative:
            await self._record_success(user_id, False, source="platform")
            return False

        return await self._degraded_answer(user_id)

    async def store_platform_receipt(
        self,
        user_id: str,
        platform: Platform | str,
        platform_ref: str,
        product_id: str,
    ) -> None:
        """Keep the last validated purchase so the platform path can re-check it when the ledger is unreachable."""
        backup = {
            "platform": Platform(platform).value,
            "platformRef": platform_ref,
            "productId": product_id,
            "storedAt": self.clock().isoformat(),
        }
        await self.store.set(self._key(PLATFORM_RECEIPT_BACKUP_KEY, user_id), json.dumps(backup))
        await self.cache.set(user_id, CacheKind.RECEIPT, backup)

    async def fallback_status(self, user_id: str) -> FallbackStatus:
        now = self.clock()
        grace_started = await self._get_time(OFFLINE_GRACE_STARTED_KEY, user_id)
        grace_expires = grace_started + self.grace_period if grace_started else None
        return FallbackStatus(
            is_in_offline_grace_period=bool(grace_expires and now < grace_expires),
            grace_started_at=grace_started,
            grace_expires_at=grace_expires,
            validation_failure_count=await self._failure_count(user_id),
            last_validation_attempt=await self._get_time(LAST_VALIDATION_ATTEMPT_KEY, user_id),
            last_successful_validation=await self._get_time(LAST_SUCCESSFUL_VALIDATION_KEY, user_id),
            last_known_entitled=await self._last_known(user_id),
        )

    async def clear(self, user_id: str) -> None:
        """Forget everything stored for a user (sign-out)."""
        for name in (
            FALLBACK_SUBSCRIPTION_KEY,
            LAST_SUCCESSFUL_VALIDATION_KEY,
            VALIDATION_FAILURE_COUNT_KEY,
            LAST_VALIDATION_ATTEMPT_KEY,
            OFFLINE_SUBSCRIPTION_DATA_KEY,
            PLATFORM_RECEIPT_BACKUP_KEY,
            OFFLINE_GRACE_STARTED_KEY,
        ):
            await self.store.delete(self._key(name, user_id))
        await self.cache.invalidate(user_id)

    # -------------------------------------------------------------------------
    # Strategies
    # -------------------------------------------------------------------------

    async def _check_platform(self, user_id: str) -> bool:
        """True when the stored purchase still validates; False when there is nothing to check."""
        if self.validators is None:
            return False
        raw = await self.store.get(self._key(PLATFORM_RECEIPT_BACKUP_KEY, user_id))
        if raw is None:
            return False
        try:
            backup = json.loads(raw)
            platform = Platform(backup["platform"])
            platform_ref = backup["platformRef"]
            product_id = backup["productId"]
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding unreadable receipt backup for %s", user_id)
            await self.store.delete(self._key(PLATFORM_RECEIPT_BACKUP_KEY, user_id))
            return False

        validator = self.validators.find(platform)
        if validator is None:
            return False
        await validator.validate(platform_ref, product_id)
        return True

    async def _check_ledger(self, user_id: str) -> Optional[bool]:
        if self.ledger is None:
            return None
        status = await self.ledger.get_status()
        await self.store.set(
            self._key(OFFLINE_SUBSCRIPTION_DATA_KEY, user_id),
            json.dumps({
                "status": status.status,
                "isSubscribed": status.is_subscribed,
                "expiryDate": status.expiry_date.isoformat() if status.expiry_date else None,
            }),
        )
        return status.is_subscribed

    async def _degraded_answer(self, user_id: str) -> bool:
        now = self.clock()
        failures = await self._record_failure(user_id, now)
        last_known = await self._last_known(user_id)

        grace_started = await self._get_time(OFFLINE_GRACE_STARTED_KEY, user_id)
        if grace_started is None and last_known:
            grace_started = now
            await self._set_time(OFFLINE_GRACE_STARTED_KEY, user_id, now)
            logger.warning("Offline grace period started for %s", user_id)

        last_success = await self._get_time(LAST_SUCCESSFUL_VALIDATION_KEY, user_id)
        if last_known is not None and last_success and now - last_success < self.trust_window:
            logger.info("Trusting last-known entitlement for %s (%d failures)", user_id, failures)
            return last_known

        if grace_started is not None and now < grace_started + self.grace_period:
            logger.info("Granting offline grace entitlement for %s", user_id)
            return True

        if failures >= MAX_VALIDATION_FAILURES:
            logger.warning("Entitlement denied for %s after %d failed validations", user_id, failures)
        return False

    # -------------------------------------------------------------------------
    # Bookkeeping
    # -------------------------------------------------------------------------

    async def _record_success(self, user_id: str, entitled: bool, source: str) -> None:
        now = self.clock()
        await self.cache.set(user_id, CacheKind.ENTITLEMENT, entitled)
        await self.store.set(self._key(FALLBACK_SUBSCRIPTION_KEY, user_id), "true" if entitled else "false")
        await self._set_time(LAST_SUCCESSFUL_VALIDATION_KEY, user_id, now)
        await self._set_time(LAST_VALIDATION_ATTEMPT_KEY, user_id, now)
        await self.store.set(self._key(VALIDATION_FAILURE_COUNT_KEY, user_id), "0")
        await self.store.delete(self._key(OFFLINE_GRACE_STARTED_KEY, user_id))
        logger.debug("Entitlement for %s validated via %s: %s", user_id, source, entitled)

    async def _record_failure(self, user_id: str, now: datetime) -> int:
        failures = await self._failure_count(user_id) + 1
        await self.store.set(self._key(VALIDATION_FAILURE_COUNT_KEY, user_id), str(failures))
        await self._set_time(LAST_VALIDATION_ATTEMPT_KEY, user_id, now)
        return failures
