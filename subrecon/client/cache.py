"""
Client entitlement cache.

Per-kind TTL cache over a ``KeyValueStore``. Entries keep the time they
were stored so the fallback chain can still read a stale value when it
needs a last-known answer.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from subrecon.client.store import KeyValueStore

logger = logging.getLogger(__name__)


class CacheKind(str, Enum):
    ENTITLEMENT = "entitlement"
    USER_DATA = "user_data"
    BALANCE = "balance"
    TRANSACTIONS = "transactions"
    RECEIPT = "receipt"


DEFAULT_TTLS: dict[CacheKind, timedelta] = {
    CacheKind.ENTITLEMENT: timedelta(minutes=30),
    CacheKind.USER_DATA: timedelta(minutes=15),
    CacheKind.BALANCE: timedelta(minutes=2),
    CacheKind.TRANSACTIONS: timedelta(minutes=5),
    CacheKind.RECEIPT: timedelta(days=30),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    stored_at: datetime

    def age(self, now: datetime) -> timedelta:
        return now - self.stored_at


class EntitlementCache:
    """TTL cache keyed by (user id, kind)."""

    def __init__(
        self,
        store: KeyValueStore,
        ttls: Optional[Mapping[CacheKind, timedelta]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.ttls = {**DEFAULT_TTLS, **(ttls or {})}
        self.clock = clock

    @staticmethod
    def _key(user_id: str, kind: CacheKind) -> str:
        return f"cache:{kind.value}:{user_id}"

    async def get_entry(self, user_id: str, kind: CacheKind) -> Optional[CacheEntry]:
        """Entry regardless of age, or None."""
        raw = await self.store.get(self._key(user_id, kind))
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            return CacheEntry(data["value"], datetime.fromisoformat(data["stored_at"]))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Dropping corrupt %s cache entry for %s: %s", kind.value, user_id, e)
            await self.store.delete(self._key(user_id, kind))
            return None

    async def get(self, user_id: str, kind: CacheKind) -> Optional[Any]:
        """Value if present and younger than the kind's TTL."""
        entry = await self.get_entry(user_id, kind)
        if entry is None or entry.age(self.clock()) >= self.ttls[kind]:
            return None
        return entry.value

    async def set(self, user_id: str, kind: CacheKind, value: Any) -> None:
        payload = {"value": value, "stored_at": self.clock().isoformat()}
        await self.store.set(self._key(user_id, kind), json.dumps(payload, default=str))

    async def invalidate(self, user_id: str, kind: Optional[CacheKind] = None) -> None:
        """Drop one kind, or every kind when ``kind`` is None."""
        kinds = [kind] if kind is not None else list(CacheKind)
        for item in kinds:
            await self.store.delete(self._key(user_id, item))
