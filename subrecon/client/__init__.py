"""
Client Entitlement Cache & Fallback Chain
=========================================

Device-side components: key-value stores, the TTL entitlement cache, the
ledger HTTP client and the degraded-mode fallback chain.
"""

from subrecon.client.backend import (
    BackendError,
    BackendRejectedError,
    BackendUnavailableError,
    EntitlementStatus,
    LedgerClient,
    ValidationReceipt,
)
from subrecon.client.cache import CacheKind, EntitlementCache
from subrecon.client.fallback import EntitlementClient, FallbackStatus
from subrecon.client.store import JsonFileStore, KeyValueStore, MemoryStore, RedisStore

__all__ = [
    "BackendError",
    "BackendRejectedError",
    "BackendUnavailableError",
    "CacheKind",
    "EntitlementCache",
    "EntitlementClient",
    "EntitlementStatus",
    "FallbackStatus",
    "JsonFileStore",
    "KeyValueStore",
    "LedgerClient",
    "MemoryStore",
    "RedisStore",
    "ValidationReceipt",
]
