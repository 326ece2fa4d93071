"""
Platform Validators
===================

One validator per payment platform, selected by ``Platform``.
"""

from subrecon.services.validators.base import (
    BadPurchaseRequestError,
    PaymentState,
    PaymentUnconfirmedError,
    PlatformAuthError,
    PlatformValidator,
    PurchaseExpiredError,
    PurchaseFacts,
    PurchaseNotFoundError,
    TransientPlatformError,
    ValidatorError,
)
from subrecon.services.validators.app_store import AppStoreValidator
from subrecon.services.validators.google_play import GooglePlayValidator
from subrecon.services.validators.registry import ValidatorRegistry, build_registry, get_registry

__all__ = [
    "AppStoreValidator",
    "BadPurchaseRequestError",
    "GooglePlayValidator",
    "PaymentState",
    "PaymentUnconfirmedError",
    "PlatformAuthError",
    "PlatformValidator",
    "PurchaseExpiredError",
    "PurchaseFacts",
    "PurchaseNotFoundError",
    "TransientPlatformError",
    "ValidatorError",
    "ValidatorRegistry",
    "build_registry",
    "get_registry",
]
