"""
Validator Registry
==================

Selects the validator for a subscription's ``platform`` field.
"""

from functools import lru_cache
from typing import Iterable, Optional

from subrecon.core.errors import InvalidArgumentError
from subrecon.core.products import ProductCatalog
from subrecon.models.subscription import Platform
from subrecon.services.validators.app_store import AppStoreValidator
from subrecon.services.validators.base import PlatformValidator
from subrecon.services.validators.google_play import GooglePlayValidator


class ValidatorRegistry:
    """Platform -> validator lookup."""

    def __init__(self, validators: Iterable[PlatformValidator]):
        self._validators = {validator.platform: validator for validator in validators}

    def __contains__(self, platform: object) -> bool:
        return platform in self._validators

    def get(self, platform: Platform) -> PlatformValidator:
        validator = self.find(platform)
        if validator is None:
            raise InvalidArgumentError(
                f"Unsupported platform: {getattr(platform, 'value', platform)}",
                reason="unsupported_platform",
            )
        return validator

    def find(self, platform: Platform) -> Optional[PlatformValidator]:
        return self._validators.get(platform)


def build_registry(catalog: Optional[ProductCatalog] = None, **kwargs) -> ValidatorRegistry:
    """Build validators for every platform from settings."""
    catalog = catalog or ProductCatalog.from_settings()
    return ValidatorRegistry([
        GooglePlayValidator.from_settings(catalog, **kwargs),
        AppStoreValidator.from_settings(catalog, **kwargs),
    ])


@lru_cache
def get_registry() -> ValidatorRegistry:
    """Process-wide registry used by the API and the scheduler."""
    return build_registry()
