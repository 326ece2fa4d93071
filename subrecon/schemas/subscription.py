"""
Subscription Schemas
====================

Pydantic schemas for the purchase validation, restore, entitlement check
and webhook endpoints. Wire names are camelCase; Python names are
snake_case with aliases.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from subrecon.models.subscription import Platform


EntitlementStatus = Literal["active", "grace_period", "expired", "none"]


class ValidatePurchaseRequest(BaseModel):
    """
    Request schema for purchase validation.

    ``platformRef`` is the purchase token for app_store_a and the base64
    receipt for app_store_b.
    """

    platform_ref: str = Field(alias="platformRef", max_length=200_000)
    product_id: str = Field(alias="productId", max_length=100)
    platform: Platform

    class Config:
        populate_by_name = True


class RestoreRequest(ValidatePurchaseRequest):
    """Restores re-validate a previously bought reference."""


class ValidatePurchaseResponse(BaseModel):
    success: bool = True
    subscription_id: str = Field(alias="subscriptionId")
    expiry_date: Optional[datetime] = Field(None, alias="expiryDate")
    is_duplicate: bool = Field(False, alias="isDuplicate")
    status: Optional[str] = None

    class Config:
        populate_by_name = True


class SubscriptionStatusResponse(BaseModel):
    """Entitlement check answer."""

    success: bool = True
    is_subscribed: bool = Field(alias="isSubscribed")
    status: EntitlementStatus
    expiry_date: Optional[datetime] = Field(None, alias="expiryDate")

    class Config:
        populate_by_name = True


class WebhookAckResponse(BaseModel):
    """Acknowledgement for a syntactically valid delivery."""

    received: bool = True
    result: str
    kind: Optional[str] = None
    subscription_id: Optional[str] = Field(None, alias="subscriptionId")
    status: Optional[str] = None

    class Config:
        populate_by_name = True
