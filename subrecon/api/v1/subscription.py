"""
Subscription API Endpoints
==========================

Purchase validation, restore and the entitlement check.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from fastapi import APIRouter, Query

from subrecon.config import settings
from subrecon.core.errors import SubscriptionError, to_app_exception
from subrecon.db.base import utcnow
from subrecon.dependencies import CurrentUser, DBSession, Registry
from subrecon.models.user import User
from subrecon.schemas.subscription import (
    RestoreRequest,
    SubscriptionStatusResponse,
    ValidatePurchaseRequest,
    ValidatePurchaseResponse,
)
from subrecon.services.cache import CacheKeys, CacheManager
from subrecon.services.ledger import SubscriptionLedger
from subrecon.services.validation import ValidationPipeline, ValidationResult

logger = logging.getLogger(__name__)

router = APIRouter()


def _validation_response(result: ValidationResult) -> ValidatePurchaseResponse:
    subscription = result.subscription
    return ValidatePurchaseResponse(
        success=True,
        subscription_id=str(subscription.subscription_id),
        expiry_date=subscription.current_period_end,
        is_duplicate=result.is_duplicate,
        status=subscription.status.value,
    )


async def _run_pipeline(
    db,
    registry,
    user_id: str,
    request: ValidatePurchaseRequest,
) -> ValidatePurchaseResponse:
    pipeline = ValidationPipeline(db, registry)
    try:
        result = await pipeline.validate_purchase(
            user_id=user_id,
            platform=request.platform,
            platform_ref=request.platform_ref,
            product_id=request.product_id,
        )
    except SubscriptionError as e:
        logger.info(
            "Validation failed for user=%s platform=%s: %s (%s)",
            user_id,
            request.platform.value,
            e.code,
            e.reason,
        )
        raise to_app_exception(e) from e
    return _validation_response(result)


@router.post(
    "/validate",
    response_model=ValidatePurchaseResponse,
)
async def validate_purchase(
    purchase: ValidatePurchaseRequest,
    current_user: CurrentUser,
    db: DBSession,
    registry: Registry,
):
    """
    Validate a platform purchase and record it in the ledger.

    Re-submitting a reference that is already recorded and still valid
    returns the existing subscription with ``isDuplicate=true``.
    """
    return await _run_pipeline(db, registry, current_user, purchase)


@router.post(
    "/restore",
    response_model=ValidatePurchaseResponse,
)
async def restore_purchases(
    restore_data: RestoreRequest,
    current_user: CurrentUser,
    db: DBSession,
    registry: Registry,
):
    """
    Restore a previous purchase.

    The client restores through the platform SDK first, then submits the
    reference it got back. Restores run the same pipeline as validation.
    """
    return await _run_pipeline(db, registry, current_user, restore_data)


def entitlement_answer(
    user: Optional[User],
    now: datetime,
    grace_period: timedelta,
) -> dict[str, Any]:
    """
    Entitlement check answer from the user's projection.

    A lapsed row the expiry sweep has not reached yet is reported the way
    the sweep will record it, without writing anything.
    """
    if user is None or user.entitlement_status == "none":
        return {"isSubscribed": False, "status": "none", "expiryDate": None}

    expires_at = user.entitlement_expires_at
    if not user.is_entitled or expires_at is None:
        return {"isSubscribed": False, "status": "expired", "expiryDate": expires_at}

    if user.entitlement_status == "active" and expires_at > now:
        return {"isSubscribed": True, "status": "active", "expiryDate": expires_at}
    if expires_at + grace_period > now:
        return {"isSubscribed": True, "status": "grace_period", "expiryDate": expires_at}
    return {"isSubscribed": False, "status": "expired", "expiryDate": expires_at}


@router.get(
    "/status",
    response_model=SubscriptionStatusResponse,
)
async def get_subscription_status(
    current_user: CurrentUser,
    db: DBSession,
    force_refresh: bool = Query(default=False),
):
    """
    Get the caller's entitlement.

    Answers from the Redis cache when possible; use force_refresh=true to
    read the ledger directly.
    """
    cache_key = CacheKeys.subscription_status(current_user)

    if not force_refresh:
        cached = await CacheManager.get(cache_key)
        if cached:
            return SubscriptionStatusResponse(success=True, **cached)

    ledger = SubscriptionLedger(db)
    user = await ledger.get_user(current_user)
    answer = entitlement_answer(
        user,
        utcnow(),
        timedelta(days=settings.SUBSCRIPTION_GRACE_PERIOD_DAYS),
    )

    expiry = answer["expiryDate"]
    await CacheManager.set(
        cache_key,
        {**answer, "expiryDate": expiry.isoformat() if expiry else None},
        ttl=CacheManager.TTL_SHORT,
    )

    return SubscriptionStatusResponse(success=True, **answer)
