"""
Webhooks API Endpoints
======================

Receives platform push notifications.

Authentication:
    Platforms push without caller identity. When WEBHOOK_SHARED_SECRET is
    set, the push URL must carry it as ``?token=``.

Idempotency:
    Deliveries are at-least-once. Replays converge through the state
    machine's no-op transitions; there is no separate dedup store.

Responses:
    200 once the payload is syntactically accepted, including for unknown
    subscriptions and unknown notification kinds. 400 for malformed
    payloads, 500 for ledger failures (the platform redelivers).
"""

import hmac
import json
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request, status

from subrecon.config import settings
from subrecon.dependencies import DBSession, Registry
from subrecon.models.subscription import Platform
from subrecon.schemas.subscription import WebhookAckResponse
from subrecon.services.webhooks import MalformedNotificationError, WebhookNormalizer

logger = logging.getLogger(__name__)

router = APIRouter()


def _verify_token(token: Optional[str]) -> None:
    secret = settings.WEBHOOK_SHARED_SECRET
    if not secret:
        return
    if not token or not hmac.compare_digest(token, secret):
        logger.warning("Unauthorized webhook attempt")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "unauthenticated", "message": "Invalid webhook token"},
        )


async def _handle(
    platform: Platform,
    request: Request,
    db,
    registry,
    token: Optional[str],
) -> WebhookAckResponse:
    _verify_token(token)

    # ── Parse payload ─────────────────────────────────────────────────────
    try:
        body = await request.body()
        payload = json.loads(body.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error("Invalid %s webhook payload: %s", platform.value, e)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "invalid-argument", "message": "Invalid JSON payload"},
        )

    # ── Process notification ──────────────────────────────────────────────
    normalizer = WebhookNormalizer(db, registry)
    try:
        outcome = await normalizer.handle_notification(platform, payload)
    except MalformedNotificationError as e:
        logger.error("Malformed %s notification: %s", platform.value, e)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": e.code, "message": e.message, "reason": e.reason},
        )
    except Exception:
        logger.exception("Webhook processing error for %s", platform.value)
        # 500 so the platform retries
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "internal", "message": "Error processing webhook"},
        )

    logger.info(
        "Webhook processed: platform=%s kind=%s result=%s subscription=%s",
        platform.value,
        outcome.kind,
        outcome.result,
        outcome.subscription_id,
    )
    return WebhookAckResponse(
        received=True,
        result=outcome.result,
        kind=outcome.kind,
        subscription_id=outcome.subscription_id,
        status=outcome.status,
    )


@router.post("/app-store-a", response_model=WebhookAckResponse)
async def app_store_a_webhook(
    request: Request,
    db: DBSession,
    registry: Registry,
    token: Optional[str] = Query(default=None),
):
    """Handle purchase-lookup platform push notifications (Pub/Sub envelope)."""
    return await _handle(Platform.APP_STORE_A, request, db, registry, token)


@router.post("/app-store-b", response_model=WebhookAckResponse)
async def app_store_b_webhook(
    request: Request,
    db: DBSession,
    registry: Registry,
    token: Optional[str] = Query(default=None),
):
    """Handle receipt platform server notifications (legacy or signed V2)."""
    return await _handle(Platform.APP_STORE_B, request, db, registry, token)
