"""
API Tests
=========

Tests for the HTTP surface including:
- Authentication on the subscription endpoints
- Purchase validation, restore and the wire error taxonomy
- Entitlement check answers and the status cache
- Webhook acknowledgement, token check and error statuses
"""

import base64
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient

from subrecon.config import settings
from subrecon.services.validators.base import PurchaseNotFoundError
from subrecon.services.webhooks import WebhookNormalizer

from tests.conftest import OTHER_USER_ID, auth_headers, make_facts


def _validate_body(token: str = "tok-1", product_id: str = "premium_monthly") -> dict:
    return {"platformRef": token, "productId": product_id, "platform": "app_store_a"}


def _facts():
    # The API runs on the real clock
    return make_facts(expires_at=datetime.now(timezone.utc) + timedelta(days=30))


def _cancel_envelope(token: str) -> dict:
    data = {
        "version": "1.0",
        "packageName": "com.example.app",
        "eventTimeMillis": str(int(datetime.now(timezone.utc).timestamp() * 1000)),
        "subscriptionNotification": {
            "version": "1.0",
            "notificationType": 3,
            "purchaseToken": token,
            "subscriptionId": "premium_monthly",
        },
    }
    return {
        "message": {
            "data": base64.b64encode(json.dumps(data).encode("utf-8")).decode("ascii"),
            "messageId": "m-1",
        },
        "subscription": "projects/example/subscriptions/play-rtdn",
    }


class TestAuthentication:
    """Tests for the bearer token dependency"""

    @pytest.mark.asyncio
    async def test_missing_token(self, client: AsyncClient):
        response = await client.get("/api/v1/subscription/status")

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"
        assert response.json()["error"]["code"] == "unauthenticated"

    @pytest.mark.asyncio
    async def test_invalid_token(self, client: AsyncClient):
        response = await client.get(
            "/api/v1/subscription/status",
            headers={"Authorization": "Bearer not-a-jwt"},
        )

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid or expired token"


class TestValidateEndpoint:
    """Tests for POST /api/v1/subscription/validate"""

    @pytest.mark.asyncio
    async def test_validate_then_duplicate(self, client: AsyncClient, fake_validator):
        fake_validator.responses["tok-1"] = _facts()

        first = await client.post("/api/v1/subscription/validate", json=_validate_body(), headers=auth_headers())
        assert first.status_code == 200
        data = first.json()
        assert data["success"] is True
        assert data["isDuplicate"] is False
        assert data["status"] == "active"

        second = await client.post("/api/v1/subscription/validate", json=_validate_body(), headers=auth_headers())
        assert second.status_code == 200
        assert second.json()["isDuplicate"] is True
        assert second.json()["subscriptionId"] == data["subscriptionId"]

    @pytest.mark.asyncio
    async def test_restore_runs_same_pipeline(self, client: AsyncClient, fake_validator):
        fake_validator.responses["tok-1"] = _facts()

        response = await client.post("/api/v1/subscription/restore", json=_validate_body(), headers=auth_headers())

        assert response.status_code == 200
        assert response.json()["isDuplicate"] is False

    @pytest.mark.asyncio
    async def test_unknown_product(self, client: AsyncClient, fake_validator):
        response = await client.post(
            "/api/v1/subscription/validate",
            json=_validate_body(product_id="gold_lifetime"),
            headers=auth_headers(),
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "invalid-argument"
        assert error["reason"] == "unknown_product"
        assert fake_validator.calls == []

    @pytest.mark.asyncio
    async def test_missing_field(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/subscription/validate",
            json={"productId": "premium_monthly", "platform": "app_store_a"},
            headers=auth_headers(),
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid-argument"

    @pytest.mark.asyncio
    async def test_reference_owned_by_another_user(self, client: AsyncClient, fake_validator):
        fake_validator.responses["tok-1"] = _facts()
        await client.post("/api/v1/subscription/validate", json=_validate_body(), headers=auth_headers())

        response = await client.post(
            "/api/v1/subscription/validate",
            json=_validate_body(),
            headers=auth_headers(OTHER_USER_ID),
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "already-exists"

    @pytest.mark.asyncio
    async def test_purchase_not_found(self, client: AsyncClient, fake_validator):
        fake_validator.responses["tok-1"] = PurchaseNotFoundError("gone")

        response = await client.post("/api/v1/subscription/validate", json=_validate_body(), headers=auth_headers())

        assert response.status_code == 404
        assert response.json()["error"]["reason"] == "not_found"


class TestStatusEndpoint:
    """Tests for GET /api/v1/subscription/status"""

    @pytest.mark.asyncio
    async def test_new_user_has_no_entitlement(self, client: AsyncClient):
        response = await client.get("/api/v1/subscription/status", headers=auth_headers())

        assert response.status_code == 200
        data = response.json()
        assert data["isSubscribed"] is False
        assert data["status"] == "none"
        assert data["expiryDate"] is None

    @pytest.mark.asyncio
    async def test_active_after_validation(self, client: AsyncClient, fake_validator):
        fake_validator.responses["tok-1"] = _facts()
        await client.post("/api/v1/subscription/validate", json=_validate_body(), headers=auth_headers())

        response = await client.get(
            "/api/v1/subscription/status",
            params={"force_refresh": "true"},
            headers=auth_headers(),
        )

        data = response.json()
        assert data["isSubscribed"] is True
        assert data["status"] == "active"
        assert data["expiryDate"] is not None

    @pytest.mark.asyncio
    async def test_answers_from_cache(self, client: AsyncClient):
        cached = {"isSubscribed": True, "status": "grace_period", "expiryDate": "2026-03-01T12:00:00+00:00"}

        with patch("subrecon.api.v1.subscription.CacheManager.get", AsyncMock(return_value=cached)):
            response = await client.get("/api/v1/subscription/status", headers=auth_headers())

        data = response.json()
        assert data["isSubscribed"] is True
        assert data["status"] == "grace_period"


class TestWebhookEndpoints:
    """Tests for the platform push endpoints"""

    @pytest.mark.asyncio
    async def test_cancel_notification_applied(self, client: AsyncClient, fake_validator):
        fake_validator.responses["tok-1"] = _facts()
        validated = await client.post("/api/v1/subscription/validate", json=_validate_body(), headers=auth_headers())

        response = await client.post("/api/v1/webhooks/app-store-a", json=_cancel_envelope("tok-1"))

        assert response.status_code == 200
        data = response.json()
        assert data["received"] is True
        assert data["result"] == "applied"
        assert data["subscriptionId"] == validated.json()["subscriptionId"]

    @pytest.mark.asyncio
    async def test_unknown_subscription_acknowledged(self, client: AsyncClient):
        response = await client.post("/api/v1/webhooks/app-store-a", json=_cancel_envelope("tok-unknown"))

        assert response.status_code == 200
        assert response.json()["result"] == "unmatched"

    @pytest.mark.asyncio
    async def test_invalid_json(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/webhooks/app-store-b",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid JSON payload"

    @pytest.mark.asyncio
    async def test_malformed_notification(self, client: AsyncClient):
        response = await client.post("/api/v1/webhooks/app-store-a", json={"message": {}})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid-argument"

    @pytest.mark.asyncio
    async def test_shared_secret_required(self, client: AsyncClient):
        with patch.object(settings, "WEBHOOK_SHARED_SECRET", "s3cret"):
            rejected = await client.post("/api/v1/webhooks/app-store-a", json=_cancel_envelope("tok-1"))
            accepted = await client.post(
                "/api/v1/webhooks/app-store-a",
                params={"token": "s3cret"},
                json=_cancel_envelope("tok-1"),
            )

        assert rejected.status_code == 401
        assert accepted.status_code == 200

    @pytest.mark.asyncio
    async def test_processing_error_asks_for_redelivery(self, client: AsyncClient):
        failing = AsyncMock(side_effect=RuntimeError("database is down"))

        with patch.object(WebhookNormalizer, "handle_notification", failing):
            response = await client.post("/api/v1/webhooks/app-store-a", json=_cancel_envelope("tok-1"))

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "internal"
