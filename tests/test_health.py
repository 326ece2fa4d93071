"""
Health Check Tests
==================

Tests for the health check endpoint.
"""

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient):
    """Test the health check endpoint."""
    response = await client.get("/health")

    assert response.status_code == 200
    data = response.json()

    assert data["status"] == "healthy"
    assert data["version"] == "1.0.0"
    assert data["environment"] == "test"


@pytest.mark.asyncio
async def test_unknown_route(client: AsyncClient):
    """Unknown routes use the standard error envelope."""
    response = await client.get("/api/v1/nope")

    assert response.status_code == 404
    data = response.json()

    assert data["success"] is False
    assert data["error"]["code"] == "HTTP_ERROR"


@pytest.mark.asyncio
async def test_wrong_method(client: AsyncClient):
    """Method mismatches use the standard error envelope."""
    response = await client.get("/api/v1/webhooks/app-store-a")

    assert response.status_code == 405
    data = response.json()

    assert data["success"] is False
    assert data["error"]["message"] == "Method Not Allowed"
