from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "database": "healthy", "cache": "healthy"}


@pytest.mark.asyncio
async def test_health_reports_cache_outage(client, redis_client, monkeypatch):
    monkeypatch.setattr(redis_client, "ping", AsyncMock(side_effect=RedisConnectionError("down")))

    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "unhealthy", "database": "healthy", "cache": "unhealthy"}


@pytest.mark.asyncio
async def test_metrics_exposed(client):
    await client.post("/api/invite/create", json={"referrer_email": "admin@example.com"})

    response = await client.get("/metrics")

    assert response.status_code == 200
    assert "invite_api_issue_requests_total" in response.text
    assert "invite_api_redemption_requests_total" in response.text
