"""HTTP tests for the invite endpoints and the response envelope."""

import asyncio
import re
from unittest.mock import AsyncMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

from invite_api.main import app
from invite_api.repository import InviteRepository

CODE_PATTERN = re.compile(r"^[A-Z0-9]{4}-[A-Z0-9]{4}$")


async def create_invite(client, **payload) -> dict:
    body = {"referrer_email": "admin@example.com", **payload}
    response = await client.post("/api/invite/create", json=body)
    assert response.status_code == 201, response.text
    return response.json()["data"]


@pytest.mark.asyncio
async def test_create_invite(client):
    response = await client.post(
        "/api/invite/create",
        json={"referrer_email": "Admin@Example.com", "max_uses": 3, "expires_in_days": 10},
    )

    assert response.status_code == 201
    body = response.json()
    assert body["failed"] is False
    assert body["code"] == 201
    assert body["message"] == "Invite code created successfully"
    assert CODE_PATTERN.match(body["data"]["code"])
    assert body["data"]["referrer_email"] == "admin@example.com"
    assert body["data"]["max_uses"] == 3
    assert body["data"]["current_uses"] == 0
    assert body["data"]["is_active"] is True


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"referrer_email": "not-an-email"},
        {"referrer_email": "admin@example.com", "max_uses": 0},
        {"referrer_email": "admin@example.com", "max_uses": 101},
        {"referrer_email": "admin@example.com", "expires_in_days": 0},
        {},
    ],
)
async def test_create_invite_validation_errors_use_envelope(client, payload):
    response = await client.post("/api/invite/create", json=payload)

    assert response.status_code == 422
    body = response.json()
    assert body["failed"] is True
    assert body["code"] == 422
    assert body["data"]["errors"]


@pytest.mark.asyncio
async def test_use_invite(client):
    invite = await create_invite(client, max_uses=1)

    response = await client.post(
        "/api/invite/use",
        json={"code": invite["code"].replace("-", "").lower(), "email": "User@Example.com"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["failed"] is False
    assert body["message"] == "Invite code redeemed successfully"
    assert body["data"] == {
        "success": True,
        "code": invite["code"],
        "referrer": "admin@example.com",
        "current_uses": 1,
        "remaining_uses": 0,
        "is_active": False,
    }


@pytest.mark.asyncio
async def test_use_invite_errors(client, service_manager, settings, monkeypatch):
    monkeypatch.setattr(settings, "TRUSTED_PROXY_HOPS", 1)
    invite = await create_invite(client, max_uses=1)
    other = await create_invite(client, max_uses=1)
    spare = await create_invite(client, max_uses=1)
    await client.post("/api/invite/use", json={"code": invite["code"], "email": "first@example.com"})

    cases = [
        ({"code": "KKK6-KKKK", "email": "a@example.com"}, 400, "invalid_format"),
        ({"code": service_manager.codec.generate(), "email": "a@example.com"}, 404, "not_found"),
        ({"code": invite["code"], "email": "second@example.com"}, 409, "max_uses_reached"),
        ({"code": other["code"], "email": "first@example.com"}, 409, "identity_already_redeemed"),
    ]
    for i, (payload, status_code, kind) in enumerate(cases):
        # Separate forwarded addresses keep the strict rate limit out of the way.
        response = await client.post("/api/invite/use", json=payload, headers={"X-Forwarded-For": f"10.1.0.{i}"})
        assert response.status_code == status_code, payload
        body = response.json()
        assert body["failed"] is True
        assert body["code"] == status_code
        assert body["data"] == {"error": kind}

    # Failed attempts consume nothing.
    response = await client.post("/api/invite/use", json={"code": spare["code"], "email": "b@example.com"})
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_use_expired_invite(client, service_manager, make_service):
    invite = await make_service().issue_invite("admin@example.com", expires_in_days=-1)

    response = await client.post("/api/invite/use", json={"code": invite.code, "email": "a@example.com"})

    assert response.status_code == 410
    assert response.json()["message"] == "Invite code has expired"


@pytest.mark.asyncio
async def test_use_contended_invite(client, service_manager):
    invite = await create_invite(client)
    await service_manager.locks.acquire(invite["code"], 5000)

    response = await client.post("/api/invite/use", json={"code": invite["code"], "email": "a@example.com"})

    assert response.status_code == 423
    assert response.headers["Retry-After"] == "5"
    assert response.json()["data"] == {"error": "contended"}


@pytest.mark.asyncio
async def test_use_is_rate_limited(client, settings):
    payload = {"code": "KKK6-KKKK", "email": "a@example.com"}

    for attempt in range(settings.RATE_LIMIT_STRICT_MAX):
        response = await client.post("/api/invite/use", json=payload)
        assert response.status_code == 400
        assert response.headers["X-RateLimit-Limit"] == str(settings.RATE_LIMIT_STRICT_MAX)
        assert response.headers["X-RateLimit-Remaining"] == str(settings.RATE_LIMIT_STRICT_MAX - attempt - 1)

    response = await client.post("/api/invite/use", json=payload)

    assert response.status_code == 429
    assert response.headers["Retry-After"] == str(settings.RATE_LIMIT_WINDOW_SECONDS)
    assert response.headers["X-RateLimit-Remaining"] == "0"
    assert "X-RateLimit-Reset" in response.headers
    body = response.json()
    assert body["failed"] is True
    assert body["data"] == {"error": "rate_limited"}


@pytest.mark.asyncio
async def test_rate_limit_headers_on_success(client, settings):
    response = await client.get("/api/invite/validate/KKK6-KKKK")

    assert response.status_code == 200
    assert response.headers["X-RateLimit-Limit"] == str(settings.RATE_LIMIT_DEFAULT_MAX)
    assert response.headers["X-RateLimit-Remaining"] == str(settings.RATE_LIMIT_DEFAULT_MAX - 1)


@pytest.mark.asyncio
async def test_forwarded_for_is_ignored_without_trusted_proxies(client, settings):
    payload = {"code": "KKK6-KKKK", "email": "a@example.com"}

    statuses = [
        (await client.post("/api/invite/use", json=payload, headers={"X-Forwarded-For": f"10.2.0.{i}"})).status_code
        for i in range(settings.RATE_LIMIT_STRICT_MAX + 1)
    ]

    assert statuses == [400] * settings.RATE_LIMIT_STRICT_MAX + [429]


@pytest.mark.asyncio
async def test_rate_limit_is_per_forwarded_client_behind_trusted_proxy(client, settings, monkeypatch):
    monkeypatch.setattr(settings, "TRUSTED_PROXY_HOPS", 1)
    payload = {"code": "KKK6-KKKK", "email": "a@example.com"}

    for _ in range(settings.RATE_LIMIT_STRICT_MAX):
        await client.post("/api/invite/use", json=payload, headers={"X-Forwarded-For": "10.0.0.1"})

    blocked = await client.post("/api/invite/use", json=payload, headers={"X-Forwarded-For": "10.0.0.1"})
    # Entries left of the one the proxy appended are client-supplied and not trusted.
    spoofed = await client.post("/api/invite/use", json=payload, headers={"X-Forwarded-For": "10.0.0.2, 10.0.0.1"})
    allowed = await client.post("/api/invite/use", json=payload, headers={"X-Forwarded-For": "10.0.0.1, 10.0.0.2"})

    assert blocked.status_code == 429
    assert spoofed.status_code == 429
    assert allowed.status_code == 400


@pytest.mark.asyncio
async def test_concurrent_burst_admits_exactly_the_limit(client, settings):
    payload = {"code": "KKK6-KKKK", "email": "a@example.com"}

    responses = await asyncio.gather(
        *(client.post("/api/invite/use", json=payload) for _ in range(settings.RATE_LIMIT_STRICT_MAX * 2))
    )

    statuses = [response.status_code for response in responses]
    assert statuses.count(400) == settings.RATE_LIMIT_STRICT_MAX
    assert statuses.count(429) == settings.RATE_LIMIT_STRICT_MAX


@pytest.mark.asyncio
async def test_unexpected_error_uses_envelope(client):
    # The Exception handler runs in ServerErrorMiddleware, which re-raises after responding.
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    failing_query = AsyncMock(side_effect=RuntimeError("boom"))

    with patch.object(InviteRepository, "query_by_creator", failing_query):
        async with AsyncClient(transport=transport, base_url="http://test") as raw_client:
            response = await raw_client.get("/api/invite/stats", params={"referrer_email": "admin@example.com"})

    assert response.status_code == 500
    assert response.json() == {
        "failed": True,
        "code": 500,
        "message": "Internal server error",
        "data": {"error": "error"},
    }


@pytest.mark.asyncio
async def test_validate_invite(client):
    invite = await create_invite(client, max_uses=2)

    response = await client.get(f"/api/invite/validate/{invite['code'].lower()}")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["valid"] is True
    assert data["remaining_uses"] == 2

    response = await client.get("/api/invite/validate/KKK6-KKKK")
    assert response.status_code == 200
    assert response.json()["data"]["valid"] is False
    assert response.json()["data"]["reason"] == "Invalid format or checksum"


@pytest.mark.asyncio
async def test_stats(client):
    invite = await create_invite(client, max_uses=2)
    await create_invite(client, max_uses=1)
    await client.post("/api/invite/use", json={"code": invite["code"], "email": "a@example.com"})

    response = await client.get("/api/invite/stats", params={"referrer_email": "admin@example.com"})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["total_invites"] == 2
    assert data["total_uses"] == 1
    assert data["active_invites"] == 2
    assert data["average_usage_rate"] == 25.0


@pytest.mark.asyncio
@pytest.mark.parametrize("trusted_hops,expected_ip", [(0, "127.0.0.1"), (1, "203.0.113.7")])
async def test_details(client, service_manager, settings, monkeypatch, trusted_hops, expected_ip):
    monkeypatch.setattr(settings, "TRUSTED_PROXY_HOPS", trusted_hops)
    invite = await create_invite(client, max_uses=2)
    await client.post(
        "/api/invite/use",
        json={"code": invite["code"], "email": "a@example.com"},
        headers={"X-Forwarded-For": "198.51.100.9, 203.0.113.7"},
    )

    response = await client.get(f"/api/invite/details/{invite['code']}")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["code"] == invite["code"]
    assert data["remaining_uses"] == 1
    assert [(r["email"], r["ip_address"]) for r in data["redemptions"]] == [("a@example.com", expected_ip)]

    missing = await client.get(f"/api/invite/details/{service_manager.codec.generate()}")
    assert missing.status_code == 404
    assert missing.json()["failed"] is True
