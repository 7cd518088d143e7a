"""Smoke tests for the quota service HTTP layer.

Tests cover the 200/429 contract, rate-limit headers, identifier extraction
from proxy headers, named scopes, store outages in development and
production, the tier table, and tier usage evaluation.
"""

import json
import time
from pathlib import Path
from typing import Dict, Optional

import pytest
from httpx import ASGITransport, AsyncClient

from quota_service import app as app_module
from quota_service.app import app


def _write_config(tmp_path: Path, overrides: Optional[Dict] = None) -> str:
    config = {
        "environment": "development",
        "store": {"backend": "memory"},
        "rate_limit": {
            "max_requests": 3,
            "window_ms": 60000,
            "scopes": {"roast": {"max_requests": 1}},
        },
        "log_file": str(tmp_path / "test.log"),
    }
    if overrides:
        config.update(overrides)
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps(config))
    return str(config_path)


def _use_config(monkeypatch: pytest.MonkeyPatch, config_path: str) -> None:
    monkeypatch.setattr(app_module, "CONFIG_PATH", config_path)
    monkeypatch.setattr(app_module, "_config", None)
    monkeypatch.setattr(app_module, "_limiter", None)
    monkeypatch.setattr(app_module, "_tier_policies", None)


@pytest.fixture(autouse=True)
def _reset_app_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Reset the app's global state before each test and point to a test config."""
    _use_config(monkeypatch, _write_config(tmp_path))


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_check_allows_and_sets_headers() -> None:
    async with _client() as client:
        resp = await client.post("/v1/quota/check", json={"identifier": "ip:10.0.0.1"})

    assert resp.status_code == 200
    data = resp.json()
    assert data["identifier"] == "ip:10.0.0.1"
    assert data["allowed"] is True
    assert data["remaining"] == 2
    assert data["limit"] == 3
    assert resp.headers["X-RateLimit-Limit"] == "3"
    assert resp.headers["X-RateLimit-Remaining"] == "2"
    assert int(resp.headers["X-RateLimit-Reset"]) == data["reset_time"]


@pytest.mark.asyncio
async def test_rate_limit_exceeded() -> None:
    """Exceeding the limit returns 429 with the standard error code and headers."""
    async with _client() as client:
        for _ in range(3):
            resp = await client.post("/v1/quota/check", json={"identifier": "ip:10.0.0.1"})
            assert resp.status_code == 200

        resp = await client.post("/v1/quota/check", json={"identifier": "ip:10.0.0.1"})

    assert resp.status_code == 429
    data = resp.json()
    assert data["error"]["code"] == "RATE_LIMIT_EXCEEDED"
    assert resp.headers["X-RateLimit-Limit"] == "3"
    assert resp.headers["X-RateLimit-Remaining"] == "0"
    reset_ms = int(resp.headers["X-RateLimit-Reset"])
    assert reset_ms > time.time() * 1000
    assert data["details"]["reset_time"] == reset_ms
    assert 0 < int(resp.headers["Retry-After"]) <= 60


@pytest.mark.asyncio
async def test_identifier_from_forwarded_for() -> None:
    async with _client() as client:
        resp = await client.post(
            "/v1/quota/check",
            headers={"X-Forwarded-For": "203.0.113.5, 10.0.0.1"},
        )

    assert resp.status_code == 200
    assert resp.json()["identifier"] == "ip:203.0.113.5"


@pytest.mark.asyncio
async def test_separate_clients_independent_limits() -> None:
    async with _client() as client:
        for _ in range(3):
            await client.post("/v1/quota/check", headers={"X-Real-IP": "10.0.0.1"})
        blocked = await client.post("/v1/quota/check", headers={"X-Real-IP": "10.0.0.1"})
        other = await client.post("/v1/quota/check", headers={"X-Real-IP": "10.0.0.2"})

    assert blocked.status_code == 429
    assert other.status_code == 200


@pytest.mark.asyncio
async def test_scope_has_its_own_limit_and_counter() -> None:
    async with _client() as client:
        first = await client.post(
            "/v1/quota/check", json={"identifier": "ip:10.0.0.1", "scope": "roast"}
        )
        second = await client.post(
            "/v1/quota/check", json={"identifier": "ip:10.0.0.1", "scope": "roast"}
        )
        unscoped = await client.post("/v1/quota/check", json={"identifier": "ip:10.0.0.1"})

    assert first.status_code == 200
    assert first.json()["identifier"] == "roast:ip:10.0.0.1"
    assert second.status_code == 429
    assert unscoped.status_code == 200
    assert unscoped.json()["remaining"] == 2


@pytest.mark.asyncio
async def test_unknown_scope_rejected() -> None:
    async with _client() as client:
        resp = await client.post("/v1/quota/check", json={"scope": "nope"})

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "INVALID_INPUT"


@pytest.mark.asyncio
async def test_status_is_read_only() -> None:
    async with _client() as client:
        await client.post("/v1/quota/check", json={"identifier": "ip:10.0.0.1"})
        first = await client.get("/v1/quota/status", params={"identifier": "ip:10.0.0.1"})
        second = await client.get("/v1/quota/status", params={"identifier": "ip:10.0.0.1"})

    assert first.status_code == 200
    assert first.json()["remaining"] == 2
    assert second.json()["remaining"] == 2
    assert second.headers["X-RateLimit-Remaining"] == "2"


@pytest.mark.asyncio
async def test_empty_identifier_is_validation_error() -> None:
    async with _client() as client:
        resp = await client.post("/v1/quota/check", json={"identifier": ""})

    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "INVALID_INPUT"


@pytest.mark.asyncio
async def test_unconfigured_store_allows_everything(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.delenv("KV_REST_API_URL", raising=False)
    monkeypatch.delenv("KV_REST_API_TOKEN", raising=False)
    _use_config(monkeypatch, _write_config(tmp_path, {"store": {"backend": "kv_rest"}}))

    async with _client() as client:
        for _ in range(5):
            resp = await client.post("/v1/quota/check", json={"identifier": "ip:10.0.0.1"})
            assert resp.status_code == 200
            assert resp.json()["remaining"] == 3


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "environment,expected_status",
    [("development", 200), ("production", 429)],
)
async def test_store_outage_follows_environment(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    environment: str,
    expected_status: int,
) -> None:
    """An unreachable store fails open in development and closed in production."""
    monkeypatch.setenv("KV_REST_API_URL", "http://127.0.0.1:9")
    monkeypatch.setenv("KV_REST_API_TOKEN", "test-token")
    config_path = _write_config(
        tmp_path,
        {
            "environment": environment,
            "store": {"backend": "kv_rest", "timeout_seconds": 0.5},
        },
    )
    _use_config(monkeypatch, config_path)

    async with _client() as client:
        resp = await client.post("/v1/quota/check", json={"identifier": "ip:10.0.0.1"})

    assert resp.status_code == expected_status


@pytest.mark.asyncio
async def test_list_tiers() -> None:
    async with _client() as client:
        resp = await client.get("/v1/tiers")

    assert resp.status_code == 200
    tiers = {t["tier"]: t for t in resp.json()["tiers"]}
    assert set(tiers) == {"free", "starter", "creator", "pro", "unlimited"}
    assert tiers["free"]["daily_limit"] == 10
    assert tiers["free"]["limit_display"] == "10/day"
    assert tiers["pro"]["monthly_limit"] == 2000


@pytest.mark.asyncio
async def test_get_tier_and_unknown_tier() -> None:
    async with _client() as client:
        found = await client.get("/v1/tiers/unlimited")
        missing = await client.get("/v1/tiers/platinum")

    assert found.status_code == 200
    assert found.json()["limit_display"] == "Unlimited"
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_tier_file_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    tier_file = tmp_path / "tiers.yaml"
    tier_file.write_text("tiers:\n  pro:\n    monthly_limit: 3000\n")
    _use_config(monkeypatch, _write_config(tmp_path, {"tier_file": str(tier_file)}))

    async with _client() as client:
        resp = await client.get("/v1/tiers/pro")

    assert resp.json()["monthly_limit"] == 3000


@pytest.mark.asyncio
async def test_usage_evaluate_under_limit() -> None:
    now_ms = time.time() * 1000
    body = {
        "user_id": "u1",
        "tier": "pro",
        "count": 0,
        "monthly_count": 1999,
        "last_reset": now_ms,
        "last_monthly_reset": now_ms,
    }
    async with _client() as client:
        resp = await client.post("/v1/usage/evaluate", json=body)

    assert resp.status_code == 200
    data = resp.json()
    assert data["reached_limit"] is False
    assert data["remaining"] == 1
    assert data["usage"]["monthly_count"] == 1999


@pytest.mark.asyncio
async def test_usage_evaluate_free_tier_exhausted() -> None:
    now_ms = time.time() * 1000
    body = {
        "user_id": "u1",
        "count": 10,
        "last_reset": now_ms,
        "last_monthly_reset": now_ms,
    }
    async with _client() as client:
        resp = await client.post("/v1/usage/evaluate", json=body)

    assert resp.status_code == 429
    data = resp.json()
    assert data["error"]["code"] == "QUOTA_EXCEEDED"
    assert data["details"]["tier"] == "free"


@pytest.mark.asyncio
async def test_usage_evaluate_rolls_over_stale_day() -> None:
    now_ms = time.time() * 1000
    body = {
        "user_id": "u1",
        "tier": "free",
        "count": 10,
        "last_reset": now_ms - 25 * 60 * 60 * 1000,
        "last_monthly_reset": now_ms,
    }
    async with _client() as client:
        resp = await client.post("/v1/usage/evaluate", json=body)

    assert resp.status_code == 200
    data = resp.json()
    assert data["remaining"] == 10
    assert data["usage"]["count"] == 0


@pytest.mark.asyncio
async def test_usage_evaluate_unlimited() -> None:
    async with _client() as client:
        resp = await client.post(
            "/v1/usage/evaluate",
            json={"user_id": "u1", "tier": "unlimited", "monthly_count": 10**6},
        )

    assert resp.status_code == 200
    assert resp.json()["remaining"] == "unlimited"


@pytest.mark.asyncio
async def test_usage_evaluate_rejects_negative_counts() -> None:
    async with _client() as client:
        resp = await client.post("/v1/usage/evaluate", json={"user_id": "u1", "count": -1})

    assert resp.status_code == 422
