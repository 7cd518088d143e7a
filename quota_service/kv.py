"""Networked counter stores.

``KvRestCounterStore`` speaks the Redis-over-HTTP protocol used by Vercel KV
and Upstash: each command is POSTed as a JSON array with a bearer token and
answered with ``{"result": ...}`` or ``{"error": "..."}``.

``RedisCounterStore`` talks to a Redis server directly via redis.asyncio.

Both translate their transport errors into ``StoreError`` so the limiter can
apply its degradation policy.
"""

from typing import Any, List, Optional

import httpx
from redis.asyncio import Redis
from redis.exceptions import RedisError

from quota_service.config import StoreConfig
from quota_service.store import (
    CounterStore,
    IncrementResult,
    MemoryCounterStore,
    StoreError,
    UnconfiguredStore,
)


def _to_int(value: Any, operation: str, key: str) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise StoreError(
            operation, key, "non-integer result: {!r}".format(value)
        ) from exc


class KvRestCounterStore(CounterStore):
    """Counter store backed by a Redis REST endpoint."""

    def __init__(
        self,
        url: str,
        token: str,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._url = url.rstrip("/")
        self._token = token
        self._timeout = timeout
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def _command(self, *args: Any) -> Any:
        """Run a single command and return its ``result`` field."""
        operation, key = str(args[0]), str(args[1])
        headers = {
            "Authorization": "Bearer {}".format(self._token),
            "Content-Type": "application/json",
        }
        command: List[Any] = list(args)

        try:
            resp = await self._get_client().post(self._url, json=command, headers=headers)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as exc:
            raise StoreError(
                operation, key, "HTTP {}".format(exc.response.status_code)
            ) from exc
        except httpx.HTTPError as exc:
            raise StoreError(operation, key, str(exc) or type(exc).__name__) from exc
        except ValueError as exc:
            raise StoreError(operation, key, "invalid JSON response") from exc

        if not isinstance(data, dict):
            raise StoreError(operation, key, "unexpected response: {!r}".format(data))
        if data.get("error"):
            raise StoreError(operation, key, str(data["error"]))
        return data.get("result")

    async def incr(self, key: str) -> IncrementResult:
        count = _to_int(await self._command("INCR", key), "INCR", key)
        if count is None:
            raise StoreError("INCR", key, "missing result")
        return IncrementResult(count=count, is_new_window=count == 1)

    async def expire(self, key: str, seconds: int) -> None:
        await self._command("EXPIRE", key, seconds)

    async def ttl(self, key: str) -> int:
        ttl = _to_int(await self._command("TTL", key), "TTL", key)
        if ttl is None:
            raise StoreError("TTL", key, "missing result")
        return ttl

    async def get(self, key: str) -> Optional[int]:
        return _to_int(await self._command("GET", key), "GET", key)

    async def delete(self, key: str) -> None:
        await self._command("DEL", key)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class RedisCounterStore(CounterStore):
    """Counter store backed by a Redis server."""

    def __init__(self, url: str, client: Optional[Redis] = None) -> None:
        self._client = client if client is not None else Redis.from_url(
            url, decode_responses=True
        )

    async def incr(self, key: str) -> IncrementResult:
        try:
            count = _to_int(await self._client.incr(key), "INCR", key)
        except RedisError as exc:
            raise StoreError("INCR", key, str(exc)) from exc
        if count is None:
            raise StoreError("INCR", key, "missing result")
        return IncrementResult(count=count, is_new_window=count == 1)

    async def expire(self, key: str, seconds: int) -> None:
        try:
            await self._client.expire(key, seconds)
        except RedisError as exc:
            raise StoreError("EXPIRE", key, str(exc)) from exc

    async def ttl(self, key: str) -> int:
        try:
            ttl = _to_int(await self._client.ttl(key), "TTL", key)
        except RedisError as exc:
            raise StoreError("TTL", key, str(exc)) from exc
        if ttl is None:
            raise StoreError("TTL", key, "missing result")
        return ttl

    async def get(self, key: str) -> Optional[int]:
        try:
            value = await self._client.get(key)
        except RedisError as exc:
            raise StoreError("GET", key, str(exc)) from exc
        return _to_int(value, "GET", key)

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(key)
        except RedisError as exc:
            raise StoreError("DEL", key, str(exc)) from exc

    async def close(self) -> None:
        await self._client.aclose()


def build_store(config: StoreConfig) -> CounterStore:
    """Build the counter store described by ``config``.

    Returns an ``UnconfiguredStore`` when the backend's credentials are not
    present in the environment.
    """
    if not config.is_configured:
        return UnconfiguredStore()

    if config.backend == "memory":
        return MemoryCounterStore()

    if config.backend == "redis":
        return RedisCounterStore(config.url or "")

    return KvRestCounterStore(
        url=config.url or "",
        token=config.token or "",
        timeout=config.timeout_seconds,
    )
