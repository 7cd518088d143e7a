"""Shared test fixtures for the quota service tests."""

import json
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

from quota_service.config import QuotaConfig, load_config
from quota_service.store import CounterStore, IncrementResult, MemoryCounterStore, StoreError


def _make_config(tmp_path: Path, overrides: Optional[Dict] = None) -> str:
    """Write a minimal test config and return its path."""
    config = {
        "environment": "development",
        "store": {
            "backend": "memory",
        },
        "rate_limit": {
            "max_requests": 3,
            "window_ms": 60000,
            "scopes": {
                "roast": {"max_requests": 2},
            },
        },
        "log_file": str(tmp_path / "test.log"),
    }
    if overrides:
        config.update(overrides)

    path = tmp_path / "test_config.json"
    path.write_text(json.dumps(config))
    return str(path)


class FakeClock:
    """Manually advanced clock returning epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FailingStore(CounterStore):
    """Store whose every operation fails, as during a network outage."""

    def __init__(self) -> None:
        self.calls: List[str] = []

    def _fail(self, operation: str, key: str) -> StoreError:
        self.calls.append(operation)
        return StoreError(operation, key, "connection refused")

    async def incr(self, key: str) -> IncrementResult:
        raise self._fail("INCR", key)

    async def expire(self, key: str, seconds: int) -> None:
        raise self._fail("EXPIRE", key)

    async def ttl(self, key: str) -> int:
        raise self._fail("TTL", key)

    async def get(self, key: str) -> Optional[int]:
        raise self._fail("GET", key)

    async def delete(self, key: str) -> None:
        raise self._fail("DEL", key)


class RecordingStore(MemoryCounterStore):
    """Memory store that records every call made against it."""

    def __init__(self, clock: FakeClock) -> None:
        super().__init__(clock)
        self.calls: List[Tuple] = []

    async def incr(self, key: str) -> IncrementResult:
        self.calls.append(("INCR", key))
        return await super().incr(key)

    async def expire(self, key: str, seconds: int) -> None:
        self.calls.append(("EXPIRE", key, seconds))
        await super().expire(key, seconds)

    async def ttl(self, key: str) -> int:
        self.calls.append(("TTL", key))
        return await super().ttl(key)


@pytest.fixture()
def test_config_path(tmp_path: Path) -> str:
    """Return the path to a temporary test config file."""
    return _make_config(tmp_path)


@pytest.fixture()
def test_config(test_config_path: str) -> QuotaConfig:
    """Return a loaded test QuotaConfig."""
    return load_config(test_config_path)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def memory_store(clock: FakeClock) -> MemoryCounterStore:
    return MemoryCounterStore(clock)


@pytest.fixture()
def recording_store(clock: FakeClock) -> RecordingStore:
    return RecordingStore(clock)


@pytest.fixture()
def failing_store() -> FailingStore:
    return FailingStore()
