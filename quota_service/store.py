"""Counter store contract used by the rate limiter.

A counter store is an external atomic counter keyed by string, with Redis
semantics for expiry and TTL queries. The limiter only depends on this
contract; concrete network backends live in ``quota_service.kv``.
"""

import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional

# Redis TTL sentinels
TTL_MISSING = -2
TTL_NO_EXPIRY = -1


class StoreError(Exception):
    """Raised when a counter store operation fails at runtime."""

    def __init__(self, operation: str, key: str, detail: str) -> None:
        self.operation = operation
        self.key = key
        self.detail = detail
        super().__init__("{} {} failed: {}".format(operation, key, detail))


@dataclass(frozen=True)
class IncrementResult:
    """Outcome of an atomic increment.

    ``is_new_window`` is True when the increment created the counter, i.e.
    this hit opened a fresh fixed window and the key has no expiry yet.
    """

    count: int
    is_new_window: bool


class CounterStore(ABC):
    """Atomic counter store (INCR / EXPIRE / TTL / GET / DEL)."""

    configured: bool = True

    @abstractmethod
    async def incr(self, key: str) -> IncrementResult:
        """Atomically increment ``key`` by one, creating it at 1 if absent."""

    @abstractmethod
    async def expire(self, key: str, seconds: int) -> None:
        """Set ``key`` to expire after ``seconds``."""

    @abstractmethod
    async def ttl(self, key: str) -> int:
        """Seconds until ``key`` expires, or ``TTL_MISSING``/``TTL_NO_EXPIRY``."""

    @abstractmethod
    async def get(self, key: str) -> Optional[int]:
        """Current counter value, or None if the key does not exist."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete ``key``. Deleting a missing key is not an error."""

    async def close(self) -> None:
        """Release any connections held by the store."""


class UnconfiguredStore(CounterStore):
    """Placeholder used when no store credentials are present.

    The limiter checks ``configured`` and never calls into this store;
    it answers every check with "allowed".
    """

    configured = False

    def _unavailable(self, operation: str, key: str) -> StoreError:
        return StoreError(operation, key, "counter store is not configured")

    async def incr(self, key: str) -> IncrementResult:
        raise self._unavailable("INCR", key)

    async def expire(self, key: str, seconds: int) -> None:
        raise self._unavailable("EXPIRE", key)

    async def ttl(self, key: str) -> int:
        raise self._unavailable("TTL", key)

    async def get(self, key: str) -> Optional[int]:
        raise self._unavailable("GET", key)

    async def delete(self, key: str) -> None:
        raise self._unavailable("DEL", key)


@dataclass
class _Entry:
    count: int = 0
    expires_at: Optional[float] = None


class MemoryCounterStore(CounterStore):
    """Single-process counter store for local development and tests.

    Operations never yield to the event loop, so each one is atomic with
    respect to other coroutines on the same loop. State is per instance and
    is not shared across worker processes.

    Expired keys are dropped when touched, and all of them are swept at most
    once every ``sweep_interval`` seconds when an increment creates a key.
    """

    def __init__(
        self, clock: Callable[[], float] = time.time, sweep_interval: float = 60.0
    ) -> None:
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval

    def key_count(self) -> int:
        """Number of keys held, including expired ones not yet dropped."""
        return len(self._entries)

    def _sweep(self) -> None:
        now = self._clock()
        if now < self._next_sweep:
            return
        self._next_sweep = now + self._sweep_interval
        expired = [
            key
            for key, entry in self._entries.items()
            if entry.expires_at is not None and now >= entry.expires_at
        ]
        for key in expired:
            del self._entries[key]

    def _live(self, key: str) -> Optional[_Entry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and self._clock() >= entry.expires_at:
            del self._entries[key]
            return None
        return entry

    async def incr(self, key: str) -> IncrementResult:
        entry = self._live(key)
        created = entry is None
        if entry is None:
            self._sweep()
            entry = _Entry()
            self._entries[key] = entry
        entry.count += 1
        return IncrementResult(count=entry.count, is_new_window=created)

    async def expire(self, key: str, seconds: int) -> None:
        entry = self._live(key)
        if entry is None:
            return
        if seconds <= 0:
            del self._entries[key]
            return
        entry.expires_at = self._clock() + seconds

    async def ttl(self, key: str) -> int:
        entry = self._live(key)
        if entry is None:
            return TTL_MISSING
        if entry.expires_at is None:
            return TTL_NO_EXPIRY
        return int(math.ceil(entry.expires_at - self._clock()))

    async def get(self, key: str) -> Optional[int]:
        entry = self._live(key)
        return None if entry is None else entry.count

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)
