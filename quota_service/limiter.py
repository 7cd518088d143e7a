"""Fixed-window rate limiter backed by an external counter store.

Every check performs one atomic increment against the store, sets the key's
expiry only when that increment opened a new window, and reads the TTL back
so the reported reset time follows the store's clock rather than ours.

Store outages never surface as exceptions. They are turned into a verdict by
the ``DegradationPolicy``: fail open outside production, fail closed in
production.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

from quota_service.config import MIN_WINDOW_MS
from quota_service.store import CounterStore, StoreError
from quota_service.telemetry import log_event


class InvalidLimitError(ValueError):
    """Raised when a limiter is called with a nonsensical limit or window."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(detail)


@dataclass
class RateLimitResult:
    """Verdict for one identifier in its current window."""

    allowed: bool
    remaining: int
    reset_time: int  # epoch milliseconds
    limit: int

    def headers(self) -> Dict[str, str]:
        """Standard ``X-RateLimit-*`` response headers."""
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_time),
        }


class DegradationMode(str, Enum):
    """What to answer when the counter store fails at runtime."""

    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"

    @classmethod
    def for_environment(cls, is_production: bool) -> "DegradationMode":
        return cls.FAIL_CLOSED if is_production else cls.FAIL_OPEN


@dataclass
class DegradationPolicy:
    """Translates a store failure into an allow/deny verdict."""

    mode: DegradationMode = DegradationMode.FAIL_OPEN

    def on_store_error(
        self,
        identifier: str,
        error: StoreError,
        limit: int,
        window_ms: int,
        now_ms: int,
    ) -> RateLimitResult:
        if self.mode == DegradationMode.FAIL_CLOSED:
            log_event(
                "store_error",
                identifier=identifier,
                outcome=self.mode.value,
                level=logging.ERROR,
                operation=error.operation,
                error=error.detail,
            )
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_time=now_ms + window_ms,
                limit=limit,
            )

        log_event(
            "store_error",
            identifier=identifier,
            outcome=self.mode.value,
            level=logging.WARNING,
            operation=error.operation,
            error=error.detail,
        )
        return RateLimitResult(
            allowed=True,
            remaining=limit,
            reset_time=now_ms + window_ms,
            limit=limit,
        )


def _validate(max_requests: int, window_ms: int) -> None:
    if max_requests <= 0:
        raise InvalidLimitError(
            "max_requests must be positive, got {}".format(max_requests)
        )
    if window_ms <= 0:
        raise InvalidLimitError("window_ms must be positive, got {}".format(window_ms))
    if window_ms < MIN_WINDOW_MS:
        raise InvalidLimitError(
            "window_ms must be at least {} (store expiry has one-second "
            "granularity), got {}".format(MIN_WINDOW_MS, window_ms)
        )


class RateLimiter:
    """Per-identifier fixed-window rate limiter.

    Holds no counters itself; all state lives in the counter store, so any
    number of worker processes can share one store without coordination.
    """

    def __init__(
        self,
        store: CounterStore,
        degradation: Optional[DegradationPolicy] = None,
        clock: Callable[[], float] = time.time,
        key_prefix: str = "rate-limit:",
    ) -> None:
        self.store = store
        self.degradation = degradation or DegradationPolicy()
        self.key_prefix = key_prefix
        self._clock = clock
        self._warned_unconfigured = False

    def key_for(self, identifier: str) -> str:
        return "{}{}".format(self.key_prefix, identifier)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _warn_unconfigured(self) -> None:
        if self._warned_unconfigured:
            return
        self._warned_unconfigured = True
        log_event(
            "store_unconfigured",
            outcome="rate_limiting_disabled",
            level=logging.WARNING,
            message="No counter store credentials configured; all requests are allowed.",
        )

    @staticmethod
    def _unrestricted(max_requests: int, window_ms: int, now_ms: int) -> RateLimitResult:
        return RateLimitResult(
            allowed=True,
            remaining=max_requests,
            reset_time=now_ms + window_ms,
            limit=max_requests,
        )

    async def check_rate_limit(
        self, identifier: str, max_requests: int, window_ms: int
    ) -> RateLimitResult:
        """Consume one unit for ``identifier`` and return the verdict.

        Args:
            identifier: Stable caller key, e.g. ``"ip:203.0.113.5"``.
            max_requests: Units allowed per window.
            window_ms: Window length in milliseconds.

        Returns:
            The verdict. Exceeding the limit is a normal ``allowed=False``
            result, never an exception.

        Raises:
            InvalidLimitError: If ``max_requests`` or ``window_ms`` is invalid.
        """
        _validate(max_requests, window_ms)
        now_ms = self._now_ms()

        if not self.store.configured:
            self._warn_unconfigured()
            return self._unrestricted(max_requests, window_ms, now_ms)

        key = self.key_for(identifier)
        try:
            hit = await self.store.incr(key)
            if hit.is_new_window:
                await self.store.expire(key, window_ms // 1000)
            ttl = await self.store.ttl(key)
        except StoreError as exc:
            return self.degradation.on_store_error(
                identifier, exc, max_requests, window_ms, now_ms
            )

        reset_time = now_ms + ttl * 1000 if ttl > 0 else now_ms + window_ms

        return RateLimitResult(
            allowed=hit.count <= max_requests,
            remaining=max(0, max_requests - hit.count),
            reset_time=reset_time,
            limit=max_requests,
        )

    async def get_rate_limit_status(
        self, identifier: str, max_requests: int, window_ms: int
    ) -> RateLimitResult:
        """Return the current verdict without consuming a unit.

        ``allowed`` answers whether the *next* request would be admitted.
        """
        _validate(max_requests, window_ms)
        now_ms = self._now_ms()

        if not self.store.configured:
            return self._unrestricted(max_requests, window_ms, now_ms)

        key = self.key_for(identifier)
        try:
            count = await self.store.get(key)
            if count is None:
                return self._unrestricted(max_requests, window_ms, now_ms)
            ttl = await self.store.ttl(key)
        except StoreError as exc:
            return self.degradation.on_store_error(
                identifier, exc, max_requests, window_ms, now_ms
            )

        reset_time = now_ms + ttl * 1000 if ttl > 0 else now_ms + window_ms

        return RateLimitResult(
            allowed=count < max_requests,
            remaining=max(0, max_requests - count),
            reset_time=reset_time,
            limit=max_requests,
        )

    async def reset_rate_limit(self, identifier: str) -> None:
        """Delete the counter for ``identifier``. Safe to call repeatedly."""
        if not self.store.configured:
            log_event(
                "rate_limit_reset",
                identifier=identifier,
                outcome="store_unconfigured",
                level=logging.WARNING,
            )
            return

        try:
            await self.store.delete(self.key_for(identifier))
        except StoreError as exc:
            log_event(
                "store_error",
                identifier=identifier,
                outcome="reset_failed",
                level=logging.ERROR,
                operation=exc.operation,
                error=exc.detail,
            )
            return

        log_event("rate_limit_reset", identifier=identifier, outcome="reset")
