"""Configuration loader for the quota service.

Reads a JSON config file containing the counter store backend, default and
per-scope rate-limit parameters, and admin auth settings. Store credentials
and the runtime environment name are resolved from environment variables.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

DAY_MS = 24 * 60 * 60 * 1000

# Store expiry has one-second granularity
MIN_WINDOW_MS = 1000

STORE_BACKENDS = ("memory", "kv_rest", "redis")


@dataclass
class StoreConfig:
    """Counter store backend and the env vars holding its credentials."""

    backend: str = "kv_rest"
    url_env: str = "KV_REST_API_URL"
    token_env: Optional[str] = "KV_REST_API_TOKEN"
    timeout_seconds: float = 5.0

    @property
    def url(self) -> Optional[str]:
        """Resolve the store URL from the environment variable."""
        return os.getenv(self.url_env)

    @property
    def token(self) -> Optional[str]:
        """Resolve the store token from the environment variable."""
        if not self.token_env:
            return None
        return os.getenv(self.token_env)

    @property
    def is_configured(self) -> bool:
        """Return True when every credential the backend needs is present."""
        if self.backend == "memory":
            return True
        if self.backend == "kv_rest":
            return bool(self.url) and bool(self.token)
        return bool(self.url)


@dataclass
class ScopeLimit:
    """Override of the default limit for one named scope (e.g. a route)."""

    max_requests: Optional[int] = None
    window_ms: Optional[int] = None


@dataclass
class RateLimitConfig:
    """Fixed-window rate-limit parameters (per identifier)."""

    max_requests: int = 500
    window_ms: int = DAY_MS
    key_prefix: str = "rate-limit:"
    scopes: Dict[str, ScopeLimit] = field(default_factory=dict)

    def limits_for(self, scope: Optional[str] = None) -> Tuple[int, int]:
        """Return ``(max_requests, window_ms)`` for a scope.

        Raises:
            KeyError: If the scope is not configured.
        """
        if scope is None:
            return self.max_requests, self.window_ms

        override = self.scopes[scope]
        return (
            override.max_requests or self.max_requests,
            override.window_ms or self.window_ms,
        )


@dataclass
class AuthConfig:
    """Admin API key configuration for destructive endpoints."""

    enabled: bool = False
    api_keys: Dict[str, str] = field(default_factory=dict)  # key_name -> sha256_hash


@dataclass
class QuotaConfig:
    """Top-level quota service configuration."""

    store: StoreConfig = field(default_factory=StoreConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    environment: Optional[str] = None
    environment_env: str = "QUOTA_ENV"
    tier_file: Optional[str] = None
    log_file: Optional[str] = "logs/quota.log"

    @property
    def runtime_environment(self) -> str:
        """The declared runtime environment name, lower-cased."""
        name = self.environment or os.getenv(self.environment_env) or "development"
        return name.strip().lower()

    @property
    def is_production(self) -> bool:
        return self.runtime_environment == "production"


def _positive_int(raw: Dict[str, Any], key: str, default: Optional[int]) -> Optional[int]:
    value = raw.get(key, default)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError("'{}' must be a positive integer, got {!r}".format(key, value))
    return value


def _window_ms(raw: Dict[str, Any], default: Optional[int]) -> Optional[int]:
    value = _positive_int(raw, "window_ms", default)
    if value is not None and value < MIN_WINDOW_MS:
        raise ValueError(
            "'window_ms' must be at least {}, got {}".format(MIN_WINDOW_MS, value)
        )
    return value


def load_config(path: Union[str, Path]) -> QuotaConfig:
    """Load quota service configuration from a JSON file.

    Args:
        path: Path to the JSON config file.

    Returns:
        A fully resolved QuotaConfig instance.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ValueError: If the config file contains invalid data.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw: Dict[str, Any] = json.load(f)

    store_raw = raw.get("store", {})
    store = StoreConfig(
        backend=store_raw.get("backend", "kv_rest"),
        url_env=store_raw.get("url_env", "KV_REST_API_URL"),
        token_env=store_raw.get("token_env", "KV_REST_API_TOKEN"),
        timeout_seconds=float(store_raw.get("timeout_seconds", 5.0)),
    )
    if store.backend not in STORE_BACKENDS:
        raise ValueError(
            "Unknown store backend '{}'. Expected one of: {}".format(
                store.backend, ", ".join(STORE_BACKENDS)
            )
        )

    rate_limit_raw = raw.get("rate_limit", {})
    scopes: Dict[str, ScopeLimit] = {}
    for name, scope_raw in rate_limit_raw.get("scopes", {}).items():
        scopes[name] = ScopeLimit(
            max_requests=_positive_int(scope_raw, "max_requests", None),
            window_ms=_window_ms(scope_raw, None),
        )

    rate_limit = RateLimitConfig(
        max_requests=_positive_int(rate_limit_raw, "max_requests", 500),
        window_ms=_window_ms(rate_limit_raw, DAY_MS),
        key_prefix=rate_limit_raw.get("key_prefix", "rate-limit:"),
        scopes=scopes,
    )

    auth_raw = raw.get("auth", {})
    auth = AuthConfig(
        enabled=auth_raw.get("enabled", False),
        api_keys=auth_raw.get("api_keys", {}),
    )

    return QuotaConfig(
        store=store,
        rate_limit=rate_limit,
        auth=auth,
        environment=raw.get("environment"),
        environment_env=raw.get("environment_env", "QUOTA_ENV"),
        tier_file=raw.get("tier_file"),
        log_file=raw.get("log_file", "logs/quota.log"),
    )
