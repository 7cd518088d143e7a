"""FastAPI application for the quota service.

Exposes the fixed-window rate limiter and the tier quota resolver over HTTP
for the image-transform routes that consume them:

1. Identify the caller (explicit identifier or proxy headers)
2. Consume one unit against the counter store
3. Answer 200 with ``X-RateLimit-*`` headers, or 429 RATE_LIMIT_EXCEEDED

Store outages are handled inside the limiter; this layer only turns
verdicts into responses.
"""

import math
import os
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from quota_service.auth import AuthenticationError, authorize_admin
from quota_service.config import QuotaConfig, load_config
from quota_service.identity import client_identifier, scoped_identifier, user_identifier
from quota_service.kv import build_store
from quota_service.limiter import (
    DegradationMode,
    DegradationPolicy,
    RateLimiter,
    RateLimitResult,
)
from quota_service.models import (
    ErrorCode,
    ErrorDetail,
    ErrorResponse,
    QuotaCheckRequest,
    RateLimitInfo,
    TierInfo,
    UsageRecordModel,
    UsageVerdictResponse,
)
from quota_service.telemetry import log_event, setup_logging
from quota_service.tiers import (
    TIER_POLICIES,
    Tier,
    TierPolicy,
    limit_display_text,
    load_tier_policies,
)
from quota_service.usage import UsageRecord, evaluate_usage

CONFIG_PATH = os.getenv("QUOTA_CONFIG", "config/example.config.json")

_config: Optional[QuotaConfig] = None
_limiter: Optional[RateLimiter] = None
_tier_policies: Optional[Dict[Tier, TierPolicy]] = None


def get_config() -> QuotaConfig:
    """Return the loaded quota configuration (lazy-init)."""
    global _config
    if _config is None:
        _config = load_config(CONFIG_PATH)
    return _config


def get_limiter() -> RateLimiter:
    """Return the rate limiter (lazy-init from config).

    The degradation mode is fixed here, once, from the declared environment.
    """
    global _limiter
    if _limiter is None:
        cfg = get_config()
        mode = DegradationMode.for_environment(cfg.is_production)
        _limiter = RateLimiter(
            store=build_store(cfg.store),
            degradation=DegradationPolicy(mode),
            key_prefix=cfg.rate_limit.key_prefix,
        )
        log_event(
            "limiter_initialized",
            outcome=mode.value,
            environment=cfg.runtime_environment,
            backend=cfg.store.backend,
            store_configured=_limiter.store.configured,
        )
    return _limiter


def get_tier_policies() -> Dict[Tier, TierPolicy]:
    """Return the tier table (lazy-init from config)."""
    global _tier_policies
    if _tier_policies is None:
        cfg = get_config()
        if cfg.tier_file:
            _tier_policies = load_tier_policies(cfg.tier_file)
        else:
            _tier_policies = dict(TIER_POLICIES)
    return _tier_policies


@asynccontextmanager
async def lifespan(application: FastAPI) -> AsyncIterator[None]:
    """Initialize config, logging, limiter, and tier table on startup."""
    cfg = get_config()
    setup_logging(cfg.log_file)
    limiter = get_limiter()
    get_tier_policies()
    yield
    await limiter.store.close()


app = FastAPI(title="PicForge Quota Service", version="0.1.0", lifespan=lifespan)


def _error_response(
    status: int,
    code: ErrorCode,
    message: str,
    details: Optional[Dict] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body = ErrorResponse(error=ErrorDetail(code=code, message=message), details=details)
    return JSONResponse(
        status_code=status, content=body.model_dump(mode="json"), headers=headers
    )


def _rate_limit_info(identifier: str, result: RateLimitResult) -> RateLimitInfo:
    return RateLimitInfo(
        identifier=identifier,
        allowed=result.allowed,
        remaining=result.remaining,
        reset_time=result.reset_time,
        limit=result.limit,
    )


def _rate_limited_response(result: RateLimitResult) -> JSONResponse:
    """429 with the standard rate-limit headers and a Retry-After hint."""
    headers = result.headers()
    retry_after = max(0, math.ceil((result.reset_time - time.time() * 1000) / 1000))
    headers["Retry-After"] = str(retry_after)
    return _error_response(
        429,
        ErrorCode.RATE_LIMIT_EXCEEDED,
        "Rate limit exceeded. Please try again later.",
        details={"reset_time": result.reset_time, "limit": result.limit},
        headers=headers,
    )


def _resolve_scope(scope: Optional[str]) -> Optional[JSONResponse]:
    """Return an error response if ``scope`` is not configured."""
    if scope is not None and scope not in get_config().rate_limit.scopes:
        return _error_response(
            400, ErrorCode.INVALID_INPUT, "Unknown rate-limit scope '{}'.".format(scope)
        )
    return None


def _tier_info(policy: TierPolicy, policies: Dict[Tier, TierPolicy]) -> TierInfo:
    return TierInfo(
        tier=policy.tier,
        display_name=policy.display_name,
        daily_limit=policy.daily_limit,
        monthly_limit=policy.monthly_limit,
        batch_size_cap=policy.batch_size_cap,
        watermark_required=policy.watermark_required,
        priority_queue=policy.priority_queue,
        api_access=policy.api_access,
        price_monthly=policy.price_monthly,
        price_yearly=policy.price_yearly,
        features=list(policy.features),
        limit_display=limit_display_text(policy.tier, policies),
    )


@app.post("/v1/quota/check", response_model=None)
async def check_quota(
    request: Request, body: Optional[QuotaCheckRequest] = None
) -> JSONResponse:
    """Consume one unit of quota for the caller."""
    body = body or QuotaCheckRequest()
    error = _resolve_scope(body.scope)
    if error is not None:
        return error

    config = get_config()
    limiter = get_limiter()
    max_requests, window_ms = config.rate_limit.limits_for(body.scope)
    identifier = scoped_identifier(
        body.scope, body.identifier or client_identifier(request.headers)
    )

    result = await limiter.check_rate_limit(identifier, max_requests, window_ms)

    log_event(
        "rate_limit_check",
        identifier=identifier,
        outcome="allowed" if result.allowed else "denied",
        remaining=result.remaining,
        limit=result.limit,
    )

    if not result.allowed:
        return _rate_limited_response(result)

    info = _rate_limit_info(identifier, result)
    return JSONResponse(
        status_code=200, content=info.model_dump(mode="json"), headers=result.headers()
    )


@app.get("/v1/quota/status", response_model=None)
async def quota_status(
    request: Request,
    identifier: Optional[str] = None,
    scope: Optional[str] = None,
) -> JSONResponse:
    """Report the caller's current window without consuming quota."""
    error = _resolve_scope(scope)
    if error is not None:
        return error

    config = get_config()
    limiter = get_limiter()
    max_requests, window_ms = config.rate_limit.limits_for(scope)
    resolved = scoped_identifier(scope, identifier or client_identifier(request.headers))

    result = await limiter.get_rate_limit_status(resolved, max_requests, window_ms)

    info = _rate_limit_info(resolved, result)
    return JSONResponse(
        status_code=200, content=info.model_dump(mode="json"), headers=result.headers()
    )


@app.delete("/v1/quota/{identifier}", response_model=None)
async def reset_quota(
    identifier: str,
    scope: Optional[str] = None,
    x_api_key: Optional[str] = Header(default=None),
) -> Response:
    """Administrative reset of one identifier's window."""
    config = get_config()

    if config.auth.enabled:
        try:
            key_name = authorize_admin(x_api_key, config.auth.api_keys)
        except AuthenticationError as exc:
            log_event("rate_limit_reset", identifier=identifier, outcome="unauthorized")
            return _error_response(401, ErrorCode.UNAUTHORIZED, exc.detail)
    else:
        key_name = None

    error = _resolve_scope(scope)
    if error is not None:
        return error

    resolved = scoped_identifier(scope, identifier)
    await get_limiter().reset_rate_limit(resolved)
    log_event("admin_reset", identifier=resolved, outcome="ok", admin=key_name)
    return Response(status_code=204)


@app.get("/v1/tiers", response_model=None)
async def list_tiers() -> JSONResponse:
    """Return the full tier table."""
    policies = get_tier_policies()
    tiers: List[Dict] = [
        _tier_info(policy, policies).model_dump(mode="json")
        for policy in policies.values()
    ]
    return JSONResponse(status_code=200, content={"tiers": tiers})


@app.get("/v1/tiers/{tier}", response_model=None)
async def get_tier(tier: str) -> JSONResponse:
    """Return one tier's limits and feature flags."""
    policies = get_tier_policies()
    try:
        resolved = Tier(tier)
    except ValueError:
        return _error_response(404, ErrorCode.NOT_FOUND, "Unknown tier '{}'.".format(tier))

    info = _tier_info(policies[resolved], policies)
    return JSONResponse(status_code=200, content=info.model_dump(mode="json"))


@app.post("/v1/usage/evaluate", response_model=None)
async def evaluate_user_usage(body: UsageRecordModel) -> JSONResponse:
    """Check a user's tier allowance after rolling over expired periods.

    The returned ``usage`` reflects any period rollover; persisting it is
    the caller's job.
    """
    policies = get_tier_policies()
    record = UsageRecord(
        user_id=body.user_id,
        tier=body.tier or Tier.FREE,
        count=body.count,
        monthly_count=body.monthly_count,
        last_reset=body.last_reset,
        last_monthly_reset=body.last_monthly_reset,
    )
    verdict = evaluate_usage(record, time.time() * 1000, policies)

    log_event(
        "tier_quota_check",
        identifier=user_identifier(record.user_id),
        outcome="exceeded" if verdict.reached_limit else "ok",
        tier=record.tier.value,
        remaining=verdict.remaining,
    )

    refreshed = verdict.record
    usage = UsageRecordModel(
        user_id=refreshed.user_id,
        tier=refreshed.tier,
        count=refreshed.count,
        monthly_count=refreshed.monthly_count,
        last_reset=refreshed.last_reset,
        last_monthly_reset=refreshed.last_monthly_reset,
    )

    if verdict.reached_limit:
        return _error_response(
            429,
            ErrorCode.QUOTA_EXCEEDED,
            "{} quota exceeded ({}). Please upgrade your plan or wait for reset.".format(
                policies[record.tier].display_name,
                limit_display_text(record.tier, policies),
            ),
            details={"tier": record.tier.value, "usage": usage.model_dump(mode="json")},
        )

    response = UsageVerdictResponse(
        tier=record.tier,
        reached_limit=False,
        remaining=verdict.remaining,
        usage=usage,
    )
    return JSONResponse(status_code=200, content=response.model_dump(mode="json"))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Convert FastAPI's validation errors into our error envelope format."""
    return _error_response(
        422,
        ErrorCode.INVALID_INPUT,
        "Request validation failed.",
        details={"errors": jsonable_encoder(exc.errors())},
    )
