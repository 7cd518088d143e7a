"""Request and response models for the quota service HTTP layer."""

from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from quota_service.tiers import Tier


class ErrorCode(str, Enum):
    """Machine-readable error codes shared with the consuming application."""

    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    UNAUTHORIZED = "UNAUTHORIZED"
    INVALID_INPUT = "INVALID_INPUT"
    NOT_FOUND = "NOT_FOUND"


class QuotaCheckRequest(BaseModel):
    """Body of a quota check; both fields are optional."""

    identifier: Optional[str] = Field(
        default=None,
        min_length=1,
        description="Caller identifier; derived from proxy headers when omitted",
    )
    scope: Optional[str] = Field(
        default=None, min_length=1, description="Named limit scope (e.g. a route)"
    )


class RateLimitInfo(BaseModel):
    """Rate-limit verdict for one identifier."""

    identifier: str
    allowed: bool
    remaining: int
    reset_time: int = Field(..., description="Window reset, epoch milliseconds")
    limit: int


class TierInfo(BaseModel):
    """Public view of a tier policy."""

    tier: Tier
    display_name: str
    daily_limit: Optional[int] = None
    monthly_limit: Optional[int] = None
    batch_size_cap: int
    watermark_required: bool
    priority_queue: bool
    api_access: bool
    price_monthly: int = 0
    price_yearly: int = 0
    features: List[str] = Field(default_factory=list)
    limit_display: str


class UsageRecordModel(BaseModel):
    """A user's usage counters as stored by the calling application."""

    user_id: str = Field(..., min_length=1)
    tier: Optional[Tier] = None
    count: int = Field(default=0, ge=0)
    monthly_count: int = Field(default=0, ge=0)
    last_reset: Optional[float] = None
    last_monthly_reset: Optional[float] = None


class UsageVerdictResponse(BaseModel):
    """Tier allowance after rolling over expired periods."""

    tier: Tier
    reached_limit: bool
    remaining: Union[int, str]
    usage: UsageRecordModel


class ErrorDetail(BaseModel):
    """Structured error detail."""

    code: ErrorCode
    message: str


class ErrorResponse(BaseModel):
    """Error response envelope."""

    error: ErrorDetail
    details: Optional[Dict[str, Any]] = None
