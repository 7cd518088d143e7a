"""Per-user usage records and their period bookkeeping.

The calling application owns persistence of ``UsageRecord``; everything here
is a pure function that returns a new record for the caller to save.
"""

from dataclasses import dataclass, replace
from typing import Optional, Union

from quota_service.tiers import (
    PeriodKind,
    Policies,
    Tier,
    has_reached_limit,
    needs_period_reset,
    remaining_units,
)


@dataclass
class UsageRecord:
    """Usage counters for one user."""

    user_id: str
    tier: Tier = Tier.FREE
    count: int = 0
    monthly_count: int = 0
    last_reset: Optional[float] = None  # epoch ms
    last_monthly_reset: Optional[float] = None  # epoch ms


@dataclass
class UsageVerdict:
    """Whether a user may generate more images in the current period."""

    reached_limit: bool
    remaining: Union[int, str]
    record: UsageRecord


def refresh_periods(record: UsageRecord, now_ms: float) -> UsageRecord:
    """Roll over any counter whose period has ended."""
    refreshed = record

    if needs_period_reset(record.last_reset, PeriodKind.DAILY, now_ms):
        refreshed = replace(refreshed, count=0, last_reset=now_ms)

    if needs_period_reset(record.last_monthly_reset, PeriodKind.MONTHLY, now_ms):
        refreshed = replace(refreshed, monthly_count=0, last_monthly_reset=now_ms)

    return refreshed


def record_usage(record: UsageRecord, now_ms: float, units: int = 1) -> UsageRecord:
    """Return ``record`` with ``units`` consumed in the current periods."""
    if units <= 0:
        raise ValueError("units must be positive, got {}".format(units))

    refreshed = refresh_periods(record, now_ms)
    return replace(
        refreshed,
        count=refreshed.count + units,
        monthly_count=refreshed.monthly_count + units,
    )


def evaluate_usage(
    record: UsageRecord,
    now_ms: float,
    policies: Optional[Policies] = None,
) -> UsageVerdict:
    """Check a user's allowance after rolling over expired periods."""
    refreshed = refresh_periods(record, now_ms)
    return UsageVerdict(
        reached_limit=has_reached_limit(
            refreshed.tier, refreshed.count, refreshed.monthly_count, policies
        ),
        remaining=remaining_units(
            refreshed.tier, refreshed.count, refreshed.monthly_count, policies
        ),
        record=refreshed,
    )
