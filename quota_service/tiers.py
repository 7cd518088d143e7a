"""Subscription tiers and tier-aware quota resolution.

The built-in table is the single source of truth for per-tier ceilings and
feature flags. Free accounts are metered per day, paid tiers per calendar
month, and the unlimited tier has no ceiling at all.

Tables can be overridden from a YAML file, e.g.::

    tiers:
      starter:
        monthly_limit: 150
        batch_size_cap: 25
"""

from dataclasses import dataclass, fields, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import yaml

DAY_MS = 24 * 60 * 60 * 1000

UNLIMITED = "unlimited"


class Tier(str, Enum):
    """Subscription level."""

    FREE = "free"
    STARTER = "starter"
    CREATOR = "creator"
    PRO = "pro"
    UNLIMITED = "unlimited"


class PeriodKind(str, Enum):
    """Accounting period used by a usage counter."""

    DAILY = "daily"
    MONTHLY = "monthly"


@dataclass(frozen=True)
class TierPolicy:
    """Limits and feature flags for a single tier."""

    tier: Tier
    display_name: str
    daily_limit: Optional[int]
    monthly_limit: Optional[int]
    batch_size_cap: int
    watermark_required: bool
    priority_queue: bool
    api_access: bool
    price_monthly: int = 0
    price_yearly: int = 0
    features: Tuple[str, ...] = ()

    @property
    def period(self) -> Optional[PeriodKind]:
        """The accounting period this tier is metered by (None = no ceiling)."""
        if self.daily_limit is not None:
            return PeriodKind.DAILY
        if self.monthly_limit is not None:
            return PeriodKind.MONTHLY
        return None


TIER_POLICIES: Dict[Tier, TierPolicy] = {
    Tier.FREE: TierPolicy(
        tier=Tier.FREE,
        display_name="Free",
        daily_limit=10,
        monthly_limit=None,
        batch_size_cap=5,
        watermark_required=True,
        priority_queue=False,
        api_access=False,
        features=("10 images/day", "Basic batch (5 images)"),
    ),
    Tier.STARTER: TierPolicy(
        tier=Tier.STARTER,
        display_name="Starter",
        daily_limit=None,
        monthly_limit=100,
        batch_size_cap=20,
        watermark_required=False,
        priority_queue=False,
        api_access=False,
        price_monthly=7,
        price_yearly=59,
        features=("100 images/month", "Batch up to 20 images", "No watermark"),
    ),
    Tier.CREATOR: TierPolicy(
        tier=Tier.CREATOR,
        display_name="Creator",
        daily_limit=None,
        monthly_limit=500,
        batch_size_cap=50,
        watermark_required=False,
        priority_queue=True,
        api_access=False,
        price_monthly=19,
        price_yearly=159,
        features=(
            "500 images/month",
            "Batch up to 50 images",
            "No watermark",
            "Priority queue",
        ),
    ),
    Tier.PRO: TierPolicy(
        tier=Tier.PRO,
        display_name="Pro",
        daily_limit=None,
        monthly_limit=2000,
        batch_size_cap=100,
        watermark_required=False,
        priority_queue=True,
        api_access=False,
        price_monthly=39,
        price_yearly=329,
        features=(
            "2,000 images/month",
            "Batch up to 100 images",
            "No watermark",
            "Priority queue",
        ),
    ),
    Tier.UNLIMITED: TierPolicy(
        tier=Tier.UNLIMITED,
        display_name="Unlimited",
        daily_limit=None,
        monthly_limit=None,
        batch_size_cap=200,
        watermark_required=False,
        priority_queue=True,
        api_access=True,
        price_monthly=79,
        price_yearly=669,
        features=(
            "Unlimited images",
            "Batch up to 200 images",
            "No watermark",
            "Priority queue",
            "API access",
        ),
    ),
}

TierLike = Union[Tier, str, None]
Policies = Mapping[Tier, TierPolicy]


def _validate_policy(policy: TierPolicy) -> None:
    """Enforce exactly one accounting mode per tier."""
    if policy.tier == Tier.UNLIMITED:
        if policy.daily_limit is not None or policy.monthly_limit is not None:
            raise ValueError("The unlimited tier cannot carry a daily or monthly limit")
        return

    if policy.tier == Tier.FREE:
        if policy.daily_limit is None or policy.monthly_limit is not None:
            raise ValueError("The free tier must use a daily limit only")
    elif policy.monthly_limit is None or policy.daily_limit is not None:
        raise ValueError(
            "Paid tier '{}' must use a monthly limit only".format(policy.tier.value)
        )

    for name in ("daily_limit", "monthly_limit"):
        value = getattr(policy, name)
        if value is not None and value < 0:
            raise ValueError("{} for tier '{}' must be >= 0".format(name, policy.tier.value))


def load_tier_policies(path: Union[str, Path]) -> Dict[Tier, TierPolicy]:
    """Load tier overrides from a YAML file on top of the built-in table.

    Args:
        path: Path to the YAML tier file.

    Returns:
        A complete tier table.

    Raises:
        FileNotFoundError: If the tier file does not exist.
        ValueError: If the YAML is invalid or names an unknown tier/field.
    """
    tier_path = Path(path)
    if not tier_path.exists():
        raise FileNotFoundError("Tier file not found: {}".format(path))

    with open(tier_path, "r") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ValueError("Tier file must contain a YAML mapping at the top level")

    allowed = {f.name for f in fields(TierPolicy)} - {"tier"}
    policies = dict(TIER_POLICIES)

    for name, overrides in (raw.get("tiers") or {}).items():
        try:
            tier = Tier(name)
        except ValueError:
            raise ValueError("Unknown tier '{}' in {}".format(name, path)) from None

        if not isinstance(overrides, dict):
            raise ValueError("Tier '{}' must map to a YAML mapping".format(name))

        unknown = set(overrides) - allowed
        if unknown:
            raise ValueError(
                "Unknown field(s) for tier '{}': {}".format(name, ", ".join(sorted(unknown)))
            )

        values: Dict[str, Any] = dict(overrides)
        if "features" in values:
            values["features"] = tuple(values["features"] or ())
        policies[tier] = replace(policies[tier], **values)

    for policy in policies.values():
        _validate_policy(policy)

    return policies


def _as_tier(tier: TierLike) -> Tier:
    if tier is None or tier == "":
        return Tier.FREE
    return Tier(tier)


def get_tier_policy(tier: TierLike, policies: Optional[Policies] = None) -> TierPolicy:
    """Return the policy for a tier; an absent tier means free."""
    return (policies or TIER_POLICIES)[_as_tier(tier)]


def has_reached_limit(
    tier: TierLike,
    daily_count: int,
    monthly_count: int,
    policies: Optional[Policies] = None,
) -> bool:
    """Return True if the caller has used up their tier's allowance."""
    resolved = _as_tier(tier)
    policy = get_tier_policy(resolved, policies)

    if resolved == Tier.FREE:
        return policy.daily_limit is not None and daily_count >= policy.daily_limit

    if resolved == Tier.UNLIMITED:
        return False

    return policy.monthly_limit is not None and monthly_count >= policy.monthly_limit


def remaining_units(
    tier: TierLike,
    daily_count: int,
    monthly_count: int,
    policies: Optional[Policies] = None,
) -> Union[int, str]:
    """Return units left in the current period, or ``UNLIMITED``."""
    resolved = _as_tier(tier)
    policy = get_tier_policy(resolved, policies)

    if resolved == Tier.UNLIMITED:
        return UNLIMITED

    if resolved == Tier.FREE:
        return max(0, (policy.daily_limit or 0) - daily_count)

    return max(0, (policy.monthly_limit or 0) - monthly_count)


def needs_period_reset(
    last_reset_ms: Optional[float],
    period: Union[PeriodKind, str],
    now_ms: Optional[float] = None,
) -> bool:
    """Return True if a usage counter for ``period`` should roll over.

    Daily counters roll over once strictly more than 24 hours have elapsed.
    Monthly counters roll over when the local calendar month or year changes,
    regardless of how many days have passed.
    """
    if not last_reset_ms:
        return True

    if now_ms is None:
        now_ms = datetime.now().timestamp() * 1000

    if PeriodKind(period) == PeriodKind.DAILY:
        return now_ms - last_reset_ms > DAY_MS

    last = datetime.fromtimestamp(last_reset_ms / 1000)
    now = datetime.fromtimestamp(now_ms / 1000)
    return last.month != now.month or last.year != now.year


def batch_limit(tier: TierLike, policies: Optional[Policies] = None) -> int:
    return get_tier_policy(tier, policies).batch_size_cap


def requires_watermark(tier: TierLike, policies: Optional[Policies] = None) -> bool:
    return get_tier_policy(tier, policies).watermark_required


def has_priority_queue(tier: TierLike, policies: Optional[Policies] = None) -> bool:
    return get_tier_policy(tier, policies).priority_queue


def has_api_access(tier: TierLike, policies: Optional[Policies] = None) -> bool:
    return get_tier_policy(tier, policies).api_access


def is_paid_tier(tier: TierLike) -> bool:
    return _as_tier(tier) != Tier.FREE


def limit_display_text(tier: TierLike, policies: Optional[Policies] = None) -> str:
    """Short human-readable allowance, e.g. ``"10/day"``."""
    policy = get_tier_policy(tier, policies)

    if policy.period == PeriodKind.DAILY:
        return "{}/day".format(policy.daily_limit)
    if policy.period == PeriodKind.MONTHLY:
        return "{}/month".format(policy.monthly_limit)
    return "Unlimited"
