"""
Entitlement Checks

Pure functions comparing usage against plan limits, plus the access check
used to gate paid features.

Percentages are rounded half-up on the exact ratio (``Fraction``), so the
80% warning threshold behaves the same for every input regardless of float
representation: 159/200 is 79.5% and reports as 80.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from fractions import Fraction
from typing import Optional

from app.domain.subscription import (
    Amount,
    SubscriptionData,
    SubscriptionStatus,
    UsageResource,
    is_after,
)
from app.infrastructure.exceptions import ValidationError


APPROACHING_LIMIT_PERCENT = 80


def _check_amount(name: str, value: Amount) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{name} must be a number", {name: repr(value)})
    if not math.isfinite(value) or value < 0:
        raise ValidationError(
            f"{name} must be a finite non-negative number", {name: value}
        )


def has_exceeded_limit(current: Amount, limit: Amount) -> bool:
    """True once ``current`` has reached ``limit``; a zero limit is always exceeded."""
    _check_amount("current", current)
    _check_amount("limit", limit)
    return current >= limit


def usage_percentage(current: Amount, limit: Amount) -> int:
    """Whole-number percentage of ``limit`` used, capped at 100. Zero limits read as full."""
    _check_amount("current", current)
    _check_amount("limit", limit)
    if limit == 0:
        return 100
    ratio = Fraction(current) * 100 / Fraction(limit)
    return min(math.floor(ratio + Fraction(1, 2)), 100)


def is_approaching_limit(current: Amount, limit: Amount) -> bool:
    return usage_percentage(current, limit) >= APPROACHING_LIMIT_PERCENT


# =============================================================================
# Usage Summary
# =============================================================================

@dataclass(frozen=True)
class ResourceUsage:
    """Usage of one metered resource against its limit."""
    resource: UsageResource
    used: Amount
    limit: Amount

    @property
    def remaining(self) -> Amount:
        return max(0, self.limit - self.used)

    @property
    def percent_used(self) -> int:
        return usage_percentage(self.used, self.limit)

    @property
    def approaching_limit(self) -> bool:
        return is_approaching_limit(self.used, self.limit)

    @property
    def exceeded(self) -> bool:
        return has_exceeded_limit(self.used, self.limit)


def resource_usage(sub: SubscriptionData, resource: UsageResource) -> ResourceUsage:
    return ResourceUsage(
        resource=resource,
        used=sub.usage.used_for(resource),
        limit=sub.limits.limit_for(resource),
    )


def usage_summary(sub: SubscriptionData) -> dict[UsageResource, ResourceUsage]:
    """
    Per-resource usage for display.

    Callers should reconcile the subscription first so the AI chat counter
    reflects the current month.
    """
    return {resource: resource_usage(sub, resource) for resource in UsageResource}


# =============================================================================
# Access Control
# =============================================================================

ACCESS_DENIED_MESSAGES = {
    "not_authenticated": "Please log in to continue.",
    "no_subscription": "You need an active subscription to access this feature.",
    "subscription_canceled": "Your subscription has been canceled. Please reactivate to continue.",
    "subscription_past_due": "Your subscription payment is past due. Please update your payment method.",
    "subscription_expired": "Your subscription has expired. Please renew to continue.",
}

DEFAULT_ACCESS_DENIED_MESSAGE = (
    "Access denied. Please contact support if you believe this is an error."
)


@dataclass(frozen=True)
class AccessCheckResult:
    has_access: bool
    reason: Optional[str] = None


def check_subscription_access(sub: SubscriptionData, now: datetime) -> AccessCheckResult:
    """
    Decide whether a subscription grants paid-feature access.

    Only ``active`` subscriptions qualify, and only until ``current_period_end``
    when one is recorded.
    """
    if sub.status == SubscriptionStatus.NONE:
        return AccessCheckResult(False, "no_subscription")

    if sub.status != SubscriptionStatus.ACTIVE:
        return AccessCheckResult(False, f"subscription_{sub.status.value}")

    if sub.current_period_end is not None and is_after(now, sub.current_period_end):
        return AccessCheckResult(False, "subscription_expired")

    return AccessCheckResult(True)


def access_denied_message(reason: Optional[str]) -> str:
    """User-facing text for an access denial reason."""
    return ACCESS_DENIED_MESSAGES.get(reason, DEFAULT_ACCESS_DENIED_MESSAGE)
