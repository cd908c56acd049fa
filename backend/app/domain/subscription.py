"""
Subscription Domain Models

Domain models for plan entitlements and usage accounting.
Enums, value records, plan constants and the pure lifecycle functions
(default, resolve, monthly reconcile) for the subscription bounded context.

A subscription is stored as one JSON object under the ``subscription`` key of
the user's preference document. Wire keys are camelCase; Python attributes
are snake_case.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from app.infrastructure.exceptions import CorruptPreferenceDataError


PREFERENCE_KEY = "subscription"

Amount = Union[int, float]


class SubscriptionStatus(str, Enum):
    """Billing state, written by billing webhook handlers."""
    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    NONE = "none"


class UsageResource(str, Enum):
    """Metered resources. Values double as API path segments."""
    INSTITUTION_CONNECTIONS = "institutionConnections"
    STORAGE_GB = "storageGB"
    AI_CHAT_MESSAGES = "aiChatMessages"

    @property
    def usage_field(self) -> str:
        """Name of the SubscriptionUsage attribute counting this resource."""
        return _USAGE_FIELDS[self]

    @property
    def is_monthly(self) -> bool:
        return self == UsageResource.AI_CHAT_MESSAGES

    @property
    def is_fractional(self) -> bool:
        return self == UsageResource.STORAGE_GB


_USAGE_FIELDS = {
    UsageResource.INSTITUTION_CONNECTIONS: "institution_connections",
    UsageResource.STORAGE_GB: "storage_gb",
    UsageResource.AI_CHAT_MESSAGES: "ai_chat_messages_this_month",
}


# =============================================================================
# Domain Entities
# =============================================================================

class _Record(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class SubscriptionLimits(_Record):
    """Plan ceilings."""
    institution_connections: int = Field(ge=0, alias="institutionConnections")
    storage_gb: float = Field(ge=0, allow_inf_nan=False, alias="storageGB")
    ai_chat_messages_per_month: int = Field(ge=0, alias="aiChatMessagesPerMonth")

    def limit_for(self, resource: UsageResource) -> Amount:
        if resource == UsageResource.INSTITUTION_CONNECTIONS:
            return self.institution_connections
        if resource == UsageResource.STORAGE_GB:
            return self.storage_gb
        return self.ai_chat_messages_per_month


class SubscriptionUsage(_Record):
    """
    Consumption counters.

    Institution connections and storage mirror live counts and are never
    reset. AI chat messages are counted per month and reset lazily once
    ``ai_chat_messages_reset_date`` has passed.
    """
    institution_connections: int = Field(default=0, ge=0, alias="institutionConnections")
    storage_gb: float = Field(default=0, ge=0, allow_inf_nan=False, alias="storageGB")
    ai_chat_messages_this_month: int = Field(default=0, ge=0, alias="aiChatMessagesThisMonth")
    ai_chat_messages_reset_date: datetime = Field(alias="aiChatMessagesResetDate")

    def used_for(self, resource: UsageResource) -> Amount:
        return getattr(self, resource.usage_field)


class SubscriptionData(_Record):
    """Per-user aggregate of billing state, limits and usage."""
    status: SubscriptionStatus = SubscriptionStatus.NONE
    stripe_customer_id: Optional[str] = Field(default=None, alias="stripeCustomerId")
    stripe_subscription_id: Optional[str] = Field(default=None, alias="stripeSubscriptionId")
    current_period_end: Optional[datetime] = Field(default=None, alias="currentPeriodEnd")
    limits: SubscriptionLimits
    usage: SubscriptionUsage

    def with_usage(self, resource: UsageResource, value: Amount) -> "SubscriptionData":
        """Copy with one usage counter replaced."""
        return self.model_copy(
            update={"usage": self.usage.model_copy(update={resource.usage_field: value})}
        )

    def to_preference(self) -> dict[str, Any]:
        """Serialize to the JSON shape stored under the preference key."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# =============================================================================
# Plan Configuration (Business Logic)
# =============================================================================

# No subscription: no banks, no uploads, enough AI messages to try the app
FREE_TIER_LIMITS = SubscriptionLimits(
    institution_connections=0,
    storage_gb=0,
    ai_chat_messages_per_month=30,
)

BASE_PLAN_LIMITS = SubscriptionLimits(
    institution_connections=3,
    storage_gb=10,
    ai_chat_messages_per_month=5000,
)


def limits_for_status(status: SubscriptionStatus) -> SubscriptionLimits:
    """Plan limits implied by a billing status. Only active plans are paid."""
    if status == SubscriptionStatus.ACTIVE:
        return BASE_PLAN_LIMITS
    return FREE_TIER_LIMITS


# =============================================================================
# Lifecycle
# =============================================================================

def _local_now() -> datetime:
    return datetime.now().astimezone()


def next_reset_date(now: datetime) -> datetime:
    """Midnight on the first day of the month after ``now``, in ``now``'s zone."""
    if now.month == 12:
        year, month = now.year + 1, 1
    else:
        year, month = now.year, now.month + 1
    return now.replace(
        year=year, month=month, day=1,
        hour=0, minute=0, second=0, microsecond=0, fold=0,
    )


def is_after(now: datetime, instant: datetime) -> bool:
    # A naive value is read in the other operand's timezone.
    if (now.tzinfo is None) != (instant.tzinfo is None):
        if now.tzinfo is None:
            now = now.replace(tzinfo=instant.tzinfo)
        else:
            instant = instant.replace(tzinfo=now.tzinfo)
    return now > instant


def default_subscription(now: Optional[datetime] = None) -> SubscriptionData:
    """Free-tier subscription for a user with nothing stored."""
    now = now or _local_now()
    return SubscriptionData(
        status=SubscriptionStatus.NONE,
        limits=FREE_TIER_LIMITS,
        usage=SubscriptionUsage(
            institution_connections=0,
            storage_gb=0,
            ai_chat_messages_this_month=0,
            ai_chat_messages_reset_date=next_reset_date(now),
        ),
    )


def resolve_subscription(
    stored_preferences: Optional[Mapping[str, Any]],
    now: Optional[datetime] = None,
) -> SubscriptionData:
    """
    Interpret a user's preference document as subscription data.

    Args:
        stored_preferences: The whole preference document, or None
        now: Clock used when the free-tier default has to be built

    Returns:
        The stored subscription, or the free-tier default when absent

    Raises:
        CorruptPreferenceDataError: A subscription value is present but
            does not match the schema
    """
    if not stored_preferences:
        return default_subscription(now)

    if not isinstance(stored_preferences, Mapping):
        raise CorruptPreferenceDataError(
            f"Preference document must be an object, got {type(stored_preferences).__name__}"
        )

    raw = stored_preferences.get(PREFERENCE_KEY)
    if not raw:
        return default_subscription(now)

    try:
        if isinstance(raw, (str, bytes)):
            return SubscriptionData.model_validate_json(raw)
        if not isinstance(raw, Mapping):
            raise CorruptPreferenceDataError(
                f"Stored subscription must be an object, got {type(raw).__name__}"
            )
        return SubscriptionData.model_validate(raw)
    except PydanticValidationError as e:
        errors = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ]
        raise CorruptPreferenceDataError(
            "Stored subscription data is malformed",
            errors=errors,
            original_error=e,
        )


def reconcile_monthly_usage(sub: SubscriptionData, now: datetime) -> SubscriptionData:
    """
    Apply the monthly AI chat reset if its boundary has passed.

    Any number of skipped months collapses into a single reset: the counter
    goes to zero and the next boundary is the first of the month after
    ``now``. Returns ``sub`` itself when no reset is due.
    """
    if not is_after(now, sub.usage.ai_chat_messages_reset_date):
        return sub

    return sub.model_copy(
        update={
            "usage": sub.usage.model_copy(
                update={
                    "ai_chat_messages_this_month": 0,
                    "ai_chat_messages_reset_date": next_reset_date(now),
                }
            )
        }
    )
