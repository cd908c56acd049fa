"""
Entitlement Service

Glue between the pure subscription functions and the preference store.

Every write is a load -> reconcile -> check -> mutate -> save cycle. The save
is version-checked by the repository; on a conflict the whole cycle is rerun
against fresh data, up to ``usage_update_max_retries`` times.

Reads never persist anything: a user with no stored subscription is served
the free-tier default, and the monthly reset is only written back on the
next mutation.
"""

import logging
import math
from datetime import datetime, tzinfo
from typing import Callable, Optional

from app.config.settings import settings
from app.domain.entitlements import (
    AccessCheckResult,
    ResourceUsage,
    check_subscription_access,
    has_exceeded_limit,
    resource_usage,
    usage_summary,
)
from app.domain.subscription import (
    PREFERENCE_KEY,
    Amount,
    SubscriptionData,
    SubscriptionLimits,
    SubscriptionStatus,
    UsageResource,
    default_subscription,
    limits_for_status,
    reconcile_monthly_usage,
    resolve_subscription,
)
from app.infrastructure.db.repositories.user_preferences_repository import (
    UserPreferencesRepository,
)
from app.infrastructure.exceptions import (
    ConcurrencyConflictError,
    CorruptPreferenceDataError,
    LimitExceededError,
    ValidationError,
)


logger = logging.getLogger(__name__)

Mutation = Callable[[SubscriptionData, datetime], SubscriptionData]


def _check_delta(resource: UsageResource, amount: Amount) -> None:
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise ValidationError("amount must be a number", {"amount": repr(amount)})
    if not resource.is_fractional and not isinstance(amount, int):
        raise ValidationError(
            f"{resource.value} is counted in whole units",
            {"resource": resource.value, "amount": amount},
        )
    if not math.isfinite(amount) or amount <= 0:
        raise ValidationError(
            "amount must be a finite positive number",
            {"resource": resource.value, "amount": amount},
        )


def would_exceed(used: Amount, limit: Amount, amount: Amount) -> bool:
    """True if consuming ``amount`` more is not allowed."""
    return has_exceeded_limit(used, limit) or used + amount > limit


class EntitlementService:
    """
    Reads and mutates a user's subscription entitlements.

    Handles:
    - Reconciled reads (monthly AI chat reset applied)
    - Consumption with limit checks before the action is allowed
    - Live usage counts for institutions and storage
    - Plan changes written by billing handlers
    """

    def __init__(
        self,
        repository: UserPreferencesRepository,
        reset_zone: Optional[tzinfo] = None,
        max_retries: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._repository = repository
        self._reset_zone = reset_zone or settings.reset_zone
        self._max_retries = (
            settings.usage_update_max_retries if max_retries is None else max_retries
        )
        self._clock = clock or (lambda: datetime.now(self._reset_zone))

    def now(self) -> datetime:
        return self._clock()

    # =========================================================================
    # Reads
    # =========================================================================

    def _resolve(self, user_id: str, prefs: dict, now: datetime) -> SubscriptionData:
        try:
            return resolve_subscription(prefs, now)
        except CorruptPreferenceDataError as e:
            logger.warning(
                f"Corrupt subscription data for user {user_id}, "
                f"falling back to free tier: {e.message} {e.details}"
            )
            return default_subscription(now)

    async def get_subscription(self, user_id: str) -> SubscriptionData:
        """Current subscription with the monthly reset applied."""
        now = self.now()
        prefs = await self._repository.get_prefs(user_id)
        return reconcile_monthly_usage(self._resolve(user_id, prefs, now), now)

    async def get_usage_summary(self, user_id: str) -> dict[UsageResource, ResourceUsage]:
        return usage_summary(await self.get_subscription(user_id))

    async def check_access(self, user_id: str) -> AccessCheckResult:
        """Whether the user's plan currently grants paid-feature access."""
        sub = await self.get_subscription(user_id)
        return check_subscription_access(sub, self.now())

    async def get_allowance(
        self,
        user_id: str,
        resource: UsageResource,
        amount: Amount = 1,
    ) -> tuple[bool, ResourceUsage]:
        """
        Check, without consuming, whether ``amount`` more of a resource fits.

        Callers gate actions such as linking a bank on this.
        """
        _check_delta(resource, amount)
        current = resource_usage(await self.get_subscription(user_id), resource)
        return not would_exceed(current.used, current.limit, amount), current

    # =========================================================================
    # Writes
    # =========================================================================

    async def _mutate(self, user_id: str, change: Mutation) -> SubscriptionData:
        attempts = self._max_retries + 1

        for attempt in range(1, attempts + 1):
            now = self.now()
            record = await self._repository.get(user_id)
            prefs = dict(record.prefs) if record else {}

            resolved = self._resolve(user_id, prefs, now)
            current = reconcile_monthly_usage(resolved, now)
            if current is not resolved:
                logger.info(f"Reset monthly AI chat usage for user {user_id}")

            updated = change(current, now)
            prefs[PREFERENCE_KEY] = updated.to_preference()

            try:
                await self._repository.save(
                    user_id, prefs, record.version if record else None
                )
                return updated
            except ConcurrencyConflictError:
                if attempt == attempts:
                    logger.error(
                        f"Giving up on subscription update for user {user_id} "
                        f"after {attempts} conflicting attempts"
                    )
                    raise
                logger.warning(
                    f"Concurrent subscription update for user {user_id}, "
                    f"retrying ({attempt}/{self._max_retries})"
                )

    async def consume(
        self,
        user_id: str,
        resource: UsageResource,
        amount: Amount = 1,
    ) -> SubscriptionData:
        """
        Record consumption of a resource, refusing it when over the limit.

        Raises:
            LimitExceededError: The plan does not allow ``amount`` more
            ValidationError: ``amount`` is not a positive quantity
        """
        _check_delta(resource, amount)

        def change(sub: SubscriptionData, now: datetime) -> SubscriptionData:
            used = sub.usage.used_for(resource)
            limit = sub.limits.limit_for(resource)
            if would_exceed(used, limit, amount):
                logger.info(
                    f"Refused {resource.value} for user {user_id}: {used}/{limit}"
                )
                raise LimitExceededError(resource.value, used, limit)
            return sub.with_usage(resource, used + amount)

        return await self._mutate(user_id, change)

    async def record_ai_chat_message(self, user_id: str) -> SubscriptionData:
        return await self.consume(user_id, UsageResource.AI_CHAT_MESSAGES)

    async def release(
        self,
        user_id: str,
        resource: UsageResource,
        amount: Amount = 1,
    ) -> SubscriptionData:
        """Give back a live resource (unlinked bank, deleted file). Floors at zero."""
        _check_delta(resource, amount)
        if resource.is_monthly:
            raise ValidationError(
                "Monthly allowances cannot be released",
                {"resource": resource.value},
            )

        def change(sub: SubscriptionData, now: datetime) -> SubscriptionData:
            return sub.with_usage(resource, max(0, sub.usage.used_for(resource) - amount))

        return await self._mutate(user_id, change)

    async def set_live_usage(
        self,
        user_id: str,
        institution_connections: Optional[int] = None,
        storage_gb: Optional[float] = None,
    ) -> SubscriptionData:
        """Overwrite live counters with externally measured values."""
        updates = {}
        if institution_connections is not None:
            updates[UsageResource.INSTITUTION_CONNECTIONS] = institution_connections
        if storage_gb is not None:
            updates[UsageResource.STORAGE_GB] = storage_gb

        for resource, value in updates.items():
            if value != 0:
                _check_delta(resource, value)

        def change(sub: SubscriptionData, now: datetime) -> SubscriptionData:
            for resource, value in updates.items():
                sub = sub.with_usage(resource, value)
            return sub

        return await self._mutate(user_id, change)

    async def apply_billing_update(
        self,
        user_id: str,
        status: SubscriptionStatus,
        stripe_customer_id: Optional[str] = None,
        stripe_subscription_id: Optional[str] = None,
        current_period_end: Optional[datetime] = None,
        limits: Optional[SubscriptionLimits] = None,
    ) -> SubscriptionData:
        """
        Write a plan change from the billing provider.

        Usage counters are preserved. When ``limits`` is omitted the plan
        limits implied by ``status`` are used.
        """
        def change(sub: SubscriptionData, now: datetime) -> SubscriptionData:
            updates = {
                "status": status,
                "limits": limits or limits_for_status(status),
            }
            if stripe_customer_id is not None:
                updates["stripe_customer_id"] = stripe_customer_id
            if stripe_subscription_id is not None:
                updates["stripe_subscription_id"] = stripe_subscription_id
            if current_period_end is not None:
                updates["current_period_end"] = current_period_end
            return sub.model_copy(update=updates)

        updated = await self._mutate(user_id, change)
        logger.info(f"Applied billing update for user {user_id}: status={status.value}")
        return updated
