"""
Unit tests for EntitlementService.

Runs against the in-memory preference store with a frozen clock
(2024-05-15T12:00Z). Covers reconciled reads, limit-checked consumption,
live counters, billing updates and retries on concurrent writes.
"""

import copy
import logging
from datetime import datetime, timezone

import pytest

from conftest import FIXED_NOW, USER_ID, InMemoryPreferencesRepository
from app.domain.services import EntitlementService
from app.domain.subscription import (
    BASE_PLAN_LIMITS,
    FREE_TIER_LIMITS,
    PREFERENCE_KEY,
    SubscriptionLimits,
    SubscriptionStatus,
    UsageResource,
    default_subscription,
)
from app.infrastructure.db.repositories.user_preferences_repository import PreferencesRecord
from app.infrastructure.exceptions import (
    ConcurrencyConflictError,
    LimitExceededError,
    ValidationError,
)


UTC = timezone.utc
JUNE_1 = datetime(2024, 6, 1, tzinfo=UTC)


async def _seed(repo, status=SubscriptionStatus.NONE, reset_date=JUNE_1, **usage):
    """Store a subscription for USER_ID and return the stored value."""
    limits = BASE_PLAN_LIMITS if status == SubscriptionStatus.ACTIVE else FREE_TIER_LIMITS
    sub = default_subscription(FIXED_NOW).model_copy(update={"status": status, "limits": limits})
    sub = sub.model_copy(update={
        "usage": sub.usage.model_copy(update={"ai_chat_messages_reset_date": reset_date, **usage})
    })
    await repo.save(USER_ID, {PREFERENCE_KEY: sub.to_preference(), "theme": "dark"}, None)
    return sub


def _stored(repo):
    return repo.records[USER_ID].prefs[PREFERENCE_KEY]


class RacingRepository(InMemoryPreferencesRepository):
    """Lets another writer count one AI message just before each of our next ``races`` saves."""

    def __init__(self, races: int):
        super().__init__()
        self.races = races

    async def save(self, user_id, prefs, expected_version):
        if self.races and user_id in self.records:
            self.races -= 1
            current = self.records[user_id]
            theirs = copy.deepcopy(current.prefs)
            theirs[PREFERENCE_KEY]["usage"]["aiChatMessagesThisMonth"] += 1
            await super().save(user_id, theirs, current.version)
        return await super().save(user_id, prefs, expected_version)


# ============== Read Tests ==============

class TestReads:

    @pytest.mark.asyncio
    async def test_new_user_gets_free_tier(self, service, fake_repo):
        sub = await service.get_subscription(USER_ID)

        assert sub == default_subscription(FIXED_NOW)
        assert fake_repo.saves == 0
        assert USER_ID not in fake_repo.records

    @pytest.mark.asyncio
    async def test_read_applies_reset_without_writing(self, service, fake_repo):
        await _seed(fake_repo, reset_date=datetime(2024, 3, 1, tzinfo=UTC), ai_chat_messages_this_month=30)

        sub = await service.get_subscription(USER_ID)

        assert sub.usage.ai_chat_messages_this_month == 0
        assert sub.usage.ai_chat_messages_reset_date == JUNE_1
        assert _stored(fake_repo)["usage"]["aiChatMessagesThisMonth"] == 30
        assert fake_repo.saves == 1

    @pytest.mark.asyncio
    async def test_corrupt_data_falls_back_with_warning(self, service, fake_repo, caplog):
        fake_repo.records[USER_ID] = PreferencesRecord(USER_ID, {PREFERENCE_KEY: {"status": "active"}}, 1)

        with caplog.at_level(logging.WARNING, logger="app.domain.services"):
            sub = await service.get_subscription(USER_ID)

        assert sub == default_subscription(FIXED_NOW)
        assert "Corrupt subscription data" in caplog.text
        assert USER_ID in caplog.text

    @pytest.mark.asyncio
    async def test_usage_summary(self, service, fake_repo):
        await _seed(fake_repo, status=SubscriptionStatus.ACTIVE, ai_chat_messages_this_month=4999)

        summary = await service.get_usage_summary(USER_ID)

        chat = summary[UsageResource.AI_CHAT_MESSAGES]
        assert chat.used == 4999
        assert chat.limit == 5000
        assert chat.approaching_limit is True
        assert chat.exceeded is False

    @pytest.mark.asyncio
    async def test_access_check(self, service, fake_repo):
        assert (await service.check_access(USER_ID)).reason == "no_subscription"

        await service.apply_billing_update(
            USER_ID,
            SubscriptionStatus.ACTIVE,
            current_period_end=datetime(2024, 6, 10, tzinfo=UTC),
        )
        assert (await service.check_access(USER_ID)).has_access is True

        await service.apply_billing_update(USER_ID, SubscriptionStatus.PAST_DUE)
        assert (await service.check_access(USER_ID)).reason == "subscription_past_due"


# ============== Consumption Tests ==============

class TestConsume:

    @pytest.mark.asyncio
    async def test_first_message_creates_document(self, service, fake_repo):
        sub = await service.record_ai_chat_message(USER_ID)

        assert sub.usage.ai_chat_messages_this_month == 1
        assert fake_repo.records[USER_ID].version == 1
        assert _stored(fake_repo)["usage"]["aiChatMessagesThisMonth"] == 1
        assert _stored(fake_repo)["status"] == "none"

    @pytest.mark.asyncio
    async def test_keeps_other_preferences(self, service, fake_repo):
        await _seed(fake_repo)

        await service.record_ai_chat_message(USER_ID)

        assert fake_repo.records[USER_ID].prefs["theme"] == "dark"
        assert fake_repo.records[USER_ID].version == 2

    @pytest.mark.asyncio
    async def test_free_tier_limit(self, service, fake_repo):
        await _seed(fake_repo, ai_chat_messages_this_month=30)

        with pytest.raises(LimitExceededError) as exc_info:
            await service.record_ai_chat_message(USER_ID)

        assert exc_info.value.resource == "aiChatMessages"
        assert exc_info.value.used == 30
        assert exc_info.value.limit == 30
        assert fake_repo.saves == 1

    @pytest.mark.asyncio
    async def test_stale_month_resets_before_counting(self, service, fake_repo):
        await _seed(fake_repo, reset_date=datetime(2024, 3, 1, tzinfo=UTC), ai_chat_messages_this_month=30)

        sub = await service.record_ai_chat_message(USER_ID)

        assert sub.usage.ai_chat_messages_this_month == 1
        assert sub.usage.ai_chat_messages_reset_date == JUNE_1
        assert _stored(fake_repo)["usage"]["aiChatMessagesResetDate"].startswith("2024-06-01")

    @pytest.mark.asyncio
    async def test_paid_user_last_message(self, service, fake_repo):
        await _seed(fake_repo, status=SubscriptionStatus.ACTIVE, ai_chat_messages_this_month=4999)

        sub = await service.record_ai_chat_message(USER_ID)
        assert sub.usage.ai_chat_messages_this_month == 5000

        with pytest.raises(LimitExceededError):
            await service.record_ai_chat_message(USER_ID)

    @pytest.mark.asyncio
    async def test_free_tier_cannot_link_bank(self, service, fake_repo):
        allowed, current = await service.get_allowance(USER_ID, UsageResource.INSTITUTION_CONNECTIONS)

        assert allowed is False
        assert current.limit == 0

        with pytest.raises(LimitExceededError):
            await service.consume(USER_ID, UsageResource.INSTITUTION_CONNECTIONS)
        assert fake_repo.saves == 0

    @pytest.mark.asyncio
    async def test_fractional_storage(self, service, fake_repo):
        await _seed(fake_repo, status=SubscriptionStatus.ACTIVE, storage_gb=9.5)

        assert (await service.get_allowance(USER_ID, UsageResource.STORAGE_GB, 0.5))[0] is True
        assert (await service.get_allowance(USER_ID, UsageResource.STORAGE_GB, 0.6))[0] is False

        sub = await service.consume(USER_ID, UsageResource.STORAGE_GB, 0.5)
        assert sub.usage.storage_gb == 10.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("resource,amount", [
        (UsageResource.AI_CHAT_MESSAGES, 0),
        (UsageResource.AI_CHAT_MESSAGES, -1),
        (UsageResource.AI_CHAT_MESSAGES, 1.5),
        (UsageResource.AI_CHAT_MESSAGES, True),
        (UsageResource.STORAGE_GB, float("nan")),
        (UsageResource.STORAGE_GB, float("inf")),
        (UsageResource.STORAGE_GB, "1"),
    ])
    async def test_rejects_bad_amounts(self, service, fake_repo, resource, amount):
        with pytest.raises(ValidationError):
            await service.consume(USER_ID, resource, amount)
        assert fake_repo.saves == 0

    @pytest.mark.asyncio
    async def test_corrupt_document_is_replaced_on_write(self, service, fake_repo):
        fake_repo.records[USER_ID] = PreferencesRecord(
            USER_ID, {PREFERENCE_KEY: [1, 2], "theme": "dark"}, 4
        )

        sub = await service.record_ai_chat_message(USER_ID)

        assert sub.status == SubscriptionStatus.NONE
        assert _stored(fake_repo)["usage"]["aiChatMessagesThisMonth"] == 1
        assert fake_repo.records[USER_ID].prefs["theme"] == "dark"
        assert fake_repo.records[USER_ID].version == 5


# ============== Live Usage Tests ==============

class TestLiveUsage:

    @pytest.mark.asyncio
    async def test_release_floors_at_zero(self, service, fake_repo):
        await _seed(fake_repo, status=SubscriptionStatus.ACTIVE, institution_connections=2)

        sub = await service.release(USER_ID, UsageResource.INSTITUTION_CONNECTIONS)
        assert sub.usage.institution_connections == 1

        sub = await service.release(USER_ID, UsageResource.INSTITUTION_CONNECTIONS, 5)
        assert sub.usage.institution_connections == 0

    @pytest.mark.asyncio
    async def test_monthly_allowance_cannot_be_released(self, service):
        with pytest.raises(ValidationError):
            await service.release(USER_ID, UsageResource.AI_CHAT_MESSAGES)

    @pytest.mark.asyncio
    async def test_set_live_usage(self, service, fake_repo):
        await _seed(fake_repo, status=SubscriptionStatus.ACTIVE, institution_connections=3)

        sub = await service.set_live_usage(USER_ID, institution_connections=0, storage_gb=3.5)

        assert sub.usage.institution_connections == 0
        assert sub.usage.storage_gb == 3.5
        assert _stored(fake_repo)["usage"]["storageGB"] == 3.5

    @pytest.mark.asyncio
    async def test_set_live_usage_leaves_omitted_counts(self, service, fake_repo):
        await _seed(fake_repo, status=SubscriptionStatus.ACTIVE, institution_connections=2, storage_gb=1.0)

        sub = await service.set_live_usage(USER_ID, storage_gb=4.0)

        assert sub.usage.institution_connections == 2
        assert sub.usage.storage_gb == 4.0

    @pytest.mark.asyncio
    async def test_set_live_usage_rejects_negative(self, service, fake_repo):
        with pytest.raises(ValidationError):
            await service.set_live_usage(USER_ID, institution_connections=-1)
        assert fake_repo.saves == 0


# ============== Billing Tests ==============

class TestBillingUpdates:

    @pytest.mark.asyncio
    async def test_activation_preserves_usage(self, service, fake_repo):
        await _seed(fake_repo, ai_chat_messages_this_month=12)

        sub = await service.apply_billing_update(
            USER_ID,
            SubscriptionStatus.ACTIVE,
            stripe_customer_id="cus_Q2x8",
            stripe_subscription_id="sub_1PbX",
            current_period_end=datetime(2024, 6, 10, tzinfo=UTC),
        )

        assert sub.limits == BASE_PLAN_LIMITS
        assert sub.usage.ai_chat_messages_this_month == 12
        assert _stored(fake_repo)["stripeCustomerId"] == "cus_Q2x8"

    @pytest.mark.asyncio
    async def test_cancellation_drops_to_free_limits(self, service, fake_repo):
        await service.apply_billing_update(USER_ID, SubscriptionStatus.ACTIVE, stripe_customer_id="cus_Q2x8")

        sub = await service.apply_billing_update(USER_ID, SubscriptionStatus.CANCELED)

        assert sub.status == SubscriptionStatus.CANCELED
        assert sub.limits == FREE_TIER_LIMITS
        assert sub.stripe_customer_id == "cus_Q2x8"

    @pytest.mark.asyncio
    async def test_explicit_limits(self, service):
        custom = SubscriptionLimits(institution_connections=10, storage_gb=50, ai_chat_messages_per_month=20000)

        sub = await service.apply_billing_update(USER_ID, SubscriptionStatus.ACTIVE, limits=custom)

        assert sub.limits == custom


# ============== Concurrency Tests ==============

class TestConcurrentWrites:

    def _service(self, repo, max_retries=3):
        return EntitlementService(repo, reset_zone=UTC, max_retries=max_retries, clock=lambda: FIXED_NOW)

    @pytest.mark.asyncio
    async def test_retries_without_losing_increments(self):
        repo = RacingRepository(races=2)
        await _seed(repo, ai_chat_messages_this_month=10)

        sub = await self._service(repo).record_ai_chat_message(USER_ID)

        # 10 seeded + 2 from the racing writer + ours
        assert sub.usage.ai_chat_messages_this_month == 13
        assert _stored(repo)["usage"]["aiChatMessagesThisMonth"] == 13

    @pytest.mark.asyncio
    async def test_limit_rechecked_on_retry(self):
        repo = RacingRepository(races=1)
        await _seed(repo, ai_chat_messages_this_month=29)

        with pytest.raises(LimitExceededError):
            await self._service(repo).record_ai_chat_message(USER_ID)

        assert _stored(repo)["usage"]["aiChatMessagesThisMonth"] == 30

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, caplog):
        repo = RacingRepository(races=10)
        await _seed(repo, ai_chat_messages_this_month=0)

        with caplog.at_level(logging.WARNING, logger="app.domain.services"):
            with pytest.raises(ConcurrencyConflictError):
                await self._service(repo, max_retries=2).record_ai_chat_message(USER_ID)

        assert _stored(repo)["usage"]["aiChatMessagesThisMonth"] == 3
        assert "Giving up" in caplog.text
