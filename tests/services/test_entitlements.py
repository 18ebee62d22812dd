from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from services.entitlements import EntitlementPolicy, SubscriptionTier
from storage.models import UserRecord


def make_user(tier):
    return UserRecord(id=1, external_id="1", subscription_tier=tier, created_at=datetime.now(timezone.utc))


def make_policy(history_count=0):
    repository = AsyncMock()
    repository.count_history_for_month.return_value = history_count
    return EntitlementPolicy(repository, upgrade_url="https://example.test/pricing"), repository


def test_tier_parsing_defaults_to_free():
    assert SubscriptionTier.parse("Professional") is SubscriptionTier.PROFESSIONAL
    assert SubscriptionTier.parse("platinum") is SubscriptionTier.FREE
    assert SubscriptionTier.parse(None) is SubscriptionTier.FREE
    assert SubscriptionTier.STARTER < SubscriptionTier.INSTITUTIONAL


@pytest.mark.asyncio
async def test_free_user_cannot_execute():
    policy, repository = make_policy()

    decision = await policy.check_execution_access(make_user("free"))

    assert decision.allowed is False
    payload = decision.to_payload()
    assert payload["required_plan"] == "starter"
    assert payload["current_plan"] == "free"
    assert payload["upgrade_url"] == "https://example.test/pricing"
    assert "limit" not in payload
    repository.count_history_for_month.assert_not_awaited()


@pytest.mark.asyncio
async def test_starter_limit_reached_is_denied():
    policy, repository = make_policy(history_count=4)
    now = datetime(2024, 6, 15, tzinfo=timezone.utc)

    decision = await policy.check_execution_access(make_user("starter"), now=now)

    assert decision.allowed is False
    payload = decision.to_payload()
    assert payload["limit"] == 4
    assert payload["used"] == 4
    assert payload["required_plan"] == "professional"
    repository.count_history_for_month.assert_awaited_once_with(1, "2024-06-01")


@pytest.mark.asyncio
async def test_starter_below_limit_is_allowed():
    policy, _ = make_policy(history_count=3)

    decision = await policy.check_execution_access(make_user("starter"))

    assert decision.allowed is True
    assert decision.used == 3
    assert decision.limit == 4


@pytest.mark.asyncio
@pytest.mark.parametrize("tier", ["professional", "institutional"])
async def test_paid_tiers_are_unlimited(tier):
    policy, repository = make_policy(history_count=100)

    decision = await policy.check_execution_access(make_user(tier))

    assert decision.allowed is True
    assert decision.limit is None
    repository.count_history_for_month.assert_not_awaited()


def test_batch_requires_professional():
    policy, _ = make_policy()

    denied = policy.check_batch_access(make_user("starter"))
    assert denied.allowed is False
    assert denied.to_payload()["required_plan"] == "professional"
    assert policy.check_batch_access(make_user("professional")).allowed is True


def test_recommendations_require_starter():
    policy, _ = make_policy()

    assert policy.check_recommendation_access(make_user("free")).allowed is False
    assert policy.check_recommendation_access(make_user("starter")).allowed is True
