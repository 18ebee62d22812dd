from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from analysis.economics import SimulationResult
from services.entitlements import EntitlementPolicy
from services.rebalance_executor import BatchExecutionResult, ErrorKind, ExecutionResult
from services.recommendation_service import RecommendationService
from storage.models import RebalanceHistoryRecord, RecommendationRecord, RecommendationStatus, UserRecord


def make_user(user_id=1, tier="professional"):
    return UserRecord(id=user_id, external_id=str(user_id), subscription_tier=tier, created_at=datetime.now(timezone.utc))


def make_record(rec_id=10, user_id=1, status=RecommendationStatus.PENDING):
    return RecommendationRecord(
        id=rec_id,
        user_id=user_id,
        from_pool_id="pool-a",
        from_protocol="aave-v3",
        to_pool_id="pool-b",
        to_protocol="compound-v3",
        asset_symbol="ETH",
        from_asset_symbol="USDC",
        amount="1000",
        current_apy=3.0,
        target_apy=8.0,
        net_gain_usd_per_year=50.0,
        risk_score=3,
        reason="Higher APY available",
        status=status,
        created_at=datetime.now(timezone.utc),
        executed_at=None,
        shift_id=None,
    )


def make_service(records=None, history_count=0):
    records = {rec.id: rec for rec in (records or [])}
    repository = AsyncMock()
    repository.fetch_recommendation.side_effect = lambda rec_id: records.get(rec_id)
    repository.count_history_for_month.return_value = history_count
    repository.transition_recommendation.return_value = True
    engine = AsyncMock()
    executor = AsyncMock()
    policy = EntitlementPolicy(repository, upgrade_url="https://example.test/pricing")
    return RecommendationService(repository, engine, executor, policy), repository, engine, executor


@pytest.mark.asyncio
async def test_free_user_is_denied_with_upgrade_detail():
    service, _, engine, _ = make_service()

    result = await service.generate_recommendations(make_user(tier="free"), 50)

    assert result.ok is False
    assert result.error_kind is ErrorKind.ENTITLEMENT_DENIED
    assert result.detail["required_plan"] == "starter"
    assert result.detail["upgrade_url"] == "https://example.test/pricing"
    engine.generate_recommendations.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.parametrize("risk", [-1, 101])
async def test_generate_rejects_out_of_range_risk(risk):
    service, _, engine, _ = make_service()

    result = await service.generate_recommendations(make_user(), risk)

    assert result.error_kind is ErrorKind.INVALID_REQUEST
    engine.generate_recommendations.assert_not_awaited()


@pytest.mark.asyncio
async def test_generate_returns_records():
    service, _, engine, _ = make_service()
    engine.generate_recommendations.return_value = [make_record()]

    result = await service.generate_recommendations(make_user(), 30)

    assert result.ok is True
    assert result.detail == {"count": 1}
    engine.generate_recommendations.assert_awaited_once_with(1, 30)


@pytest.mark.asyncio
async def test_execute_requires_wallet_address():
    service, _, _, executor = make_service([make_record()])

    result = await service.execute_recommendation(make_user(), 10, "  ")

    assert result.error_kind is ErrorKind.INVALID_REQUEST
    executor.execute_rebalance.assert_not_awaited()


@pytest.mark.asyncio
async def test_execute_hides_other_users_recommendations():
    service, _, _, executor = make_service([make_record(user_id=2)])

    result = await service.execute_recommendation(make_user(user_id=1), 10, "0xwallet")

    assert result.error_kind is ErrorKind.NOT_FOUND
    executor.execute_rebalance.assert_not_awaited()


@pytest.mark.asyncio
async def test_execute_denied_when_starter_quota_used():
    service, _, _, executor = make_service([make_record()], history_count=4)

    result = await service.execute_recommendation(make_user(tier="starter"), 10, "0xwallet")

    assert result.error_kind is ErrorKind.ENTITLEMENT_DENIED
    assert result.detail["used"] == 4
    assert result.detail["limit"] == 4
    executor.execute_rebalance.assert_not_awaited()


@pytest.mark.asyncio
async def test_execute_passes_through_executor_failure():
    service, _, _, executor = make_service([make_record()])
    executor.execute_rebalance.return_value = ExecutionResult(
        10, False, error_kind=ErrorKind.MANUAL_ACTION_REQUIRED, message="Manual rebalancing required"
    )

    result = await service.execute_recommendation(make_user(), 10, " 0xwallet ")

    assert result.ok is False
    assert result.error_kind is ErrorKind.MANUAL_ACTION_REQUIRED
    executor.execute_rebalance.assert_awaited_once_with(10, "0xwallet")


@pytest.mark.asyncio
async def test_batch_requires_professional_and_ids():
    service, _, _, executor = make_service([make_record()])

    denied = await service.batch_execute(make_user(tier="starter"), [10], "0xwallet")
    empty = await service.batch_execute(make_user(), [], "0xwallet")

    assert denied.error_kind is ErrorKind.ENTITLEMENT_DENIED
    assert denied.detail["required_plan"] == "professional"
    assert empty.error_kind is ErrorKind.INVALID_REQUEST
    executor.batch_execute_rebalances.assert_not_awaited()


@pytest.mark.asyncio
async def test_batch_reports_foreign_ids_as_not_found():
    service, _, _, executor = make_service([make_record(10), make_record(11, user_id=2), make_record(12)])
    executor.batch_execute_rebalances.return_value = BatchExecutionResult(
        successful=1, failed=1, results=[
            ExecutionResult(12, True),
            ExecutionResult(10, False, error_kind=ErrorKind.UPSTREAM_UNAVAILABLE),
        ]
    )

    result = await service.batch_execute(make_user(), [12, 11, 10], "0xwallet")

    assert result.ok is True
    executor.batch_execute_rebalances.assert_awaited_once_with([12, 10], "0xwallet")
    assert result.detail == {"successful": 1, "failed": 2}
    assert [r.recommendation_id for r in result.data.results] == [12, 11, 10]
    assert [r.error_kind for r in result.data.results] == [
        None, ErrorKind.NOT_FOUND, ErrorKind.UPSTREAM_UNAVAILABLE,
    ]


@pytest.mark.asyncio
async def test_simulate_returns_estimate():
    service, _, _, executor = make_service([make_record()])
    executor.simulate_rebalance.return_value = SimulationResult(50.0, 50.0, 50.0 / 365, 365)

    result = await service.simulate_recommendation(make_user(tier="starter"), 10)

    assert result.ok is True
    assert result.data.breakeven_days == 365


@pytest.mark.asyncio
async def test_reject_only_pending():
    service, repository, _, _ = make_service([
        make_record(10),
        make_record(11, status=RecommendationStatus.EXECUTED),
    ])

    rejected = await service.reject_recommendation(make_user(), 10)
    processed = await service.reject_recommendation(make_user(), 11)

    assert rejected.ok is True
    assert processed.error_kind is ErrorKind.ALREADY_PROCESSED
    repository.transition_recommendation.assert_awaited_once_with(
        10, RecommendationStatus.REJECTED, expected=RecommendationStatus.PENDING
    )


@pytest.mark.asyncio
async def test_usage_summary_for_starter():
    service, _, _, _ = make_service(history_count=2)

    result = await service.usage_summary(make_user(tier="starter"))

    assert result.data["plan"] == "starter"
    assert result.data["used"] == 2
    assert result.data["limit"] == 4
    assert result.data["can_execute"] is True
    assert result.data["can_batch"] is False


@pytest.mark.asyncio
async def test_monitor_shift_checks_ownership():
    service, repository, _, executor = make_service()
    repository.fetch_history_by_shift.return_value = RebalanceHistoryRecord(
        id=1,
        user_id=2,
        recommendation_id=10,
        shift_id="shift-1",
        from_protocol="aave-v3",
        to_protocol="compound-v3",
        asset="ETH",
        amount="1000",
        status="waiting",
        month_bucket="2024-06-01",
        created_at=datetime.now(timezone.utc),
    )

    result = await service.monitor_shift(make_user(user_id=1), "shift-1")

    assert result.error_kind is ErrorKind.NOT_FOUND
    executor.monitor_shift_order.assert_not_awaited()
