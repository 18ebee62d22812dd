"""Request-scoped recommendation operations used by the bot handlers.

Every operation takes an already resolved user, applies the entitlement gate
first and returns a ServiceResult instead of raising.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from analysis.recommender import RecommendationEngine
from services.entitlements import EntitlementDecision, EntitlementPolicy
from services.rebalance_executor import BatchExecutionResult, ErrorKind, ExecutionResult, RebalanceExecutor
from storage.models import RecommendationRecord, RecommendationStatus, UserRecord, month_bucket

logger = logging.getLogger(__name__)


@dataclass
class ServiceResult:
    ok: bool
    data: Any = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    detail: dict = field(default_factory=dict)

    @classmethod
    def denied(cls, decision: EntitlementDecision) -> "ServiceResult":
        return cls(
            ok=False,
            error_kind=ErrorKind.ENTITLEMENT_DENIED,
            message=decision.message,
            detail=decision.to_payload(),
        )

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, data: Any = None) -> "ServiceResult":
        return cls(ok=False, data=data, error_kind=kind, message=message)


class RecommendationService:
    def __init__(
        self,
        repository,
        engine: RecommendationEngine,
        executor: RebalanceExecutor,
        policy: EntitlementPolicy,
    ):
        self.repository = repository
        self.engine = engine
        self.executor = executor
        self.policy = policy

    async def _owned(self, user: UserRecord, recommendation_id: int) -> Optional[RecommendationRecord]:
        recommendation = await self.repository.fetch_recommendation(recommendation_id)
        if recommendation is None or recommendation.user_id != user.id:
            return None
        return recommendation

    async def list_recommendations(self, user: UserRecord) -> ServiceResult:
        decision = self.policy.check_recommendation_access(user)
        if not decision.allowed:
            return ServiceResult.denied(decision)
        return ServiceResult(ok=True, data=await self.repository.fetch_pending_recommendations(user.id))

    async def generate_recommendations(self, user: UserRecord, risk_tolerance: int = 50) -> ServiceResult:
        decision = self.policy.check_recommendation_access(user)
        if not decision.allowed:
            return ServiceResult.denied(decision)
        if not 0 <= risk_tolerance <= 100:
            return ServiceResult.failure(ErrorKind.INVALID_REQUEST, "Risk tolerance must be between 0 and 100")

        records = await self.engine.generate_recommendations(user.id, risk_tolerance)
        return ServiceResult(ok=True, data=records, detail={"count": len(records)})

    async def execute_recommendation(
        self, user: UserRecord, recommendation_id: int, wallet_address: Optional[str]
    ) -> ServiceResult:
        decision = await self.policy.check_execution_access(user)
        if not decision.allowed:
            return ServiceResult.denied(decision)
        if not wallet_address or not wallet_address.strip():
            return ServiceResult.failure(ErrorKind.INVALID_REQUEST, "wallet_address is required")
        if await self._owned(user, recommendation_id) is None:
            return ServiceResult.failure(ErrorKind.NOT_FOUND, "Recommendation not found")

        result = await self.executor.execute_rebalance(recommendation_id, wallet_address.strip())
        if result.success:
            return ServiceResult(ok=True, data=result)
        return ServiceResult.failure(result.error_kind, result.message, data=result)

    async def simulate_recommendation(self, user: UserRecord, recommendation_id: int) -> ServiceResult:
        decision = self.policy.check_recommendation_access(user)
        if not decision.allowed:
            return ServiceResult.denied(decision)
        if await self._owned(user, recommendation_id) is None:
            return ServiceResult.failure(ErrorKind.NOT_FOUND, "Recommendation not found")

        simulation = await self.executor.simulate_rebalance(recommendation_id)
        if simulation is None:
            return ServiceResult.failure(ErrorKind.NOT_FOUND, "Recommendation not found")
        return ServiceResult(ok=True, data=simulation)

    async def batch_execute(
        self, user: UserRecord, recommendation_ids: Sequence[int], wallet_address: Optional[str]
    ) -> ServiceResult:
        decision = self.policy.check_batch_access(user)
        if not decision.allowed:
            return ServiceResult.denied(decision)
        if not recommendation_ids:
            return ServiceResult.failure(ErrorKind.INVALID_REQUEST, "recommendation_ids must not be empty")
        if not wallet_address or not wallet_address.strip():
            return ServiceResult.failure(ErrorKind.INVALID_REQUEST, "wallet_address is required")

        owned = []
        for recommendation_id in recommendation_ids:
            owned.append(await self._owned(user, recommendation_id) is not None)

        owned_ids = [rec_id for rec_id, is_owned in zip(recommendation_ids, owned) if is_owned]
        executed = await self.executor.batch_execute_rebalances(owned_ids, wallet_address.strip())

        # Results follow the request order; foreign ids report as not found.
        executed_results = iter(executed.results)
        batch = BatchExecutionResult(successful=executed.successful, failed=executed.failed)
        for recommendation_id, is_owned in zip(recommendation_ids, owned):
            if is_owned:
                batch.results.append(next(executed_results))
                continue
            batch.results.append(
                ExecutionResult(
                    recommendation_id, False,
                    error_kind=ErrorKind.NOT_FOUND,
                    message="Recommendation not found",
                )
            )
            batch.failed += 1
        logger.info("User %s batch: %d succeeded, %d failed", user.id, batch.successful, batch.failed)
        return ServiceResult(
            ok=True,
            data=batch,
            detail={"successful": batch.successful, "failed": batch.failed},
        )

    async def reject_recommendation(self, user: UserRecord, recommendation_id: int) -> ServiceResult:
        decision = self.policy.check_recommendation_access(user)
        if not decision.allowed:
            return ServiceResult.denied(decision)
        recommendation = await self._owned(user, recommendation_id)
        if recommendation is None:
            return ServiceResult.failure(ErrorKind.NOT_FOUND, "Recommendation not found")
        if recommendation.status is not RecommendationStatus.PENDING:
            return ServiceResult.failure(ErrorKind.ALREADY_PROCESSED, "Recommendation already processed")

        moved = await self.repository.transition_recommendation(
            recommendation_id,
            RecommendationStatus.REJECTED,
            expected=RecommendationStatus.PENDING,
        )
        if not moved:
            return ServiceResult.failure(ErrorKind.ALREADY_PROCESSED, "Recommendation already processed")
        return ServiceResult(ok=True, data=recommendation_id)

    async def usage_summary(self, user: UserRecord) -> ServiceResult:
        execution = await self.policy.check_execution_access(user)
        used = execution.used
        if used is None:
            used = await self.repository.count_history_for_month(user.id, month_bucket())
        return ServiceResult(
            ok=True,
            data={
                "plan": execution.current_tier.label,
                "month": month_bucket(),
                "used": used,
                "limit": execution.limit,
                "can_execute": execution.allowed,
                "can_batch": self.policy.check_batch_access(user).allowed,
                "can_view_recommendations": self.policy.check_recommendation_access(user).allowed,
            },
        )

    async def monitor_shift(self, user: UserRecord, shift_id: str) -> ServiceResult:
        history = await self.repository.fetch_history_by_shift(shift_id)
        if history is None or history.user_id != user.id:
            return ServiceResult.failure(ErrorKind.NOT_FOUND, "Shift not found")

        order = await self.executor.monitor_shift_order(shift_id)
        if order is None:
            return ServiceResult.failure(ErrorKind.UPSTREAM_UNAVAILABLE, "Failed to get shift status")
        return ServiceResult(ok=True, data=order)
