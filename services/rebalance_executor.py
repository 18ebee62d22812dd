"""Drives pending recommendations through the SideShift quote -> order flow."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence

from analysis.economics import SimulationResult, estimate_rebalance_economics
from constants import (
    BATCH_EXECUTION_DELAY_SECONDS,
    ESTIMATED_REBALANCE_GAS_COST_USD,
    SIDESHIFT_FINAL_STATUSES,
    SIDESHIFT_SETTLED_STATUS,
)
from services.sideshift_client import SideShiftClient, SwapOrder
from storage.models import RecommendationStatus


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    ALREADY_PROCESSED = "already_processed"
    ENTITLEMENT_DENIED = "entitlement_denied"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    MANUAL_ACTION_REQUIRED = "manual_action_required"
    INVALID_REQUEST = "invalid_request"


@dataclass(slots=True)
class ExecutionResult:
    recommendation_id: int
    success: bool
    order: Optional[SwapOrder] = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None


@dataclass(slots=True)
class BatchExecutionResult:
    successful: int = 0
    failed: int = 0
    results: list[ExecutionResult] = field(default_factory=list)


class RebalanceExecutor:
    """Executes, monitors and simulates rebalances for stored recommendations."""

    def __init__(
        self,
        repository,
        gateway: SideShiftClient,
        batch_delay_seconds: float = BATCH_EXECUTION_DELAY_SECONDS,
        gas_cost_estimate_usd: float = ESTIMATED_REBALANCE_GAS_COST_USD,
    ) -> None:
        self.repository = repository
        self.gateway = gateway
        self.batch_delay_seconds = batch_delay_seconds
        self.gas_cost_estimate_usd = gas_cost_estimate_usd
        self.logger = logging.getLogger(__name__)

    async def execute_rebalance(self, recommendation_id: int, destination_wallet_address: str) -> ExecutionResult:
        recommendation = await self.repository.fetch_recommendation(recommendation_id)
        if recommendation is None:
            return ExecutionResult(
                recommendation_id, False,
                error_kind=ErrorKind.NOT_FOUND,
                message="Recommendation not found",
            )

        if recommendation.status is not RecommendationStatus.PENDING:
            return ExecutionResult(
                recommendation_id, False,
                error_kind=ErrorKind.ALREADY_PROCESSED,
                message=f"Recommendation already processed ({recommendation.status.value})",
            )

        from_asset = recommendation.source_asset
        to_asset = recommendation.asset_symbol

        # SideShift only exchanges between different assets; a protocol-only
        # move has to be withdrawn and re-deposited by the user.
        if recommendation.from_protocol and from_asset.upper() == to_asset.upper():
            moved = await self.repository.transition_recommendation(
                recommendation_id,
                RecommendationStatus.MANUAL_REQUIRED,
                expected=RecommendationStatus.PENDING,
            )
            if not moved:
                return ExecutionResult(
                    recommendation_id, False,
                    error_kind=ErrorKind.ALREADY_PROCESSED,
                    message="Recommendation already processed",
                )
            self.logger.info("Recommendation %s needs a manual %s -> %s move", recommendation_id, recommendation.from_protocol, recommendation.to_protocol)
            return ExecutionResult(
                recommendation_id, False,
                error_kind=ErrorKind.MANUAL_ACTION_REQUIRED,
                message=(
                    "Manual rebalancing required - same asset, different protocol. "
                    f"Withdraw {recommendation.amount} {to_asset} from {recommendation.from_protocol} "
                    f"and deposit into {recommendation.to_protocol}."
                ),
            )

        quote = await self.gateway.get_quote(from_asset, to_asset, recommendation.amount)
        if quote is None:
            return ExecutionResult(
                recommendation_id, False,
                error_kind=ErrorKind.UPSTREAM_UNAVAILABLE,
                message="Failed to get shift quote",
            )

        order = await self.gateway.create_order(quote.id, destination_wallet_address)
        if order is None:
            return ExecutionResult(
                recommendation_id, False,
                error_kind=ErrorKind.UPSTREAM_UNAVAILABLE,
                message="Failed to create shift order",
            )

        history_id = await self.repository.mark_recommendation_executed(recommendation_id, order.id)
        if history_id is None:
            # The order exists remotely; it cannot be rolled back from here.
            self.logger.warning(
                "Recommendation %s left pending state while shift %s was being created",
                recommendation_id,
                order.id,
            )
            return ExecutionResult(
                recommendation_id, False,
                order=order,
                error_kind=ErrorKind.ALREADY_PROCESSED,
                message="Recommendation was processed concurrently",
            )

        self.logger.info("Recommendation %s executed via shift %s", recommendation_id, order.id)
        return ExecutionResult(recommendation_id, True, order=order)

    async def batch_execute_rebalances(
        self, recommendation_ids: Sequence[int], destination_wallet_address: str
    ) -> BatchExecutionResult:
        """Executes ids one after another, pausing between calls. Never stops early."""
        batch = BatchExecutionResult()
        for index, recommendation_id in enumerate(recommendation_ids):
            if index:
                # Keep under the gateway rate limit.
                await asyncio.sleep(self.batch_delay_seconds)
            try:
                result = await self.execute_rebalance(recommendation_id, destination_wallet_address)
            except Exception as exc:
                self.logger.error("Unexpected error executing recommendation %s: %s", recommendation_id, exc)
                result = ExecutionResult(
                    recommendation_id, False,
                    error_kind=ErrorKind.UPSTREAM_UNAVAILABLE,
                    message=str(exc),
                )
            batch.results.append(result)
            if result.success:
                batch.successful += 1
            else:
                batch.failed += 1
        return batch

    async def monitor_shift_order(self, shift_id: str) -> Optional[SwapOrder]:
        order = await self.gateway.get_order_status(shift_id)
        if order is None:
            self.logger.error("Failed to get status for shift %s", shift_id)
            return None

        status = order.status.lower()
        await self.repository.update_history_status(shift_id, status)
        if status == SIDESHIFT_SETTLED_STATUS:
            completed = await self.repository.complete_recommendations_for_shift(shift_id)
            if completed:
                self.logger.info("Shift %s settled; %d recommendation(s) completed", shift_id, completed)
        return order

    async def monitor_open_shifts(self) -> int:
        """Polls every shift whose history entry is not final. Returns how many were refreshed."""
        shift_ids = await self.repository.fetch_open_shift_ids(SIDESHIFT_FINAL_STATUSES)
        refreshed = 0
        for shift_id in shift_ids:
            try:
                if await self.monitor_shift_order(shift_id) is not None:
                    refreshed += 1
            except Exception as exc:
                self.logger.error("Error monitoring shift %s: %s", shift_id, exc)
        return refreshed

    async def simulate_rebalance(self, recommendation_id: int) -> Optional[SimulationResult]:
        """Cost/benefit estimate for a recommendation; None if it does not exist."""
        recommendation = await self.repository.fetch_recommendation(recommendation_id)
        if recommendation is None:
            return None
        try:
            amount = float(recommendation.amount)
        except ValueError:
            amount = 0.0
        apy_diff = recommendation.target_apy - (recommendation.current_apy or 0)
        return estimate_rebalance_economics(amount, apy_diff, self.gas_cost_estimate_usd)
