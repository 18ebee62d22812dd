"""Dataclasses representing stored users, positions and rebalancing records."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class InvalidStatusTransition(ValueError):
    """Raised when a recommendation is moved along an edge the state machine forbids."""


class RecommendationStatus(str, Enum):
    PENDING = "pending"
    EXECUTED = "executed"
    MANUAL_REQUIRED = "manual_required"
    REJECTED = "rejected"
    COMPLETED = "completed"

    def can_transition_to(self, target: "RecommendationStatus") -> bool:
        return target in RECOMMENDATION_TRANSITIONS[self]

    def ensure_transition(self, target: "RecommendationStatus") -> None:
        if not self.can_transition_to(target):
            raise InvalidStatusTransition(f"Cannot move recommendation from {self.value} to {target.value}")


RECOMMENDATION_TRANSITIONS: dict[RecommendationStatus, frozenset[RecommendationStatus]] = {
    RecommendationStatus.PENDING: frozenset({
        RecommendationStatus.EXECUTED,
        RecommendationStatus.MANUAL_REQUIRED,
        RecommendationStatus.REJECTED,
    }),
    RecommendationStatus.EXECUTED: frozenset({RecommendationStatus.COMPLETED}),
    # Resolved by the user outside the system.
    RecommendationStatus.MANUAL_REQUIRED: frozenset({RecommendationStatus.COMPLETED}),
    RecommendationStatus.REJECTED: frozenset(),
    RecommendationStatus.COMPLETED: frozenset(),
}


@dataclass(slots=True)
class UserRecord:
    id: int
    external_id: str
    subscription_tier: str
    created_at: datetime


@dataclass(slots=True)
class WalletRecord:
    id: int
    user_id: int
    address: str
    chain: str


@dataclass(slots=True)
class PositionRecord:
    wallet_ref: int
    protocol: str
    pool_id: str
    asset_symbol: str
    balance: str
    apy: float
    tvl_usd: float


@dataclass(slots=True)
class RecommendationRecord:
    id: int
    user_id: int
    from_pool_id: Optional[str]
    from_protocol: Optional[str]
    to_pool_id: str
    to_protocol: str
    asset_symbol: str
    from_asset_symbol: Optional[str]
    amount: str
    current_apy: Optional[float]
    target_apy: float
    net_gain_usd_per_year: float
    risk_score: int
    reason: str
    status: RecommendationStatus
    created_at: datetime
    executed_at: Optional[datetime]
    shift_id: Optional[str]

    @property
    def source_asset(self) -> str:
        return self.from_asset_symbol or self.asset_symbol


@dataclass(slots=True)
class RebalanceHistoryRecord:
    id: int
    user_id: int
    recommendation_id: int
    shift_id: str
    from_protocol: Optional[str]
    to_protocol: str
    asset: str
    amount: str
    status: str
    month_bucket: str
    created_at: datetime


def month_bucket(moment: Optional[datetime] = None) -> str:
    """Quota bucket for a timestamp, formatted ``YYYY-MM-01``."""
    moment = moment or datetime.now(timezone.utc)
    return moment.strftime("%Y-%m-01")
