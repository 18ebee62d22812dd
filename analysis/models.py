#!/usr/bin/env python3
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union


@dataclass
class YieldOpportunity:
    """A single pool listing from the yield catalog."""
    pool_id: str
    chain: str
    project: str
    asset_symbol: str
    tvl_usd: float
    apy_total: float
    apy_base: Optional[float] = None
    apy_reward: Optional[float] = None
    il_risk: str = 'unknown'  # 'yes', 'no' or 'unknown'
    exposure: Optional[str] = None


@dataclass
class RecommendationDraft:
    """A candidate move produced by the engine, before it is persisted."""
    to_pool_id: str
    to_protocol: str
    asset_symbol: str
    amount: str
    target_apy: float
    net_gain_usd_per_year: float
    risk_score: int
    reason: str
    from_pool_id: Optional[str] = None
    from_protocol: Optional[str] = None
    current_apy: Optional[float] = None
    from_asset_symbol: Optional[str] = None


@dataclass(frozen=True)
class RebalancePolicy:
    """Business thresholds for recommendation generation.

    Every value here is policy rather than a universal constant; tests and
    deployments override individual fields with ``dataclasses.replace``.
    """
    min_tvl_usd: float = 1_000_000.0
    catalog_limit: int = 50
    prompt_pool_count: int = 20
    max_recommendations: int = 5
    # Minimum APY gain (percentage points) the rule-based generator requires.
    fallback_min_apy_gain: float = 2.0
    # APY gain thresholds handed to the AI prompt.
    conservative_apy_gain: float = 2.0
    aggressive_apy_gain: float = 1.0
    aggressive_tolerance_above: int = 50
    # (tolerance strictly above, max allowed risk) checked in order.
    risk_caps: Tuple[Tuple[int, int], ...] = ((70, 10), (40, 6))
    default_max_risk: int = 3
    il_risk_weight: int = 4
    low_tvl_weight: int = 3
    low_tvl_threshold_usd: float = 10_000_000.0
    new_deposit_amount: str = '1000'
    stablecoin_markers: Tuple[str, ...] = ('USDC', 'USDT', 'DAI')

    def max_risk_for(self, risk_tolerance: int) -> int:
        for above, cap in self.risk_caps:
            if risk_tolerance > above:
                return cap
        return self.default_max_risk

    def risk_contribution(self, opportunity: YieldOpportunity) -> int:
        score = 0
        if opportunity.il_risk == 'yes':
            score += self.il_risk_weight
        if opportunity.tvl_usd < self.low_tvl_threshold_usd:
            score += self.low_tvl_weight
        return score

    def prompt_apy_threshold(self, risk_tolerance: int) -> float:
        if risk_tolerance > self.aggressive_tolerance_above:
            return self.aggressive_apy_gain
        return self.conservative_apy_gain


@dataclass
class ValidRecommendationBatch:
    """AI output that passed validation."""
    drafts: List[RecommendationDraft] = field(default_factory=list)


@dataclass
class MalformedResponse:
    """AI output that was missing, unparseable or failed validation."""
    reason: str


AIRecommendationResult = Union[ValidRecommendationBatch, MalformedResponse]
