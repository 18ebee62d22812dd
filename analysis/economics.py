#!/usr/bin/env python3
import math
from dataclasses import dataclass
from typing import Optional

from constants import ESTIMATED_REBALANCE_GAS_COST_USD, MIN_DAYS_TO_BREAKEVEN


@dataclass
class SimulationResult:
    """Advisory cost/benefit estimate for one rebalance."""
    estimated_cost_usd: float
    estimated_annual_gain: float
    estimated_daily_gain: float
    breakeven_days: Optional[int]  # None when the move never pays back


def estimate_rebalance_economics(
    amount: float,
    apy_difference_pct: float,
    estimated_cost: float = ESTIMATED_REBALANCE_GAS_COST_USD,
) -> SimulationResult:
    annual_gain = amount * apy_difference_pct / 100
    daily_gain = annual_gain / 365
    breakeven_days = math.ceil(estimated_cost / daily_gain) if daily_gain > 0 else None
    return SimulationResult(
        estimated_cost_usd=estimated_cost,
        estimated_annual_gain=annual_gain,
        estimated_daily_gain=daily_gain,
        breakeven_days=breakeven_days,
    )


def is_rebalance_worthwhile(
    amount: float,
    apy_difference_pct: float,
    estimated_cost: float = ESTIMATED_REBALANCE_GAS_COST_USD,
    min_days_to_breakeven: float = MIN_DAYS_TO_BREAKEVEN,
) -> bool:
    """True only if the cost is recovered within ``min_days_to_breakeven`` AND the
    annual gain exceeds twice the cost."""
    annual_gain = amount * apy_difference_pct / 100
    daily_gain = annual_gain / 365
    if daily_gain <= 0:
        return False
    days_to_breakeven = estimated_cost / daily_gain
    return days_to_breakeven <= min_days_to_breakeven and annual_gain > estimated_cost * 2
