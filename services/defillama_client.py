#!/usr/bin/env python3
import asyncio
import time
from typing import Optional, Dict, List

import aiohttp
from analysis.models import YieldOpportunity
from constants import (DEFILLAMA_YIELDS_URL, C_RED, C_RESET)

def log_error(message: str) -> None:
    """Centralized error logging."""
    print(f"{C_RED}{message}{C_RESET}")

async def api_get(url: str, session: aiohttp.ClientSession, retries: int = 3, timeout: int = 30) -> Optional[Dict]:
    """Makes an async GET request with retries and timeout."""
    for attempt in range(retries):
        try:
            async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as response:
                response.raise_for_status()
                return await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            if attempt < retries - 1:
                await asyncio.sleep(2)
            else:
                log_error(f"API request failed after {retries} attempts: {e}")
                return None
    return None


def _to_float(value) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _normalise_il_risk(value) -> str:
    text = str(value).strip().lower() if value is not None else ''
    return text if text in ('yes', 'no') else 'unknown'


def parse_pool(pool: Dict) -> Optional[YieldOpportunity]:
    """Maps a raw DefiLlama pool object onto a YieldOpportunity, or None when unusable."""
    if not isinstance(pool, dict):
        return None
    symbol = pool.get('symbol')
    project = pool.get('project')
    pool_id = pool.get('pool')
    tvl = _to_float(pool.get('tvlUsd'))
    apy = _to_float(pool.get('apy'))
    if not symbol or not project or not pool_id or tvl is None or apy is None:
        return None
    return YieldOpportunity(
        pool_id=str(pool_id),
        chain=str(pool.get('chain') or 'unknown'),
        project=str(project),
        asset_symbol=str(symbol),
        tvl_usd=tvl,
        apy_total=apy,
        apy_base=_to_float(pool.get('apyBase')),
        apy_reward=_to_float(pool.get('apyReward')),
        il_risk=_normalise_il_risk(pool.get('ilRisk')),
        exposure=pool.get('exposure'),
    )


class DefiLlamaClient:
    """Reads the public DefiLlama yields catalog."""

    def __init__(self, session: aiohttp.ClientSession, url: str = DEFILLAMA_YIELDS_URL, cache_ttl: float = 60.0):
        self.session = session
        self.url = url
        self._cache_ttl = cache_ttl
        self._cache: Optional[List[YieldOpportunity]] = None
        self._cache_time = 0.0

    async def _load_pools(self) -> List[YieldOpportunity]:
        if self._cache is not None and time.time() - self._cache_time < self._cache_ttl:
            return self._cache

        data = await api_get(self.url, self.session)
        if not data or not isinstance(data.get('data'), list):
            log_error("Could not parse pool list from DefiLlama yields response.")
            return []

        pools = [opp for opp in (parse_pool(raw) for raw in data['data']) if opp is not None]
        self._cache = pools
        self._cache_time = time.time()
        return pools

    async def fetch_top_yields(self, min_tvl_usd: float = 1_000_000, limit: int = 50) -> List[YieldOpportunity]:
        """Highest-APY pools above ``min_tvl_usd``. Returns [] when the catalog is unavailable."""
        try:
            pools = await self._load_pools()
        except Exception as e:
            log_error(f"Error fetching yields from DefiLlama: {e}")
            return []

        filtered = [
            p for p in pools
            if p.tvl_usd >= min_tvl_usd
            and 0 < p.apy_total < 1000  # filters out data errors
        ]
        filtered.sort(key=lambda p: p.apy_total, reverse=True)
        return filtered[:limit]
