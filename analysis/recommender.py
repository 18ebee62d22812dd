"""Rebalancing recommendation engine.

Compares a user's positions against the yield catalog. An AI model is asked
first when one is configured; anything it returns is validated, and every
failure falls back to the deterministic rule-based generator below.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

from analysis.models import (
    AIRecommendationResult,
    MalformedResponse,
    RebalancePolicy,
    RecommendationDraft,
    ValidRecommendationBatch,
    YieldOpportunity,
)
from storage.models import PositionRecord, RecommendationRecord

logger = logging.getLogger(__name__)


def _balance(position: PositionRecord) -> float:
    try:
        return float(position.balance)
    except (TypeError, ValueError):
        return 0.0


def format_positions(positions: Sequence[PositionRecord]) -> str:
    if not positions:
        return "No current positions (user looking to deploy capital)"
    return "\n".join(
        f"- {p.asset_symbol} in {p.protocol}: ${_balance(p):.2f} @ {p.apy:.2f}% APY"
        for p in positions
    )


def format_opportunities(opportunities: Sequence[YieldOpportunity]) -> str:
    return "\n".join(
        f"- {o.asset_symbol} on {o.chain} ({o.project}): {o.apy_total:.2f}% APY, "
        f"TVL: ${o.tvl_usd / 1_000_000:.1f}M, IL Risk: {o.il_risk}"
        for o in opportunities
    )


def build_prompt(
    positions: Sequence[PositionRecord],
    opportunities: Sequence[YieldOpportunity],
    risk_tolerance: int,
    policy: RebalancePolicy,
) -> str:
    top = list(opportunities)[:policy.prompt_pool_count]
    return f"""
You are a DeFi yield optimization expert. Analyze the user's current positions and available yield opportunities to generate optimal rebalancing recommendations.

User Risk Tolerance: {risk_tolerance}/100 (0 = very conservative, 100 = very aggressive)

Current Positions:
{format_positions(positions)}

Top Available Yield Opportunities:
{format_opportunities(top)}

Market Context:
- Consider gas fees for rebalancing (higher amounts = more worth it)
- Consider impermanent loss risk
- Consider protocol security and TVL
- Consider yield sustainability (base APY vs reward APY)
- Higher risk tolerance = willing to accept IL risk and new protocols
- Lower risk tolerance = prefer established protocols, stable yields

Generate up to {policy.max_recommendations} rebalancing recommendations following these rules:
1. Only recommend moving funds if the APY improvement exceeds {policy.prompt_apy_threshold(risk_tolerance):.1f}% for this user (>{policy.conservative_apy_gain:.1f}% for conservative, >{policy.aggressive_apy_gain:.1f}% for aggressive)
2. Match asset types (don't recommend swapping ETH to USDC unless explicitly profitable)
3. Consider risk score: Low risk (1-3), Medium risk (4-6), High risk (7-10)
4. Calculate estimated annual net gain in USD
5. Provide clear reasoning for each recommendation

Output JSON with this exact structure:
{{
  "recommendations": [
    {{
      "from_pool_id": "current-pool-id or null for new deposit",
      "from_protocol": "current-protocol or null",
      "from_asset": "asset currently held, if different from asset",
      "to_pool_id": "target-pool-id",
      "to_protocol": "target-protocol-name",
      "asset": "asset-symbol",
      "amount": "amount-to-move",
      "current_apy": current APY as number or null,
      "target_apy": target APY as number,
      "net_gain": estimated-annual-gain-usd as number,
      "risk_score": 1-10 integer,
      "reason": "brief explanation of why this is recommended"
    }}
  ]
}}

Only return valid JSON, no other text.
"""


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _optional_str(item: Dict[str, Any], key: str) -> Optional[str]:
    value = item.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string or null")
    return value


def _parse_ai_item(item: Any) -> RecommendationDraft:
    if not isinstance(item, dict):
        raise ValueError("recommendation is not an object")
    for key in ("to_pool_id", "to_protocol", "asset", "reason"):
        if not isinstance(item.get(key), str) or not item[key].strip():
            raise ValueError(f"{key} missing")
    amount = item.get("amount")
    if _is_number(amount):
        amount = str(amount)
    if not isinstance(amount, str) or not amount.strip():
        raise ValueError("amount missing")
    for key in ("target_apy", "net_gain"):
        if not _is_number(item.get(key)):
            raise ValueError(f"{key} must be a number")
    current_apy = item.get("current_apy")
    if current_apy is not None and not _is_number(current_apy):
        raise ValueError("current_apy must be a number or null")
    risk_score = item.get("risk_score")
    if not isinstance(risk_score, int) or isinstance(risk_score, bool) or not 1 <= risk_score <= 10:
        raise ValueError("risk_score must be an integer between 1 and 10")

    return RecommendationDraft(
        from_pool_id=_optional_str(item, "from_pool_id"),
        from_protocol=_optional_str(item, "from_protocol"),
        from_asset_symbol=_optional_str(item, "from_asset"),
        to_pool_id=item["to_pool_id"],
        to_protocol=item["to_protocol"],
        asset_symbol=item["asset"],
        amount=amount,
        current_apy=float(current_apy) if current_apy is not None else None,
        target_apy=float(item["target_apy"]),
        net_gain_usd_per_year=float(item["net_gain"]),
        risk_score=risk_score,
        reason=item["reason"].strip(),
    )


def parse_ai_recommendations(payload: Any, max_recommendations: int = 5) -> AIRecommendationResult:
    """Validates an untrusted model payload into a batch or a MalformedResponse."""
    if not isinstance(payload, dict):
        return MalformedResponse(reason="response is not a JSON object")
    items = payload.get("recommendations")
    if not isinstance(items, list):
        return MalformedResponse(reason="recommendations array missing")
    drafts: List[RecommendationDraft] = []
    for index, item in enumerate(items[:max_recommendations]):
        try:
            drafts.append(_parse_ai_item(item))
        except ValueError as exc:
            return MalformedResponse(reason=f"recommendation {index}: {exc}")
    return ValidRecommendationBatch(drafts=drafts)


def dedupe_drafts(drafts: Sequence[RecommendationDraft]) -> List[RecommendationDraft]:
    """Keeps the first draft per (target pool, asset); later repeats are dropped."""
    seen = set()
    unique: List[RecommendationDraft] = []
    for draft in drafts:
        key = (draft.to_pool_id, draft.asset_symbol)
        if key in seen:
            continue
        seen.add(key)
        unique.append(draft)
    return unique


def build_fallback_recommendations(
    positions: Sequence[PositionRecord],
    opportunities: Sequence[YieldOpportunity],
    risk_tolerance: int,
    policy: RebalancePolicy = RebalancePolicy(),
) -> List[RecommendationDraft]:
    """Rule-based recommendations. Pure: identical inputs give identical output.

    ``opportunities`` must already be sorted by APY descending, so the first
    match for a position is its best candidate.
    """
    max_risk = policy.max_risk_for(risk_tolerance)
    candidates = [o for o in opportunities if policy.risk_contribution(o) <= max_risk]
    drafts: List[RecommendationDraft] = []

    for position in positions:
        best = next(
            (
                o for o in candidates
                if position.asset_symbol in o.asset_symbol
                and o.apy_total > position.apy + policy.fallback_min_apy_gain
            ),
            None,
        )
        if best is None:
            continue
        apy_diff = best.apy_total - position.apy
        drafts.append(
            RecommendationDraft(
                from_pool_id=position.pool_id,
                from_protocol=position.protocol,
                from_asset_symbol=position.asset_symbol,
                to_pool_id=best.pool_id,
                to_protocol=best.project,
                asset_symbol=position.asset_symbol,
                amount=position.balance,
                current_apy=position.apy,
                target_apy=best.apy_total,
                net_gain_usd_per_year=_balance(position) * apy_diff / 100,
                risk_score=6 if best.il_risk == 'yes' else 3,
                reason=f"Higher APY available: {best.apy_total:.2f}% vs {position.apy:.2f}% (+{apy_diff:.2f}%)",
            )
        )

    if not positions and candidates:
        top_stable = next(
            (o for o in candidates if any(marker in o.asset_symbol for marker in policy.stablecoin_markers)),
            None,
        )
        if top_stable is not None:
            # Reference amount only; the user has no balance to read.
            amount = float(policy.new_deposit_amount)
            drafts.append(
                RecommendationDraft(
                    from_pool_id=None,
                    from_protocol=None,
                    to_pool_id=top_stable.pool_id,
                    to_protocol=top_stable.project,
                    asset_symbol=top_stable.asset_symbol,
                    amount=policy.new_deposit_amount,
                    current_apy=None,
                    target_apy=top_stable.apy_total,
                    net_gain_usd_per_year=amount * top_stable.apy_total / 100,
                    risk_score=5 if top_stable.il_risk == 'yes' else 2,
                    reason=f"Top stablecoin yield: {top_stable.apy_total:.2f}% on {top_stable.project}",
                )
            )

    # Positions arrive largest balance first, so the kept draft moves the most.
    return dedupe_drafts(drafts)[:policy.max_recommendations]


class RecommendationEngine:
    def __init__(
        self,
        repository,
        catalog_client,
        ai_client=None,
        policy: RebalancePolicy = RebalancePolicy(),
    ):
        self.repository = repository
        self.catalog_client = catalog_client
        self.ai_client = ai_client
        self.policy = policy

    async def build_drafts(self, user_id: int, risk_tolerance: int = 50) -> List[RecommendationDraft]:
        """Produces up to ``max_recommendations`` drafts without persisting them."""
        positions = await self.repository.fetch_positions(user_id)
        opportunities = await self.catalog_client.fetch_top_yields(
            min_tvl_usd=self.policy.min_tvl_usd,
            limit=self.policy.catalog_limit,
        )

        if self.ai_client is not None and opportunities:
            drafts = await self._ai_drafts(positions, opportunities, risk_tolerance)
            if drafts is not None:
                return drafts

        return build_fallback_recommendations(positions, opportunities, risk_tolerance, self.policy)

    async def _ai_drafts(
        self,
        positions: Sequence[PositionRecord],
        opportunities: Sequence[YieldOpportunity],
        risk_tolerance: int,
    ) -> Optional[List[RecommendationDraft]]:
        prompt = build_prompt(positions, opportunities, risk_tolerance, self.policy)
        try:
            payload = await self.ai_client.generate_json(prompt)
        except Exception as exc:
            logger.warning("AI recommendation request failed, using rule-based fallback: %s", exc)
            return None

        result = parse_ai_recommendations(payload, self.policy.max_recommendations)
        if isinstance(result, MalformedResponse):
            logger.warning("AI returned invalid format (%s), using rule-based fallback", result.reason)
            return None
        return dedupe_drafts(result.drafts)

    async def generate_recommendations(self, user_id: int, risk_tolerance: int = 50) -> List[RecommendationRecord]:
        """Generates a fresh batch and stores it, replacing the user's pending recommendations."""
        drafts = await self.build_drafts(user_id, risk_tolerance)
        records = await self.repository.replace_pending_recommendations(user_id, drafts)
        logger.info("Generated %d recommendations for user %s", len(records), user_id)
        return records
