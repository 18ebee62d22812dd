"""Subscription-tier feature gates and the monthly execution quota."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum
from typing import Optional

from constants import (
    DEFAULT_FRONTEND_URL,
    STARTER_MONTHLY_REBALANCE_LIMIT,
    TIER_FREE,
    TIER_INSTITUTIONAL,
    TIER_PROFESSIONAL,
    TIER_STARTER,
)
from storage.models import UserRecord, month_bucket


class SubscriptionTier(IntEnum):
    FREE = 0
    STARTER = 1
    PROFESSIONAL = 2
    INSTITUTIONAL = 3

    @property
    def label(self) -> str:
        return _TIER_LABELS[self]

    @classmethod
    def parse(cls, value: Optional[str]) -> "SubscriptionTier":
        """Unknown or missing tiers are treated as free."""
        return _TIERS_BY_LABEL.get((value or "").strip().lower(), cls.FREE)


_TIER_LABELS = {
    SubscriptionTier.FREE: TIER_FREE,
    SubscriptionTier.STARTER: TIER_STARTER,
    SubscriptionTier.PROFESSIONAL: TIER_PROFESSIONAL,
    SubscriptionTier.INSTITUTIONAL: TIER_INSTITUTIONAL,
}
_TIERS_BY_LABEL = {label: tier for tier, label in _TIER_LABELS.items()}


@dataclass
class EntitlementDecision:
    allowed: bool
    current_tier: SubscriptionTier
    required_tier: Optional[SubscriptionTier] = None
    used: Optional[int] = None
    limit: Optional[int] = None
    message: Optional[str] = None
    upgrade_url: Optional[str] = None

    def to_payload(self) -> dict:
        """Upgrade-prompt detail for a denied request."""
        payload = {
            "error": "Upgrade required",
            "required_plan": self.required_tier.label if self.required_tier is not None else None,
            "current_plan": self.current_tier.label,
            "message": self.message,
            "upgrade_url": self.upgrade_url,
        }
        if self.limit is not None:
            payload["used"] = self.used
            payload["limit"] = self.limit
        return payload


class EntitlementPolicy:
    """Resolves a user's tier into allow/deny decisions.

    free < starter < professional < institutional. Starter executions are
    counted from rebalance history for the current ``YYYY-MM-01`` bucket.
    """

    def __init__(
        self,
        repository,
        starter_monthly_limit: int = STARTER_MONTHLY_REBALANCE_LIMIT,
        upgrade_url: str = f"{DEFAULT_FRONTEND_URL}/pricing",
    ):
        self.repository = repository
        self.starter_monthly_limit = starter_monthly_limit
        self.upgrade_url = upgrade_url

    def _require(self, user: UserRecord, minimum: SubscriptionTier, message: str) -> EntitlementDecision:
        tier = SubscriptionTier.parse(user.subscription_tier)
        if tier >= minimum:
            return EntitlementDecision(allowed=True, current_tier=tier)
        return EntitlementDecision(
            allowed=False,
            current_tier=tier,
            required_tier=minimum,
            message=message,
            upgrade_url=self.upgrade_url,
        )

    def check_recommendation_access(self, user: UserRecord) -> EntitlementDecision:
        return self._require(user, SubscriptionTier.STARTER, "Upgrade to Starter or higher for AI recommendations")

    def check_batch_access(self, user: UserRecord) -> EntitlementDecision:
        return self._require(user, SubscriptionTier.PROFESSIONAL, "Batch execution requires Professional or higher")

    async def check_execution_access(self, user: UserRecord, now: Optional[datetime] = None) -> EntitlementDecision:
        tier = SubscriptionTier.parse(user.subscription_tier)

        if tier >= SubscriptionTier.PROFESSIONAL:
            return EntitlementDecision(allowed=True, current_tier=tier)

        if tier is SubscriptionTier.FREE:
            return EntitlementDecision(
                allowed=False,
                current_tier=tier,
                required_tier=SubscriptionTier.STARTER,
                message="Rebalancing requires a subscription. Upgrade to Starter or higher for auto-rebalancing",
                upgrade_url=self.upgrade_url,
            )

        used = await self.repository.count_history_for_month(user.id, month_bucket(now))
        if used >= self.starter_monthly_limit:
            return EntitlementDecision(
                allowed=False,
                current_tier=tier,
                required_tier=SubscriptionTier.PROFESSIONAL,
                used=used,
                limit=self.starter_monthly_limit,
                message="Monthly rebalance limit reached. Upgrade to Professional for unlimited rebalancing",
                upgrade_url=self.upgrade_url,
            )
        return EntitlementDecision(allowed=True, current_tier=tier, used=used, limit=self.starter_monthly_limit)
