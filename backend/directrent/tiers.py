"""
Subscription tier catalog (static).

Prices are monthly, in Ghana cedis. "Unlimited" is an explicit flag, never a large number.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any

CURRENCY = "GH₵"


class SubscriptionTier(str, enum.Enum):
    FREE = "FREE"
    BASIC = "BASIC"
    RELAX = "RELAX"
    SUPERUSER = "SUPERUSER"


@dataclass(frozen=True)
class Quota:
    is_unlimited: bool
    count: int | None  # None when unlimited

    def display(self) -> int | str:
        return "Unlimited" if self.is_unlimited else int(self.count or 0)


@dataclass(frozen=True)
class TierDefinition:
    tier: SubscriptionTier
    name: str
    monthly_price_cedis: int
    contacts_per_period: int | None
    period_days: int = 30
    features: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_unlimited(self) -> bool:
        return self.contacts_per_period is None

    @property
    def quota(self) -> Quota:
        return Quota(is_unlimited=self.is_unlimited, count=self.contacts_per_period)


TIER_CATALOG: dict[SubscriptionTier, TierDefinition] = {
    SubscriptionTier.FREE: TierDefinition(
        SubscriptionTier.FREE,
        "Free",
        0,
        3,
        features=("3 owner contacts/month", "Basic property search", "Save favorites"),
    ),
    SubscriptionTier.BASIC: TierDefinition(
        SubscriptionTier.BASIC,
        "Basic",
        50,
        15,
        features=("15 owner contacts/month", "Priority search results", "Agreement templates", "Email support"),
    ),
    SubscriptionTier.RELAX: TierDefinition(
        SubscriptionTier.RELAX,
        "Relax",
        100,
        40,
        features=(
            "40 owner contacts/month",
            "Priority search results",
            "Agreement templates",
            "Home services discount",
            "Priority support",
        ),
    ),
    SubscriptionTier.SUPERUSER: TierDefinition(
        SubscriptionTier.SUPERUSER,
        "SuperUser",
        200,
        None,
        features=(
            "Unlimited owner contacts",
            "Top search placement",
            "All agreement features",
            "Maximum discounts",
            "Dedicated support",
            "Verified badge",
        ),
    ),
}

FREE_TIER = TIER_CATALOG[SubscriptionTier.FREE]


def parse_tier(value: str | SubscriptionTier | None) -> SubscriptionTier:
    """Unknown or empty values from storage are treated as FREE."""
    if isinstance(value, SubscriptionTier):
        return value
    try:
        return SubscriptionTier((value or "FREE").strip().upper())
    except ValueError:
        return SubscriptionTier.FREE


def definition_for(tier: str | SubscriptionTier) -> TierDefinition:
    return TIER_CATALOG[parse_tier(tier)]


def quota_for(tier: str | SubscriptionTier) -> Quota:
    return definition_for(tier).quota


def price_for(tier: str | SubscriptionTier) -> int:
    return definition_for(tier).monthly_price_cedis


def paid_tiers() -> list[TierDefinition]:
    return [d for t, d in TIER_CATALOG.items() if t is not SubscriptionTier.FREE]


def upsell_options() -> list[dict[str, Any]]:
    return [
        {"tier": d.tier.value, "price": d.monthly_price_cedis, "contacts": d.quota.display(), "currency": CURRENCY}
        for d in paid_tiers()
    ]


def tier_out(d: TierDefinition) -> dict[str, Any]:
    return {
        "tier": d.tier.value,
        "name": d.name,
        "price": d.monthly_price_cedis,
        "contacts": d.quota.display(),
        "duration": f"{d.period_days} days",
        "currency": CURRENCY,
        "features": list(d.features),
    }


def tier_catalog_out() -> list[dict[str, Any]]:
    return [tier_out(d) for d in TIER_CATALOG.values()]
