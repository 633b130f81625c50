"""
Contact-unlock entitlement rules.

Everything here is pure: callers pass an `EntitlementRecord` snapshot and `now`,
and get back a `Decision` describing whether to grant and how the record changes.
Persisting that change is the contact store's job.

The free quota is a two-state machine per user:

    VALID    -- reset_at is set and fewer than `period_days` whole days have passed
    EXPIRED  -- reset_at is null, or at least `period_days` whole days have passed

An EXPIRED quota is reset (refilled, reset_at := now) before the grant is decided,
in the same decision.
"""

from __future__ import annotations

import datetime as dt
import enum
from dataclasses import dataclass

from directrent.tiers import FREE_TIER, SubscriptionTier, parse_tier

_ONE_DAY = dt.timedelta(days=1)

QUOTA_EXHAUSTED = "quota exhausted"


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def as_utc(value: dt.datetime | None) -> dt.datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


class Outcome(str, enum.Enum):
    ALLOW = "ALLOW"
    DENY = "DENY"


class QuotaState(str, enum.Enum):
    VALID = "VALID"
    EXPIRED = "EXPIRED"


@dataclass(frozen=True)
class EntitlementRecord:
    user_id: int
    free_contacts_remaining: int = FREE_TIER.contacts_per_period or 0
    free_contacts_reset_at: dt.datetime | None = None
    subscription_tier: SubscriptionTier = SubscriptionTier.FREE
    subscription_expires_at: dt.datetime | None = None
    version: int = 0

    def __post_init__(self) -> None:
        # Normalize whatever the store handed us.
        object.__setattr__(self, "subscription_tier", parse_tier(self.subscription_tier))
        object.__setattr__(self, "free_contacts_reset_at", as_utc(self.free_contacts_reset_at))
        object.__setattr__(self, "subscription_expires_at", as_utc(self.subscription_expires_at))
        object.__setattr__(self, "free_contacts_remaining", max(0, int(self.free_contacts_remaining or 0)))


@dataclass(frozen=True)
class Decision:
    outcome: Outcome
    reset_applied: bool
    new_remaining: int
    new_reset_at: dt.datetime | None
    cost: int
    subscription_active: bool
    reason: str | None = None

    @property
    def allowed(self) -> bool:
        return self.outcome is Outcome.ALLOW

    @property
    def mutates_record(self) -> bool:
        return self.allowed and (self.reset_applied or self.cost > 0)


def days_since(then: dt.datetime, now: dt.datetime) -> int:
    """Whole days between two instants, floored (negative if `then` is in the future)."""
    return (as_utc(now) - as_utc(then)) // _ONE_DAY


def quota_state(
    record: EntitlementRecord,
    now: dt.datetime,
    *,
    period_days: int = FREE_TIER.period_days,
) -> QuotaState:
    reset_at = record.free_contacts_reset_at
    if reset_at is None:
        return QuotaState.EXPIRED
    if days_since(reset_at, now) >= period_days:
        return QuotaState.EXPIRED
    return QuotaState.VALID


def is_subscription_active(record: EntitlementRecord, now: dt.datetime) -> bool:
    if record.subscription_tier is SubscriptionTier.FREE:
        return False
    expires_at = record.subscription_expires_at
    return expires_at is not None and expires_at > as_utc(now)


def effective_remaining(
    record: EntitlementRecord,
    now: dt.datetime,
    *,
    quota: int | None = None,
    period_days: int = FREE_TIER.period_days,
) -> int:
    """Free contacts the user would have if asked right now (reset applied, nothing spent)."""
    if quota_state(record, now, period_days=period_days) is QuotaState.EXPIRED:
        return _free_quota(quota)
    return record.free_contacts_remaining


def evaluate(
    record: EntitlementRecord,
    now: dt.datetime,
    *,
    quota: int | None = None,
    period_days: int = FREE_TIER.period_days,
) -> Decision:
    now = as_utc(now)

    reset_applied = quota_state(record, now, period_days=period_days) is QuotaState.EXPIRED
    if reset_applied:
        remaining = _free_quota(quota)
        reset_at = now
    else:
        remaining = record.free_contacts_remaining
        reset_at = record.free_contacts_reset_at

    active = is_subscription_active(record, now)
    if active:
        return Decision(Outcome.ALLOW, reset_applied, remaining, reset_at, cost=0, subscription_active=True)
    if remaining > 0:
        return Decision(Outcome.ALLOW, reset_applied, remaining - 1, reset_at, cost=1, subscription_active=False)
    return Decision(
        Outcome.DENY,
        reset_applied,
        remaining,
        reset_at,
        cost=0,
        subscription_active=False,
        reason=QUOTA_EXHAUSTED,
    )


def _free_quota(quota: int | None) -> int:
    if quota is None:
        return int(FREE_TIER.contacts_per_period or 0)
    return max(0, int(quota))
