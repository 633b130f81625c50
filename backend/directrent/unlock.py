"""
Contact unlock: disclose a listing owner's phone number once per (user, listing)
pair, charging the free quota unless a subscription is active.

The decision comes from `entitlements.evaluate`; the grant insert and the record
write land together through `ContactStore.commit_unlock`. A record that changed
between read and commit is simply re-read and re-evaluated: each such conflict
means another unlock committed, and the quota it draws from is finite, so the
loop always ends in a commit or a DENY.
"""

from __future__ import annotations

import datetime as dt
import enum
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from directrent.entitlements import (
    EntitlementRecord,
    as_utc,
    effective_remaining,
    evaluate,
    is_subscription_active,
    utcnow,
)
from directrent.errors import NotFound
from directrent.storage.base import ContactStore, DuplicateGrant, Listing, OwnerContact, StaleEntitlement, UnlockGrant
from directrent.tiers import quota_for, upsell_options

logger = logging.getLogger(__name__)

UNLIMITED = "unlimited"

_DENY_ERROR = "No contacts remaining"
_DENY_MESSAGE = "You have used all your free contacts this month. Upgrade to Premium to continue."


class UnlockOutcome(str, enum.Enum):
    ALLOWED = "ALLOWED"
    ALREADY_UNLOCKED = "ALREADY_UNLOCKED"
    DENIED = "DENIED"


@dataclass(frozen=True)
class UnlockResult:
    outcome: UnlockOutcome
    property_id: int
    owner: OwnerContact | None = None
    contacts_remaining: int | str | None = None
    reason: str | None = None
    subscription_tiers: list[dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.outcome is not UnlockOutcome.DENIED

    @property
    def already_unlocked(self) -> bool:
        return self.outcome is UnlockOutcome.ALREADY_UNLOCKED

    def to_payload(self) -> dict[str, Any]:
        if self.outcome is UnlockOutcome.DENIED:
            return {
                "error": _DENY_ERROR,
                "requiresSubscription": True,
                "message": _DENY_MESSAGE,
                "subscriptionTiers": list(self.subscription_tiers),
            }
        out: dict[str, Any] = {"success": True}
        if self.already_unlocked:
            out["alreadyUnlocked"] = True
        out["owner"] = self.owner.to_payload() if self.owner else None
        out["contactsRemaining"] = self.contacts_remaining
        return out


@dataclass(frozen=True)
class UnlockStatus:
    is_unlocked: bool
    free_contacts_remaining: int
    subscription_tier: str
    subscription_active: bool

    def to_payload(self) -> dict[str, Any]:
        return {
            "isUnlocked": self.is_unlocked,
            "freeContactsRemaining": self.free_contacts_remaining,
            "subscriptionTier": self.subscription_tier,
            "subscriptionActive": self.subscription_active,
        }


def contacts_remaining(record: EntitlementRecord, now: dt.datetime) -> int | str:
    """
    What the client shows as "contacts left": the tier allowance while subscribed
    (or "unlimited"), otherwise the free count.
    """
    if is_subscription_active(record, now):
        quota = quota_for(record.subscription_tier)
        return UNLIMITED if quota.is_unlimited else int(quota.count or 0)
    return effective_remaining(record, now)


class ContactUnlockService:
    def __init__(self, store: ContactStore, clock: Callable[[], dt.datetime] = utcnow) -> None:
        self.store = store
        self.clock = clock

    def _now(self, now: dt.datetime | None) -> dt.datetime:
        return as_utc(now) if now is not None else self.clock()

    def _listing(self, property_id: int) -> Listing:
        listing = self.store.get_property(property_id)
        if listing is None or listing.is_removed:
            raise NotFound("Property")
        return listing

    def _record(self, user_id: int) -> EntitlementRecord:
        record = self.store.get_entitlement(user_id)
        if record is None:
            raise NotFound("User")
        return record

    def _already_unlocked(self, record: EntitlementRecord, listing: Listing, now: dt.datetime) -> UnlockResult:
        return UnlockResult(
            outcome=UnlockOutcome.ALREADY_UNLOCKED,
            property_id=listing.id,
            owner=listing.owner,
            contacts_remaining=contacts_remaining(record, now),
        )

    def unlock(self, user_id: int, property_id: int, now: dt.datetime | None = None) -> UnlockResult:
        now = self._now(now)
        listing = self._listing(property_id)

        if self.store.find_grant(user_id, listing.id) is not None:
            return self._already_unlocked(self._record(user_id), listing, now)

        for attempt in itertools.count(1):
            record = self._record(user_id)
            decision = evaluate(record, now)
            if not decision.allowed:
                logger.info("contact unlock denied user=%s property=%s reason=%s", user_id, listing.id, decision.reason)
                return UnlockResult(
                    outcome=UnlockOutcome.DENIED,
                    property_id=listing.id,
                    reason=decision.reason,
                    subscription_tiers=upsell_options(),
                )

            try:
                updated = self.store.commit_unlock(seen=record, property_id=listing.id, decision=decision, now=now)
            except DuplicateGrant:
                # A concurrent request for the same pair won; its grant is ours too.
                logger.info("contact unlock raced user=%s property=%s; returning existing grant", user_id, listing.id)
                return self._already_unlocked(self._record(user_id), listing, now)
            except StaleEntitlement:
                logger.warning(
                    "entitlement changed during unlock user=%s property=%s attempt=%s", user_id, listing.id, attempt
                )
                continue

            logger.info(
                "contact unlocked user=%s property=%s cost=%s reset=%s remaining=%s",
                user_id,
                listing.id,
                decision.cost,
                decision.reset_applied,
                updated.free_contacts_remaining,
            )
            return UnlockResult(
                outcome=UnlockOutcome.ALLOWED,
                property_id=listing.id,
                owner=listing.owner,
                contacts_remaining=contacts_remaining(updated, now),
            )

    def status(self, user_id: int, property_id: int, now: dt.datetime | None = None) -> UnlockStatus:
        now = self._now(now)
        record = self._record(user_id)
        return UnlockStatus(
            is_unlocked=self.store.find_grant(user_id, int(property_id)) is not None,
            free_contacts_remaining=effective_remaining(record, now),
            subscription_tier=record.subscription_tier.value,
            subscription_active=is_subscription_active(record, now),
        )

    def unlocked_contacts(self, user_id: int) -> list[tuple[UnlockGrant, Listing]]:
        return self.store.list_unlocked(user_id)
