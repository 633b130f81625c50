"""
Persistence contract for users, listings, contact-unlock entitlements and payments.

Two backends implement it (SQLAlchemy and in-process memory); the unlock and
subscription flows only ever talk to this interface.
"""

from __future__ import annotations

import abc
import datetime as dt
from dataclasses import dataclass

from directrent.entitlements import Decision, EntitlementRecord
from directrent.tiers import SubscriptionTier


class DuplicateGrant(Exception):
    """Another request already unlocked this (user, property) pair."""

    def __init__(self, user_id: int, property_id: int) -> None:
        super().__init__(f"contact already unlocked: user={user_id} property={property_id}")
        self.user_id = user_id
        self.property_id = property_id


class StaleEntitlement(Exception):
    """The entitlement record changed between read and commit."""

    def __init__(self, user_id: int, seen_version: int) -> None:
        super().__init__(f"entitlement changed under us: user={user_id} seen_version={seen_version}")
        self.user_id = user_id
        self.seen_version = seen_version


class DuplicatePhone(Exception):
    pass


class DuplicateReference(Exception):
    pass


LISTING_AVAILABLE = "available"
LISTING_RENTED = "rented"
# Soft-deleted; kept so the unlock ledger never loses the row it points at.
LISTING_REMOVED = "removed"

LISTING_SORTS = ("newest", "price_asc", "price_desc")


@dataclass(frozen=True)
class UserAccount:
    id: int
    phone: str
    full_name: str
    role: str
    password_hash: str
    created_at: dt.datetime | None = None


@dataclass(frozen=True)
class OwnerContact:
    id: int
    phone: str
    full_name: str

    def to_payload(self) -> dict:
        return {"id": self.id, "phone": self.phone, "fullName": self.full_name}


@dataclass(frozen=True)
class Listing:
    id: int
    owner: OwnerContact
    title: str
    description: str = ""
    price: int = 0
    city: str = ""
    neighborhood: str = ""
    status: str = LISTING_AVAILABLE
    created_at: dt.datetime | None = None

    @property
    def is_removed(self) -> bool:
        return self.status == LISTING_REMOVED


@dataclass(frozen=True)
class UnlockGrant:
    user_id: int
    property_id: int
    unlocked_at: dt.datetime


@dataclass(frozen=True)
class PaymentRecord:
    reference: str
    user_id: int
    tier: SubscriptionTier
    amount_cedis: int
    provider: str
    status: str
    created_at: dt.datetime | None = None
    paid_at: dt.datetime | None = None

    @property
    def is_paid(self) -> bool:
        return self.status == "paid"


class ContactStore(abc.ABC):
    # -----------------------
    # Users
    # -----------------------
    @abc.abstractmethod
    def create_user(self, *, phone: str, full_name: str, password_hash: str, role: str = "tenant") -> UserAccount:
        """Raises DuplicatePhone if the phone is already registered."""

    @abc.abstractmethod
    def get_user(self, user_id: int) -> UserAccount | None: ...

    @abc.abstractmethod
    def find_user_by_phone(self, phone: str) -> UserAccount | None: ...

    @abc.abstractmethod
    def list_users(
        self, *, role: str | None = None, search: str | None = None, offset: int = 0, limit: int = 20
    ) -> tuple[list[UserAccount], int]:
        """Newest first. `search` matches name (case-insensitive) or phone. Returns (page, total)."""

    # -----------------------
    # Listings
    # -----------------------
    @abc.abstractmethod
    def create_property(
        self,
        *,
        owner_id: int,
        title: str,
        description: str = "",
        price: int = 0,
        city: str = "",
        neighborhood: str = "",
    ) -> Listing: ...

    @abc.abstractmethod
    def get_property(self, property_id: int) -> Listing | None:
        """Also returns removed listings; callers decide whether to hide them."""

    @abc.abstractmethod
    def search_properties(
        self,
        *,
        city: str | None = None,
        neighborhood: str | None = None,
        min_price: int | None = None,
        max_price: int | None = None,
        sort: str = "newest",
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[Listing], int]:
        """
        Available listings only. `city` matches exactly (case-insensitive),
        `neighborhood` as a substring. Returns (page, total).
        """

    @abc.abstractmethod
    def list_owner_properties(self, owner_id: int) -> list[Listing]:
        """Every non-removed listing of an owner, newest first."""

    @abc.abstractmethod
    def update_property(self, property_id: int, **changes) -> Listing | None:
        """Apply field changes (title, description, price, city, neighborhood, status)."""

    # -----------------------
    # Entitlements + unlock ledger
    # -----------------------
    @abc.abstractmethod
    def get_entitlement(self, user_id: int) -> EntitlementRecord | None:
        """The user's entitlement record, or None if the user does not exist."""

    @abc.abstractmethod
    def activate_subscription(
        self, user_id: int, tier: SubscriptionTier, expires_at: dt.datetime
    ) -> EntitlementRecord | None: ...

    @abc.abstractmethod
    def override_entitlement(
        self,
        user_id: int,
        *,
        tier: SubscriptionTier,
        expires_at: dt.datetime | None,
        free_contacts_remaining: int,
        free_contacts_reset_at: dt.datetime | None,
    ) -> EntitlementRecord | None:
        """Admin write of the whole record. Bumps the version like any other record write."""

    @abc.abstractmethod
    def list_subscribers(
        self,
        *,
        now: dt.datetime,
        tier: SubscriptionTier | None = None,
        active: bool | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[tuple[UserAccount, EntitlementRecord]], int]:
        """Users on a paid tier, latest expiry first. `active` filters on expiry vs `now`."""

    @abc.abstractmethod
    def active_subscriber_counts(self, now: dt.datetime) -> dict[SubscriptionTier, int]: ...

    @abc.abstractmethod
    def find_grant(self, user_id: int, property_id: int) -> UnlockGrant | None: ...

    @abc.abstractmethod
    def unlocked_property_ids(self, user_id: int, property_ids: list[int]) -> set[int]: ...

    @abc.abstractmethod
    def list_unlocked(self, user_id: int) -> list[tuple[UnlockGrant, Listing]]:
        """Grants for a user, newest first."""

    @abc.abstractmethod
    def commit_unlock(
        self,
        *,
        seen: EntitlementRecord,
        property_id: int,
        decision: Decision,
        now: dt.datetime,
    ) -> EntitlementRecord:
        """
        Insert the grant and apply `decision` to the record, all-or-nothing.

        The record write is conditioned on `seen.version`.
        Raises DuplicateGrant or StaleEntitlement; neither leaves a partial write behind.
        """

    # -----------------------
    # Subscription payments
    # -----------------------
    @abc.abstractmethod
    def create_payment(
        self, *, user_id: int, reference: str, tier: SubscriptionTier, amount_cedis: int, provider: str
    ) -> PaymentRecord:
        """Raises DuplicateReference if the reference was already recorded."""

    @abc.abstractmethod
    def get_payment(self, reference: str) -> PaymentRecord | None: ...

    @abc.abstractmethod
    def mark_payment_paid(self, reference: str, now: dt.datetime) -> bool:
        """Flip a pending payment to paid. False if it was already paid (or unknown)."""

    @abc.abstractmethod
    def revenue_by_tier(self) -> dict[SubscriptionTier, tuple[int, int]]:
        """tier -> (paid payments, revenue in cedis)"""
