from __future__ import annotations

import datetime as dt
import itertools
from collections import Counter
from dataclasses import dataclass, replace
from threading import Lock

from directrent.entitlements import Decision, EntitlementRecord, is_subscription_active, utcnow
from directrent.storage.base import (
    LISTING_AVAILABLE,
    LISTING_REMOVED,
    ContactStore,
    DuplicateGrant,
    DuplicatePhone,
    DuplicateReference,
    Listing,
    OwnerContact,
    PaymentRecord,
    StaleEntitlement,
    UnlockGrant,
    UserAccount,
)
from directrent.tiers import SubscriptionTier

_EDITABLE_FIELDS = frozenset({"title", "description", "price", "city", "neighborhood", "status"})
_EPOCH = dt.datetime(1970, 1, 1, tzinfo=dt.timezone.utc)


@dataclass(frozen=True)
class _PropertyRow:
    id: int
    owner_id: int
    title: str
    description: str
    price: int
    city: str
    neighborhood: str
    status: str
    created_at: dt.datetime


class MemoryContactStore(ContactStore):
    """
    Process-local ContactStore (per-process, lost on restart).

    One lock guards every table, so `commit_unlock` is atomic the same way a
    database transaction would be. Meant for local dev and tests.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._ids = itertools.count(1)
        self._users: dict[int, UserAccount] = {}
        self._records: dict[int, EntitlementRecord] = {}
        self._properties: dict[int, _PropertyRow] = {}
        self._grants: dict[tuple[int, int], UnlockGrant] = {}
        self._payments: dict[str, PaymentRecord] = {}

    # -----------------------
    # Users
    # -----------------------
    def create_user(self, *, phone: str, full_name: str, password_hash: str, role: str = "tenant") -> UserAccount:
        with self._lock:
            if any(u.phone == phone for u in self._users.values()):
                raise DuplicatePhone(phone)
            user = UserAccount(
                id=next(self._ids),
                phone=phone,
                full_name=full_name,
                role=role,
                password_hash=password_hash,
                created_at=utcnow(),
            )
            self._users[user.id] = user
            self._records[user.id] = EntitlementRecord(user_id=user.id)
            return user

    def get_user(self, user_id: int) -> UserAccount | None:
        return self._users.get(int(user_id))

    def find_user_by_phone(self, phone: str) -> UserAccount | None:
        with self._lock:
            return next((u for u in self._users.values() if u.phone == phone), None)

    def list_users(
        self, *, role: str | None = None, search: str | None = None, offset: int = 0, limit: int = 20
    ) -> tuple[list[UserAccount], int]:
        needle = (search or "").strip().lower()
        with self._lock:
            users = [
                u
                for u in self._users.values()
                if (not role or u.role == role)
                and (not needle or needle in u.full_name.lower() or needle in u.phone)
            ]
        users.sort(key=lambda u: (u.created_at, u.id), reverse=True)
        return users[offset : offset + limit], len(users)

    # -----------------------
    # Listings
    # -----------------------
    def create_property(
        self,
        *,
        owner_id: int,
        title: str,
        description: str = "",
        price: int = 0,
        city: str = "",
        neighborhood: str = "",
    ) -> Listing:
        with self._lock:
            row = _PropertyRow(
                id=next(self._ids),
                owner_id=int(owner_id),
                title=title,
                description=description,
                price=int(price),
                city=city,
                neighborhood=neighborhood,
                status=LISTING_AVAILABLE,
                created_at=utcnow(),
            )
            self._properties[row.id] = row
            return self._listing(row)

    def get_property(self, property_id: int) -> Listing | None:
        row = self._properties.get(int(property_id))
        return self._listing(row) if row else None

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
        city_l = (city or "").strip().lower()
        hood_l = (neighborhood or "").strip().lower()
        with self._lock:
            rows = [
                r
                for r in self._properties.values()
                if r.status == LISTING_AVAILABLE
                and (not city_l or r.city.lower() == city_l)
                and (not hood_l or hood_l in r.neighborhood.lower())
                and (min_price is None or r.price >= min_price)
                and (max_price is None or r.price <= max_price)
            ]
            if sort == "price_asc":
                rows.sort(key=lambda r: (r.price, -r.id))
            elif sort == "price_desc":
                rows.sort(key=lambda r: (-r.price, -r.id))
            else:
                rows.sort(key=lambda r: (r.created_at, r.id), reverse=True)
            return [self._listing(r) for r in rows[offset : offset + limit]], len(rows)

    def list_owner_properties(self, owner_id: int) -> list[Listing]:
        with self._lock:
            rows = [r for r in self._properties.values() if r.owner_id == int(owner_id) and r.status != LISTING_REMOVED]
            rows.sort(key=lambda r: (r.created_at, r.id), reverse=True)
            return [self._listing(r) for r in rows]

    def update_property(self, property_id: int, **changes) -> Listing | None:
        with self._lock:
            row = self._properties.get(int(property_id))
            if row is None:
                return None
            row = replace(row, **{k: v for k, v in changes.items() if k in _EDITABLE_FIELDS})
            self._properties[row.id] = row
            return self._listing(row)

    def _listing(self, row: _PropertyRow) -> Listing:
        owner = self._users[row.owner_id]
        return Listing(
            id=row.id,
            owner=OwnerContact(id=owner.id, phone=owner.phone, full_name=owner.full_name),
            title=row.title,
            description=row.description,
            price=row.price,
            city=row.city,
            neighborhood=row.neighborhood,
            status=row.status,
            created_at=row.created_at,
        )

    # -----------------------
    # Entitlements + unlock ledger
    # -----------------------
    def get_entitlement(self, user_id: int) -> EntitlementRecord | None:
        return self._records.get(int(user_id))

    def activate_subscription(
        self, user_id: int, tier: SubscriptionTier, expires_at: dt.datetime
    ) -> EntitlementRecord | None:
        with self._lock:
            rec = self._records.get(int(user_id))
            if rec is None:
                return None
            rec = replace(rec, subscription_tier=tier, subscription_expires_at=expires_at, version=rec.version + 1)
            self._records[rec.user_id] = rec
            return rec

    def override_entitlement(
        self,
        user_id: int,
        *,
        tier: SubscriptionTier,
        expires_at: dt.datetime | None,
        free_contacts_remaining: int,
        free_contacts_reset_at: dt.datetime | None,
    ) -> EntitlementRecord | None:
        with self._lock:
            rec = self._records.get(int(user_id))
            if rec is None:
                return None
            rec = replace(
                rec,
                subscription_tier=tier,
                subscription_expires_at=expires_at,
                free_contacts_remaining=free_contacts_remaining,
                free_contacts_reset_at=free_contacts_reset_at,
                version=rec.version + 1,
            )
            self._records[rec.user_id] = rec
            return rec

    def _subscribers(self, now: dt.datetime, tier: SubscriptionTier | None, active: bool | None) -> list:
        out = []
        for uid, rec in self._records.items():
            if rec.subscription_tier is SubscriptionTier.FREE:
                continue
            if tier is not None and rec.subscription_tier is not tier:
                continue
            if active is not None and is_subscription_active(rec, now) is not active:
                continue
            out.append((self._users[uid], rec))
        return out

    def list_subscribers(
        self,
        *,
        now: dt.datetime,
        tier: SubscriptionTier | None = None,
        active: bool | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[tuple[UserAccount, EntitlementRecord]], int]:
        with self._lock:
            rows = self._subscribers(now, tier, active)
        rows.sort(key=lambda ur: (ur[1].subscription_expires_at or _EPOCH, ur[0].id), reverse=True)
        return rows[offset : offset + limit], len(rows)

    def active_subscriber_counts(self, now: dt.datetime) -> dict[SubscriptionTier, int]:
        with self._lock:
            rows = self._subscribers(now, None, True)
        return dict(Counter(rec.subscription_tier for _, rec in rows))

    def find_grant(self, user_id: int, property_id: int) -> UnlockGrant | None:
        return self._grants.get((int(user_id), int(property_id)))

    def unlocked_property_ids(self, user_id: int, property_ids: list[int]) -> set[int]:
        return {int(pid) for pid in property_ids if (int(user_id), int(pid)) in self._grants}

    def list_unlocked(self, user_id: int) -> list[tuple[UnlockGrant, Listing]]:
        with self._lock:
            grants = [g for (uid, _), g in self._grants.items() if uid == int(user_id)]
        grants.sort(key=lambda g: g.unlocked_at, reverse=True)
        out = []
        for g in grants:
            listing = self.get_property(g.property_id)
            if listing is not None:
                out.append((g, listing))
        return out

    def commit_unlock(
        self,
        *,
        seen: EntitlementRecord,
        property_id: int,
        decision: Decision,
        now: dt.datetime,
    ) -> EntitlementRecord:
        key = (seen.user_id, int(property_id))
        with self._lock:
            if key in self._grants:
                raise DuplicateGrant(*key)
            current = self._records.get(seen.user_id)
            if current is None or (decision.mutates_record and current.version != seen.version):
                raise StaleEntitlement(seen.user_id, seen.version)
            if decision.mutates_record:
                current = replace(
                    current,
                    free_contacts_remaining=decision.new_remaining,
                    free_contacts_reset_at=decision.new_reset_at,
                    version=current.version + 1,
                )
                self._records[seen.user_id] = current
            self._grants[key] = UnlockGrant(user_id=key[0], property_id=key[1], unlocked_at=now)
            return current

    # -----------------------
    # Subscription payments
    # -----------------------
    def create_payment(
        self, *, user_id: int, reference: str, tier: SubscriptionTier, amount_cedis: int, provider: str
    ) -> PaymentRecord:
        with self._lock:
            if reference in self._payments:
                raise DuplicateReference(reference)
            rec = PaymentRecord(
                reference=reference,
                user_id=int(user_id),
                tier=tier,
                amount_cedis=int(amount_cedis),
                provider=provider,
                status="pending",
                created_at=utcnow(),
            )
            self._payments[reference] = rec
            return rec

    def get_payment(self, reference: str) -> PaymentRecord | None:
        return self._payments.get(reference)

    def mark_payment_paid(self, reference: str, now: dt.datetime) -> bool:
        with self._lock:
            rec = self._payments.get(reference)
            if rec is None or rec.is_paid:
                return False
            self._payments[reference] = replace(rec, status="paid", paid_at=now)
            return True

    def revenue_by_tier(self) -> dict[SubscriptionTier, tuple[int, int]]:
        out: dict[SubscriptionTier, tuple[int, int]] = {}
        with self._lock:
            for rec in self._payments.values():
                if not rec.is_paid:
                    continue
                count, total = out.get(rec.tier, (0, 0))
                out[rec.tier] = (count + 1, total + rec.amount_cedis)
        return out
