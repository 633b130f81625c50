from __future__ import annotations

import datetime as dt
import logging

from sqlalchemy import func, or_, select, update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased

from directrent.entitlements import Decision, EntitlementRecord
from directrent.models import ContactUnlock, Property, SubscriptionPayment, User
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
from directrent.tiers import SubscriptionTier, parse_tier

logger = logging.getLogger(__name__)

_Owner = aliased(User)

_EDITABLE_FIELDS = frozenset({"title", "description", "price", "city", "neighborhood", "status"})

_ENTITLEMENT_COLUMNS = (
    User.id,
    User.free_contacts_remaining,
    User.free_contacts_reset_at,
    User.subscription_tier,
    User.subscription_expires_at,
    User.entitlement_version,
)


def _user_out(u: User) -> UserAccount:
    return UserAccount(
        id=u.id,
        phone=u.phone,
        full_name=u.full_name or "",
        role=u.role or "tenant",
        password_hash=u.password_hash,
        created_at=u.created_at,
    )


def _listing_out(p: Property, owner: User) -> Listing:
    return Listing(
        id=p.id,
        owner=OwnerContact(id=owner.id, phone=owner.phone, full_name=owner.full_name or ""),
        title=p.title,
        description=p.description or "",
        price=int(p.price or 0),
        city=p.city or "",
        neighborhood=p.neighborhood or "",
        status=p.status or LISTING_AVAILABLE,
        created_at=p.created_at,
    )


def _entitlement_out(row) -> EntitlementRecord:
    # Works for both a `User` instance and a row of `_ENTITLEMENT_COLUMNS`.
    return EntitlementRecord(
        user_id=row.id,
        free_contacts_remaining=row.free_contacts_remaining,
        free_contacts_reset_at=row.free_contacts_reset_at,
        subscription_tier=row.subscription_tier,
        subscription_expires_at=row.subscription_expires_at,
        version=int(row.entitlement_version or 0),
    )


def _payment_out(rec: SubscriptionPayment) -> PaymentRecord:
    return PaymentRecord(
        reference=rec.reference,
        user_id=rec.user_id,
        tier=parse_tier(rec.tier),
        amount_cedis=int(rec.amount_cedis or 0),
        provider=rec.provider,
        status=rec.status,
        created_at=rec.created_at,
        paid_at=rec.paid_at,
    )


class SqlContactStore(ContactStore):
    """
    ContactStore on a request-scoped SQLAlchemy session.

    Entitlement reads that feed the evaluator select columns rather than ORM
    instances, so a stale identity-map copy can never reach it.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    # -----------------------
    # Users
    # -----------------------
    def create_user(self, *, phone: str, full_name: str, password_hash: str, role: str = "tenant") -> UserAccount:
        u = User(phone=phone, full_name=full_name, password_hash=password_hash, role=role)
        self.db.add(u)
        try:
            self.db.flush()
        except IntegrityError as exc:
            self.db.rollback()
            raise DuplicatePhone(phone) from exc
        return _user_out(u)

    def get_user(self, user_id: int) -> UserAccount | None:
        u = self.db.get(User, int(user_id))
        return _user_out(u) if u else None

    def find_user_by_phone(self, phone: str) -> UserAccount | None:
        u = self.db.execute(select(User).where(User.phone == phone)).scalar_one_or_none()
        return _user_out(u) if u else None

    def list_users(
        self, *, role: str | None = None, search: str | None = None, offset: int = 0, limit: int = 20
    ) -> tuple[list[UserAccount], int]:
        conds = []
        if role:
            conds.append(User.role == role)
        needle = (search or "").strip()
        if needle:
            conds.append(or_(func.lower(User.full_name).contains(needle.lower()), User.phone.contains(needle)))
        total = self.db.execute(select(func.count(User.id)).where(*conds)).scalar_one()
        rows = self.db.execute(
            select(User).where(*conds).order_by(User.created_at.desc(), User.id.desc()).offset(offset).limit(limit)
        ).scalars()
        return [_user_out(u) for u in rows], int(total)

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
        p = Property(
            owner_id=int(owner_id),
            title=title,
            description=description,
            price=int(price),
            city=city,
            neighborhood=neighborhood,
        )
        self.db.add(p)
        self.db.flush()
        owner = self.db.get(User, int(owner_id))
        return _listing_out(p, owner)

    def get_property(self, property_id: int) -> Listing | None:
        row = self.db.execute(
            select(Property, _Owner).join(_Owner, _Owner.id == Property.owner_id).where(Property.id == int(property_id))
        ).first()
        if not row:
            return None
        return _listing_out(row[0], row[1])

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
        conds = [Property.status == LISTING_AVAILABLE]
        if (city or "").strip():
            conds.append(func.lower(Property.city) == city.strip().lower())
        if (neighborhood or "").strip():
            conds.append(func.lower(Property.neighborhood).contains(neighborhood.strip().lower()))
        if min_price is not None:
            conds.append(Property.price >= int(min_price))
        if max_price is not None:
            conds.append(Property.price <= int(max_price))

        if sort == "price_asc":
            order = (Property.price.asc(), Property.id.desc())
        elif sort == "price_desc":
            order = (Property.price.desc(), Property.id.desc())
        else:
            order = (Property.created_at.desc(), Property.id.desc())

        total = self.db.execute(select(func.count(Property.id)).where(*conds)).scalar_one()
        rows = self.db.execute(
            select(Property, _Owner)
            .join(_Owner, _Owner.id == Property.owner_id)
            .where(*conds)
            .order_by(*order)
            .offset(offset)
            .limit(limit)
        ).all()
        return [_listing_out(p, o) for p, o in rows], int(total)

    def list_owner_properties(self, owner_id: int) -> list[Listing]:
        rows = self.db.execute(
            select(Property, _Owner)
            .join(_Owner, _Owner.id == Property.owner_id)
            .where((Property.owner_id == int(owner_id)) & (Property.status != LISTING_REMOVED))
            .order_by(Property.created_at.desc(), Property.id.desc())
        ).all()
        return [_listing_out(p, o) for p, o in rows]

    def update_property(self, property_id: int, **changes) -> Listing | None:
        p = self.db.get(Property, int(property_id))
        if p is None:
            return None
        for k, v in changes.items():
            if k in _EDITABLE_FIELDS:
                setattr(p, k, v)
        self.db.flush()
        return self.get_property(property_id)

    # -----------------------
    # Entitlements + unlock ledger
    # -----------------------
    def get_entitlement(self, user_id: int) -> EntitlementRecord | None:
        row = self.db.execute(select(*_ENTITLEMENT_COLUMNS).where(User.id == int(user_id))).first()
        return _entitlement_out(row) if row else None

    def activate_subscription(
        self, user_id: int, tier: SubscriptionTier, expires_at: dt.datetime
    ) -> EntitlementRecord | None:
        self.db.execute(
            sa_update(User)
            .where(User.id == int(user_id))
            .values(
                subscription_tier=tier.value,
                subscription_expires_at=expires_at,
                entitlement_version=User.entitlement_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.flush()
        return self.get_entitlement(user_id)

    def override_entitlement(
        self,
        user_id: int,
        *,
        tier: SubscriptionTier,
        expires_at: dt.datetime | None,
        free_contacts_remaining: int,
        free_contacts_reset_at: dt.datetime | None,
    ) -> EntitlementRecord | None:
        self.db.execute(
            sa_update(User)
            .where(User.id == int(user_id))
            .values(
                subscription_tier=tier.value,
                subscription_expires_at=expires_at,
                free_contacts_remaining=int(free_contacts_remaining),
                free_contacts_reset_at=free_contacts_reset_at,
                entitlement_version=User.entitlement_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.flush()
        return self.get_entitlement(user_id)

    def _subscriber_conds(self, now: dt.datetime, tier: SubscriptionTier | None, active: bool | None) -> list:
        conds = [User.subscription_tier != SubscriptionTier.FREE.value]
        if tier is not None:
            conds.append(User.subscription_tier == tier.value)
        if active is True:
            conds.append(User.subscription_expires_at.is_not(None) & (User.subscription_expires_at > now))
        elif active is False:
            conds.append(User.subscription_expires_at.is_(None) | (User.subscription_expires_at <= now))
        return conds

    def list_subscribers(
        self,
        *,
        now: dt.datetime,
        tier: SubscriptionTier | None = None,
        active: bool | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[tuple[UserAccount, EntitlementRecord]], int]:
        conds = self._subscriber_conds(now, tier, active)
        total = self.db.execute(select(func.count(User.id)).where(*conds)).scalar_one()
        users = self.db.execute(
            select(User)
            .where(*conds)
            .order_by(User.subscription_expires_at.desc().nulls_last(), User.id.desc())
            .offset(offset)
            .limit(limit)
            .execution_options(populate_existing=True)
        ).scalars()
        return [(_user_out(u), _entitlement_out(u)) for u in users], int(total)

    def active_subscriber_counts(self, now: dt.datetime) -> dict[SubscriptionTier, int]:
        rows = self.db.execute(
            select(User.subscription_tier, func.count(User.id))
            .where(*self._subscriber_conds(now, None, True))
            .group_by(User.subscription_tier)
        ).all()
        out: dict[SubscriptionTier, int] = {}
        for tier, count in rows:
            t = parse_tier(tier)
            out[t] = out.get(t, 0) + int(count or 0)
        return out

    def find_grant(self, user_id: int, property_id: int) -> UnlockGrant | None:
        rec = self.db.execute(
            select(ContactUnlock).where(
                (ContactUnlock.user_id == int(user_id)) & (ContactUnlock.property_id == int(property_id))
            )
        ).scalar_one_or_none()
        if not rec:
            return None
        return UnlockGrant(user_id=rec.user_id, property_id=rec.property_id, unlocked_at=rec.unlocked_at)

    def unlocked_property_ids(self, user_id: int, property_ids: list[int]) -> set[int]:
        ids = [int(x) for x in property_ids]
        if not ids:
            return set()
        rows = self.db.execute(
            select(ContactUnlock.property_id).where(
                (ContactUnlock.user_id == int(user_id)) & (ContactUnlock.property_id.in_(ids))
            )
        ).all()
        return {int(r[0]) for r in rows}

    def list_unlocked(self, user_id: int) -> list[tuple[UnlockGrant, Listing]]:
        rows = self.db.execute(
            select(ContactUnlock, Property, _Owner)
            .join(Property, Property.id == ContactUnlock.property_id)
            .join(_Owner, _Owner.id == Property.owner_id)
            .where(ContactUnlock.user_id == int(user_id))
            .order_by(ContactUnlock.unlocked_at.desc(), ContactUnlock.id.desc())
        ).all()
        return [
            (UnlockGrant(user_id=g.user_id, property_id=g.property_id, unlocked_at=g.unlocked_at), _listing_out(p, o))
            for g, p, o in rows
        ]

    def commit_unlock(
        self,
        *,
        seen: EntitlementRecord,
        property_id: int,
        decision: Decision,
        now: dt.datetime,
    ) -> EntitlementRecord:
        user_id = seen.user_id
        try:
            self.db.add(ContactUnlock(user_id=user_id, property_id=int(property_id), unlocked_at=now))
            self.db.flush()
        except IntegrityError as exc:
            self.db.rollback()
            raise DuplicateGrant(user_id, int(property_id)) from exc

        if decision.mutates_record:
            res = self.db.execute(
                sa_update(User)
                .where((User.id == user_id) & (User.entitlement_version == seen.version))
                .values(
                    free_contacts_remaining=decision.new_remaining,
                    free_contacts_reset_at=decision.new_reset_at,
                    entitlement_version=User.entitlement_version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                self.db.rollback()
                raise StaleEntitlement(user_id, seen.version)

        self.db.commit()
        record = self.get_entitlement(user_id)
        if record is None:  # pragma: no cover - user deleted mid-request
            raise StaleEntitlement(user_id, seen.version)
        return record

    # -----------------------
    # Subscription payments
    # -----------------------
    def create_payment(
        self, *, user_id: int, reference: str, tier: SubscriptionTier, amount_cedis: int, provider: str
    ) -> PaymentRecord:
        rec = SubscriptionPayment(
            user_id=int(user_id), reference=reference, tier=tier.value, amount_cedis=int(amount_cedis), provider=provider
        )
        self.db.add(rec)
        try:
            self.db.flush()
        except IntegrityError as exc:
            self.db.rollback()
            raise DuplicateReference(reference) from exc
        return _payment_out(rec)

    def get_payment(self, reference: str) -> PaymentRecord | None:
        rec = self.db.execute(
            select(SubscriptionPayment).where(SubscriptionPayment.reference == reference)
        ).scalar_one_or_none()
        return _payment_out(rec) if rec else None

    def mark_payment_paid(self, reference: str, now: dt.datetime) -> bool:
        res = self.db.execute(
            sa_update(SubscriptionPayment)
            .where((SubscriptionPayment.reference == reference) & (SubscriptionPayment.status != "paid"))
            .values(status="paid", paid_at=now)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1

    def revenue_by_tier(self) -> dict[SubscriptionTier, tuple[int, int]]:
        rows = self.db.execute(
            select(
                SubscriptionPayment.tier,
                func.count(SubscriptionPayment.id),
                func.coalesce(func.sum(SubscriptionPayment.amount_cedis), 0),
            )
            .where(SubscriptionPayment.status == "paid")
            .group_by(SubscriptionPayment.tier)
        ).all()
        out: dict[SubscriptionTier, tuple[int, int]] = {}
        for tier, count, total in rows:
            t = parse_tier(tier)
            prev = out.get(t, (0, 0))
            out[t] = (prev[0] + int(count or 0), prev[1] + int(total or 0))
        return out
