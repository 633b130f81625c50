from __future__ import annotations

import datetime as dt

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"
    __table_args__ = (CheckConstraint("free_contacts_remaining >= 0", name="ck_users_free_contacts_non_negative"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # Ghana mobile number, stored normalized (+233XXXXXXXXX).
    phone: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    full_name: Mapped[str] = mapped_column(String(255), default="")
    role: Mapped[str] = mapped_column(String(32), default="tenant")  # tenant | landlord | admin
    password_hash: Mapped[str] = mapped_column(String(255))

    # Contact-unlock entitlement. Only written through the contact store's commit path
    # (quota) or subscription activation (tier/expiry).
    free_contacts_remaining: Mapped[int] = mapped_column(Integer, default=3)
    free_contacts_reset_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    subscription_tier: Mapped[str] = mapped_column(String(20), default="FREE")  # FREE|BASIC|RELAX|SUPERUSER
    subscription_expires_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Bumped on every quota write; unlock commits are conditioned on the version they read.
    entitlement_version: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    properties = relationship("Property", back_populates="owner")


class Property(Base):
    __tablename__ = "properties"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    title: Mapped[str] = mapped_column(String(255))
    description: Mapped[str] = mapped_column(Text, default="")
    price: Mapped[int] = mapped_column(Integer, default=0)  # monthly rent, GH₵
    city: Mapped[str] = mapped_column(String(120), default="", index=True)
    neighborhood: Mapped[str] = mapped_column(String(160), default="", index=True)
    status: Mapped[str] = mapped_column(String(40), default="available")
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    owner = relationship("User", back_populates="properties")


class ContactUnlock(Base):
    """
    Permanent record that a user has unlocked a property owner's contact.

    Append-only; the unique constraint is what serializes concurrent unlocks of the same pair.
    """

    __tablename__ = "contact_unlocks"
    __table_args__ = (UniqueConstraint("user_id", "property_id", name="uq_contact_unlock_user_property"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    property_id: Mapped[int] = mapped_column(ForeignKey("properties.id"), index=True)
    unlocked_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class SubscriptionPayment(Base):
    __tablename__ = "subscription_payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    # Paystack transaction reference (DR_<millis>_<user>).
    reference: Mapped[str] = mapped_column(String(80), unique=True)
    tier: Mapped[str] = mapped_column(String(20))
    amount_cedis: Mapped[int] = mapped_column(Integer, default=0)
    provider: Mapped[str] = mapped_column(String(40), default="paystack")  # paystack | dev
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | paid
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    paid_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
