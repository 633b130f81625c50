"""initial schema: users, listings, contact unlocks, subscription payments

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("phone", sa.String(length=32), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="tenant"),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("free_contacts_remaining", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("free_contacts_reset_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_tier", sa.String(length=20), nullable=False, server_default="FREE"),
        sa.Column("subscription_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("entitlement_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.CheckConstraint("free_contacts_remaining >= 0", name="ck_users_free_contacts_non_negative"),
    )
    op.create_index("ix_users_phone", "users", ["phone"], unique=True)

    op.create_table(
        "properties",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("price", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("city", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("neighborhood", sa.String(length=160), nullable=False, server_default=""),
        sa.Column("status", sa.String(length=40), nullable=False, server_default="available"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    )
    op.create_index("ix_properties_owner_id", "properties", ["owner_id"], unique=False)
    op.create_index("ix_properties_city", "properties", ["city"], unique=False)
    op.create_index("ix_properties_neighborhood", "properties", ["neighborhood"], unique=False)

    op.create_table(
        "contact_unlocks",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("property_id", sa.Integer(), sa.ForeignKey("properties.id"), nullable=False),
        sa.Column("unlocked_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.UniqueConstraint("user_id", "property_id", name="uq_contact_unlock_user_property"),
    )
    op.create_index("ix_contact_unlocks_user_id", "contact_unlocks", ["user_id"], unique=False)
    op.create_index("ix_contact_unlocks_property_id", "contact_unlocks", ["property_id"], unique=False)

    op.create_table(
        "subscription_payments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("reference", sa.String(length=80), nullable=False, unique=True),
        sa.Column("tier", sa.String(length=20), nullable=False),
        sa.Column("amount_cedis", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("provider", sa.String(length=40), nullable=False, server_default="paystack"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_subscription_payments_user_id", "subscription_payments", ["user_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_subscription_payments_user_id", table_name="subscription_payments")
    op.drop_table("subscription_payments")
    op.drop_index("ix_contact_unlocks_property_id", table_name="contact_unlocks")
    op.drop_index("ix_contact_unlocks_user_id", table_name="contact_unlocks")
    op.drop_table("contact_unlocks")
    op.drop_index("ix_properties_neighborhood", table_name="properties")
    op.drop_index("ix_properties_city", table_name="properties")
    op.drop_index("ix_properties_owner_id", table_name="properties")
    op.drop_table("properties")
    op.drop_index("ix_users_phone", table_name="users")
    op.drop_table("users")
