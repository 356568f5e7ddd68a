"""Billing baseline: users, subscriptions, credit grants, discount codes,
rate limits, webhook events and Shopify sessions.

Revision ID: 20261018_01
Revises:
Create Date: 2026-10-18 09:00:00
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("shop", sa.String(length=255), nullable=False),
        sa.Column("plan", sa.String(length=20), nullable=False, server_default="free"),
        sa.Column("credits", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("onboarding_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),
    )
    op.create_index("ix_users_id", "users", ["id"])
    op.create_index("ix_users_shop", "users", ["shop"], unique=True)

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("shopify_subscription_id", sa.String(length=255), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("plan_name", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("trial_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_test", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("period_estimated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_subscriptions_id", "subscriptions", ["id"])
    op.create_index(
        "ix_subscriptions_shopify_subscription_id",
        "subscriptions",
        ["shopify_subscription_id"],
        unique=True,
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])

    op.create_table(
        "credit_grants",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("source", sa.String(length=50), nullable=False),
        sa.Column("source_ref", sa.String(length=255), nullable=True),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("user_id", "idempotency_key", name="uq_credit_grants_user_idempotency"),
    )
    op.create_index("ix_credit_grants_id", "credit_grants", ["id"])
    op.create_index("ix_credit_grants_user_id", "credit_grants", ["user_id"])
    op.create_index("ix_credit_grants_source_ref", "credit_grants", ["source_ref"])
    op.create_index("ix_credit_grants_created_at", "credit_grants", ["created_at"])

    op.create_table(
        "discount_codes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("code", sa.String(length=50), nullable=False),
        sa.Column("credits_to_grant", sa.Integer(), nullable=False),
        sa.Column("max_uses", sa.Integer(), nullable=True),
        sa.Column("current_uses", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_discount_codes_id", "discount_codes", ["id"])
    op.create_index("ix_discount_codes_code", "discount_codes", ["code"], unique=True)

    op.create_table(
        "discount_code_redemptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("discount_code_id", sa.Integer(), nullable=False),
        sa.Column("shop", sa.String(length=255), nullable=False),
        sa.Column("credits_granted", sa.Integer(), nullable=False),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["discount_code_id"], ["discount_codes.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("discount_code_id", "shop", name="uq_discount_redemptions_code_shop"),
    )
    op.create_index("ix_discount_code_redemptions_id", "discount_code_redemptions", ["id"])
    op.create_index("ix_discount_code_redemptions_shop", "discount_code_redemptions", ["shop"])

    op.create_table(
        "rate_limits",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("shop", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("window_start", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("shop", "action", name="uq_rate_limits_shop_action"),
    )
    op.create_index("ix_rate_limits_id", "rate_limits", ["id"])
    op.create_index("ix_rate_limits_shop", "rate_limits", ["shop"])

    op.create_table(
        "shopify_webhook_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("webhook_id", sa.String(length=255), nullable=False),
        sa.Column("topic", sa.String(length=100), nullable=False),
        sa.Column("shop", sa.String(length=255), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_shopify_webhook_events_id", "shopify_webhook_events", ["id"])
    op.create_index(
        "ix_shopify_webhook_events_webhook_id",
        "shopify_webhook_events",
        ["webhook_id"],
        unique=True,
    )
    op.create_index("ix_shopify_webhook_events_shop", "shopify_webhook_events", ["shop"])

    op.create_table(
        "shopify_sessions",
        sa.Column("id", sa.String(length=255), primary_key=True),
        sa.Column("shop", sa.String(length=255), nullable=False),
        sa.Column("state", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("is_online", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("scope", sa.String(length=1024), nullable=True),
        sa.Column("expires", sa.DateTime(timezone=True), nullable=True),
        sa.Column("access_token", sa.String(length=255), nullable=False),
    )
    op.create_index("ix_shopify_sessions_shop", "shopify_sessions", ["shop"])


def downgrade() -> None:
    op.drop_index("ix_shopify_sessions_shop", table_name="shopify_sessions")
    op.drop_table("shopify_sessions")

    op.drop_index("ix_shopify_webhook_events_shop", table_name="shopify_webhook_events")
    op.drop_index("ix_shopify_webhook_events_webhook_id", table_name="shopify_webhook_events")
    op.drop_index("ix_shopify_webhook_events_id", table_name="shopify_webhook_events")
    op.drop_table("shopify_webhook_events")

    op.drop_index("ix_rate_limits_shop", table_name="rate_limits")
    op.drop_index("ix_rate_limits_id", table_name="rate_limits")
    op.drop_table("rate_limits")

    op.drop_index("ix_discount_code_redemptions_shop", table_name="discount_code_redemptions")
    op.drop_index("ix_discount_code_redemptions_id", table_name="discount_code_redemptions")
    op.drop_table("discount_code_redemptions")

    op.drop_index("ix_discount_codes_code", table_name="discount_codes")
    op.drop_index("ix_discount_codes_id", table_name="discount_codes")
    op.drop_table("discount_codes")

    op.drop_index("ix_credit_grants_created_at", table_name="credit_grants")
    op.drop_index("ix_credit_grants_source_ref", table_name="credit_grants")
    op.drop_index("ix_credit_grants_user_id", table_name="credit_grants")
    op.drop_index("ix_credit_grants_id", table_name="credit_grants")
    op.drop_table("credit_grants")

    op.drop_index("ix_subscriptions_user_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_shopify_subscription_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_id", table_name="subscriptions")
    op.drop_table("subscriptions")

    op.drop_index("ix_users_shop", table_name="users")
    op.drop_index("ix_users_id", table_name="users")
    op.drop_table("users")
