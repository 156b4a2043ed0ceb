"""commerce schema: accounts, credits, editions, checkout, orders, subscriptions

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("username", sa.String(), nullable=True),
        sa.Column("user_type", sa.String(), nullable=False, server_default="normal"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("stripe_customer_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("username"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_stripe_customer_id", "users", ["stripe_customer_id"], unique=False)

    op.create_table(
        "generation_credits",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("free_credits_total", sa.Integer(), nullable=False, server_default="2"),
        sa.Column("free_credits_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("paid_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_generated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.CheckConstraint("free_credits_used >= 0", name="ck_generation_credits_free_used_non_negative"),
        sa.CheckConstraint("free_credits_used <= free_credits_total", name="ck_generation_credits_free_used_cap"),
        sa.CheckConstraint("paid_credits >= 0", name="ck_generation_credits_paid_non_negative"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_generation_credits_email", "generation_credits", ["email"], unique=True)

    op.create_table(
        "credit_ledger",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("entry_type", sa.String(), nullable=False),
        sa.Column("delta_credits", sa.Integer(), nullable=False),
        sa.Column("free_remaining_after", sa.Integer(), nullable=True),
        sa.Column("paid_credits_after", sa.Integer(), nullable=True),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("reference_type", sa.String(), nullable=True),
        sa.Column("reference_id", sa.String(), nullable=True),
        sa.Column("billing_provider", sa.String(), nullable=True),
        sa.Column("billing_reference", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("billing_provider", "billing_reference", name="uq_credit_ledger_billing_reference"),
    )
    op.create_index("ix_credit_ledger_email", "credit_ledger", ["email"], unique=False)
    op.create_index("ix_credit_ledger_created_at", "credit_ledger", ["created_at"], unique=False)

    op.create_table(
        "generated_images",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("owner_email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("original_path", sa.String(), nullable=False),
        sa.Column("generated_path", sa.String(), nullable=False),
        sa.Column("thumbnail_path", sa.String(), nullable=True),
        sa.Column("style", sa.String(), nullable=False),
        sa.Column("city", sa.String(), nullable=True),
        sa.Column("moment_link", sa.String(), nullable=True),
        sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("review_status", sa.String(), nullable=True),
        sa.Column("total_supply", sa.Integer(), nullable=True),
        sa.Column("sold_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("committed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("price_per_unit", sa.Numeric(10, 2), nullable=True),
        sa.Column("creator_share_rate", sa.Numeric(4, 2), nullable=True),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("sold_count >= 0", name="ck_generated_images_sold_non_negative"),
        sa.CheckConstraint(
            "total_supply IS NULL OR sold_count <= total_supply",
            name="ck_generated_images_sold_within_supply",
        ),
        sa.CheckConstraint("committed_count >= 0", name="ck_generated_images_committed_non_negative"),
        sa.CheckConstraint("committed_count <= sold_count", name="ck_generated_images_committed_within_sold"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_generated_images_owner_email", "generated_images", ["owner_email"], unique=False)
    op.create_index("ix_generated_images_is_public", "generated_images", ["is_public"], unique=False)
    op.create_index("ix_generated_images_review_status", "generated_images", ["review_status"], unique=False)

    op.create_table(
        "edition_tickets",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("image_id", sa.String(), nullable=False),
        sa.Column("edition_number", sa.Integer(), nullable=False),
        sa.Column("committed_edition_number", sa.Integer(), nullable=True),
        sa.Column("confirmation_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="reserved"),
        sa.Column("reserved_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("committed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["image_id"], ["generated_images.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_edition_tickets_image_id", "edition_tickets", ["image_id"], unique=False)
    op.create_index("ix_edition_tickets_confirmation_id", "edition_tickets", ["confirmation_id"], unique=False)
    op.create_index("ix_edition_tickets_status", "edition_tickets", ["status"], unique=False)

    op.create_table(
        "poster_purchases",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("ticket_id", sa.String(), nullable=False),
        sa.Column("image_id", sa.String(), nullable=False),
        sa.Column("edition_number", sa.Integer(), nullable=False),
        sa.Column("buyer_email", sa.String(), nullable=False),
        sa.Column("confirmation_id", sa.String(), nullable=False),
        sa.Column("amount_paid", sa.Numeric(10, 2), nullable=False),
        sa.Column("creator_earnings", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("purchase_date", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["image_id"], ["generated_images.id"]),
        sa.ForeignKeyConstraint(["ticket_id"], ["edition_tickets.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("ticket_id"),
        sa.UniqueConstraint("image_id", "edition_number", name="uq_poster_purchases_image_edition"),
    )
    op.create_index("ix_poster_purchases_image_id", "poster_purchases", ["image_id"], unique=False)
    op.create_index("ix_poster_purchases_buyer_email", "poster_purchases", ["buyer_email"], unique=False)
    op.create_index("ix_poster_purchases_confirmation_id", "poster_purchases", ["confirmation_id"], unique=False)

    op.create_table(
        "checkout_sessions",
        sa.Column("confirmation_id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("order_type", sa.String(), nullable=False, server_default="catalogue"),
        sa.Column("shipping_json", sa.JSON(), nullable=False),
        sa.Column("cart_json", sa.JSON(), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(), nullable=False, server_default="chf"),
        sa.Column("payment_intent_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="reserved"),
        sa.Column("abandon_reason", sa.String(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("confirmation_id"),
        sa.UniqueConstraint("payment_intent_id"),
    )
    op.create_index("ix_checkout_sessions_email", "checkout_sessions", ["email"], unique=False)
    op.create_index("ix_checkout_sessions_status", "checkout_sessions", ["status"], unique=False)
    op.create_index("ix_checkout_sessions_expires_at", "checkout_sessions", ["expires_at"], unique=False)

    op.create_table(
        "orders",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("confirmation_id", sa.String(), nullable=False),
        sa.Column("order_type", sa.String(), nullable=False, server_default="catalogue"),
        sa.Column("first_name", sa.String(), nullable=False),
        sa.Column("last_name", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("address", sa.String(), nullable=False),
        sa.Column("city", sa.String(), nullable=False),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("zip_code", sa.String(), nullable=False),
        sa.Column("country", sa.String(), nullable=False),
        sa.Column("poster_image_url", sa.String(), nullable=True),
        sa.Column("original_image_url", sa.String(), nullable=True),
        sa.Column("style", sa.String(), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(), nullable=False, server_default="chf"),
        sa.Column("payment_intent_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("needs_reconciliation", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_orders_confirmation_id", "orders", ["confirmation_id"], unique=True)
    op.create_index("ix_orders_email", "orders", ["email"], unique=False)
    op.create_index("ix_orders_payment_intent_id", "orders", ["payment_intent_id"], unique=False)
    op.create_index("ix_orders_status", "orders", ["status"], unique=False)
    op.create_index("ix_orders_needs_reconciliation", "orders", ["needs_reconciliation"], unique=False)
    op.create_index("ix_orders_created_at", "orders", ["created_at"], unique=False)

    op.create_table(
        "order_items",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("order_id", sa.String(), nullable=False),
        sa.Column("image_id", sa.String(), nullable=True),
        sa.Column("poster_image_url", sa.String(), nullable=False),
        sa.Column("style", sa.String(), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("unit_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("edition_numbers", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["image_id"], ["generated_images.id"]),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_order_items_order_id", "order_items", ["order_id"], unique=False)
    op.create_index("ix_order_items_image_id", "order_items", ["image_id"], unique=False)

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("provider_subscription_id", sa.String(), nullable=False),
        sa.Column("provider_customer_id", sa.String(), nullable=True),
        sa.Column("setup_intent_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("promo_code", sa.String(), nullable=True),
        sa.Column("discount_percent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("setup_intent_id"),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"], unique=False)
    op.create_index("ix_subscriptions_email", "subscriptions", ["email"], unique=False)
    op.create_index(
        "ix_subscriptions_provider_subscription_id",
        "subscriptions",
        ["provider_subscription_id"],
        unique=True,
    )
    op.create_index("ix_subscriptions_status", "subscriptions", ["status"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_subscriptions_status", table_name="subscriptions")
    op.drop_index("ix_subscriptions_provider_subscription_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_email", table_name="subscriptions")
    op.drop_index("ix_subscriptions_user_id", table_name="subscriptions")
    op.drop_table("subscriptions")

    op.drop_index("ix_order_items_image_id", table_name="order_items")
    op.drop_index("ix_order_items_order_id", table_name="order_items")
    op.drop_table("order_items")

    op.drop_index("ix_orders_created_at", table_name="orders")
    op.drop_index("ix_orders_needs_reconciliation", table_name="orders")
    op.drop_index("ix_orders_status", table_name="orders")
    op.drop_index("ix_orders_payment_intent_id", table_name="orders")
    op.drop_index("ix_orders_email", table_name="orders")
    op.drop_index("ix_orders_confirmation_id", table_name="orders")
    op.drop_table("orders")

    op.drop_index("ix_checkout_sessions_expires_at", table_name="checkout_sessions")
    op.drop_index("ix_checkout_sessions_status", table_name="checkout_sessions")
    op.drop_index("ix_checkout_sessions_email", table_name="checkout_sessions")
    op.drop_table("checkout_sessions")

    op.drop_index("ix_poster_purchases_confirmation_id", table_name="poster_purchases")
    op.drop_index("ix_poster_purchases_buyer_email", table_name="poster_purchases")
    op.drop_index("ix_poster_purchases_image_id", table_name="poster_purchases")
    op.drop_table("poster_purchases")

    op.drop_index("ix_edition_tickets_status", table_name="edition_tickets")
    op.drop_index("ix_edition_tickets_confirmation_id", table_name="edition_tickets")
    op.drop_index("ix_edition_tickets_image_id", table_name="edition_tickets")
    op.drop_table("edition_tickets")

    op.drop_index("ix_generated_images_review_status", table_name="generated_images")
    op.drop_index("ix_generated_images_is_public", table_name="generated_images")
    op.drop_index("ix_generated_images_owner_email", table_name="generated_images")
    op.drop_table("generated_images")

    op.drop_index("ix_credit_ledger_created_at", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_email", table_name="credit_ledger")
    op.drop_table("credit_ledger")

    op.drop_index("ix_generation_credits_email", table_name="generation_credits")
    op.drop_table("generation_credits")

    op.drop_index("ix_users_stripe_customer_id", table_name="users")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
