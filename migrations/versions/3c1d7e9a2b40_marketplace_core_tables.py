"""marketplace core tables: orders, commissions, escrow, wallets

Revision ID: 3c1d7e9a2b40
Revises:
Create Date: 2026-09-28 09:00:00.000000
"""

from __future__ import annotations

from datetime import datetime

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "3c1d7e9a2b40"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(bind, table_name: str) -> bool:
    try:
        return sa.inspect(bind).has_table(table_name)
    except Exception:
        return False


def _index(table: str, *columns: str, unique: bool = False) -> None:
    op.create_index(f"ix_{table}_{'_'.join(columns)}", table, list(columns), unique=unique)


def upgrade():
    bind = op.get_bind()

    if not _table_exists(bind, "users"):
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False, server_default=""),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("phone", sa.String(length=32), nullable=True),
            sa.Column("password_hash", sa.String(length=255), nullable=False),
            sa.Column("role", sa.String(length=32), nullable=False, server_default="buyer"),
            sa.Column("is_active_account", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        _index("users", "email", unique=True)
        _index("users", "phone", unique=True)

    if not _table_exists(bind, "agents"):
        op.create_table(
            "agents",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("agent_type", sa.String(length=32), nullable=False),
            sa.Column("status", sa.String(length=24), nullable=False, server_default="available"),
            sa.Column("rating", sa.Float(), nullable=False, server_default="0"),
            sa.Column("total_reviews", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("total_deliveries", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("successful_deliveries", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("total_earnings", sa.Float(), nullable=False, server_default="0"),
            sa.Column("current_location_json", sa.Text(), nullable=True),
            sa.Column("last_active_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        _index("agents", "user_id", unique=True)
        _index("agents", "agent_type")
        _index("agents", "status")

    if not _table_exists(bind, "products"):
        op.create_table(
            "products",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False, server_default=""),
            sa.Column("price", sa.Float(), nullable=False, server_default="0"),
            sa.Column("marketplace_type", sa.String(length=16), nullable=False, server_default="physical"),
            sa.Column("stock_quantity", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        _index("products", "seller_id")
        _index("products", "marketplace_type")

    if not _table_exists(bind, "pickup_sites"):
        op.create_table(
            "pickup_sites",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=160), nullable=False, server_default=""),
            sa.Column("address", sa.String(length=255), nullable=False, server_default=""),
            sa.Column("manager_agent_id", sa.Integer(), sa.ForeignKey("agents.id"), nullable=True),
            sa.Column("capacity", sa.Integer(), nullable=False, server_default="50"),
            sa.Column("current_load", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        _index("pickup_sites", "manager_agent_id")

    if not _table_exists(bind, "orders"):
        op.create_table(
            "orders",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("order_number", sa.String(length=64), nullable=False),
            sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("agent_id", sa.Integer(), sa.ForeignKey("agents.id"), nullable=True),
            sa.Column("psm_agent_id", sa.Integer(), sa.ForeignKey("agents.id"), nullable=True),
            sa.Column("pickup_site_id", sa.Integer(), sa.ForeignKey("pickup_sites.id"), nullable=True),
            sa.Column("created_by_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
            sa.Column("marketplace_type", sa.String(length=16), nullable=False, server_default="physical"),
            sa.Column("delivery_type", sa.String(length=16), nullable=False, server_default="home"),
            sa.Column("delivery_address_json", sa.Text(), nullable=True),
            sa.Column("shipping_address_json", sa.Text(), nullable=True),
            sa.Column("billing_address_json", sa.Text(), nullable=True),
            sa.Column("delivery_code", sa.String(length=12), nullable=True),
            sa.Column("payment_method", sa.String(length=32), nullable=False, server_default=""),
            sa.Column("payment_status", sa.String(length=24), nullable=False, server_default="unpaid"),
            sa.Column("payment_reference", sa.String(length=120), nullable=True),
            sa.Column("payment_proof_url", sa.String(length=1024), nullable=True),
            sa.Column("total_amount", sa.Float(), nullable=False, server_default="0"),
            sa.Column("platform_margin", sa.Float(), nullable=False, server_default="0"),
            sa.Column("delivery_fee", sa.Float(), nullable=False, server_default="0"),
            sa.Column("final_buyer_price", sa.Float(), nullable=False, server_default="0"),
            sa.Column("seller_payout", sa.Float(), nullable=False, server_default="0"),
            sa.Column("delivery_fee_hidden", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("referral_code", sa.String(length=64), nullable=True),
            sa.Column("is_manual_order", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("commission_snapshot_json", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("cancellation_reason", sa.String(length=240), nullable=True),
            sa.Column("rating", sa.Integer(), nullable=True),
            sa.Column("feedback", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.Column("confirmed_at", sa.DateTime(), nullable=True),
            sa.Column("preparing_at", sa.DateTime(), nullable=True),
            sa.Column("ready_for_pickup_at", sa.DateTime(), nullable=True),
            sa.Column("assigned_at", sa.DateTime(), nullable=True),
            sa.Column("picked_up_at", sa.DateTime(), nullable=True),
            sa.Column("delivered_at", sa.DateTime(), nullable=True),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.Column("cancelled_at", sa.DateTime(), nullable=True),
            sa.Column("issue_reported_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        _index("orders", "order_number", unique=True)
        _index("orders", "buyer_id")
        _index("orders", "seller_id")
        _index("orders", "agent_id")
        _index("orders", "psm_agent_id")
        _index("orders", "pickup_site_id")
        _index("orders", "payment_status")
        _index("orders", "status")
        _index("orders", "created_at")

    if not _table_exists(bind, "order_items"):
        op.create_table(
            "order_items",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("unit_price", sa.Float(), nullable=False, server_default="0"),
            sa.Column("total_price", sa.Float(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        _index("order_items", "order_id")
        _index("order_items", "product_id")

    if not _table_exists(bind, "order_tracking"):
        op.create_table(
            "order_tracking",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("status", sa.String(length=32), nullable=False),
            sa.Column("notes", sa.String(length=500), nullable=True),
            sa.Column("location_json", sa.Text(), nullable=True),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        _index("order_tracking", "order_id")
        _index("order_tracking", "created_at")

    if not _table_exists(bind, "cart_items"):
        op.create_table(
            "cart_items",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("user_id", "product_id", name="uq_cart_items_user_product"),
        )
        _index("cart_items", "user_id")
        _index("cart_items", "product_id")

    if not _table_exists(bind, "agent_earnings"):
        op.create_table(
            "agent_earnings",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("agent_id", sa.Integer(), sa.ForeignKey("agents.id"), nullable=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("amount", sa.Float(), nullable=False, server_default="0"),
            sa.Column("earnings_type", sa.String(length=32), nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("payable_at", sa.DateTime(), nullable=True),
            sa.Column("paid_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("order_id", "earnings_type", name="uq_agent_earnings_order_type"),
        )
        _index("agent_earnings", "user_id")
        _index("agent_earnings", "agent_id")
        _index("agent_earnings", "order_id")
        _index("agent_earnings", "status")

    if not _table_exists(bind, "referral_links"):
        op.create_table(
            "referral_links",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("referrer_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=True),
            sa.Column("referral_code", sa.String(length=64), nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
            sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        _index("referral_links", "referrer_user_id")
        _index("referral_links", "product_id")
        _index("referral_links", "referral_code", unique=True)
        _index("referral_links", "status")

    if not _table_exists(bind, "referral_purchases"):
        op.create_table(
            "referral_purchases",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("referral_link_id", sa.Integer(), sa.ForeignKey("referral_links.id"), nullable=False),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("referrer_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("commission_amount", sa.Float(), nullable=False, server_default="0"),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("paid_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        _index("referral_purchases", "referral_link_id")
        _index("referral_purchases", "order_id", unique=True)
        _index("referral_purchases", "buyer_id")
        _index("referral_purchases", "referrer_user_id")
        _index("referral_purchases", "status")

    if not _table_exists(bind, "escrow_transactions"):
        op.create_table(
            "escrow_transactions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("amount", sa.Float(), nullable=False, server_default="0"),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="held"),
            sa.Column("hold_reason", sa.String(length=240), nullable=True),
            sa.Column("released_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
            sa.Column("release_reason", sa.String(length=240), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("released_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        _index("escrow_transactions", "order_id", unique=True)
        _index("escrow_transactions", "buyer_id")
        _index("escrow_transactions", "seller_id")
        _index("escrow_transactions", "status")
        _index("escrow_transactions", "created_at")

    if not _table_exists(bind, "user_wallets"):
        op.create_table(
            "user_wallets",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("balance", sa.Float(), nullable=False, server_default="0"),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default="RWF"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        _index("user_wallets", "user_id", unique=True)

    if not _table_exists(bind, "wallet_transactions"):
        op.create_table(
            "wallet_transactions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("direction", sa.String(length=8), nullable=False, server_default="credit"),
            sa.Column("amount", sa.Float(), nullable=False, server_default="0"),
            sa.Column("balance_after", sa.Float(), nullable=False, server_default="0"),
            sa.Column("kind", sa.String(length=40), nullable=False),
            sa.Column("reference", sa.String(length=120), nullable=True),
            sa.Column("note", sa.String(length=240), nullable=True),
            sa.Column("idempotency_key", sa.String(length=160), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        _index("wallet_transactions", "user_id")
        _index("wallet_transactions", "kind")
        _index("wallet_transactions", "reference")
        _index("wallet_transactions", "idempotency_key", unique=True)
        _index("wallet_transactions", "created_at")

    if not _table_exists(bind, "admin_actions"):
        op.create_table(
            "admin_actions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("admin_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("action_type", sa.String(length=64), nullable=False),
            sa.Column("target_type", sa.String(length=64), nullable=True),
            sa.Column("target_id", sa.Integer(), nullable=True),
            sa.Column("details_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        _index("admin_actions", "admin_id")
        _index("admin_actions", "action_type")
        _index("admin_actions", "created_at")

    if not _table_exists(bind, "delivery_issues"):
        op.create_table(
            "delivery_issues",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("reported_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("agent_id", sa.Integer(), sa.ForeignKey("agents.id"), nullable=True),
            sa.Column("issue_type", sa.String(length=40), nullable=False, server_default="other"),
            sa.Column("description", sa.Text(), nullable=False, server_default=""),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="open"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        _index("delivery_issues", "order_id")
        _index("delivery_issues", "reported_by")
        _index("delivery_issues", "status")

    if not _table_exists(bind, "agent_ratings"):
        op.create_table(
            "agent_ratings",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("agent_id", sa.Integer(), sa.ForeignKey("agents.id"), nullable=False),
            sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("rating", sa.Integer(), nullable=False),
            sa.Column("feedback", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("order_id", "agent_id", name="uq_agent_ratings_order_agent"),
        )
        _index("agent_ratings", "order_id")
        _index("agent_ratings", "agent_id")

    if not _table_exists(bind, "platform_settings"):
        op.create_table(
            "platform_settings",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("category", sa.String(length=40), nullable=False),
            sa.Column("setting_key", sa.String(length=80), nullable=False),
            sa.Column("setting_value", sa.String(length=255), nullable=False, server_default=""),
            sa.Column("description", sa.String(length=255), nullable=True),
            sa.Column("updated_by", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("category", "setting_key", name="uq_platform_settings_category_key"),
        )
        _index("platform_settings", "category")

    if not _table_exists(bind, "platform_events"):
        op.create_table(
            "platform_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("event_type", sa.String(length=80), nullable=False),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("order_id", sa.Integer(), nullable=True),
            sa.Column("subject_type", sa.String(length=80), nullable=True),
            sa.Column("subject_id", sa.String(length=120), nullable=True),
            sa.Column("request_id", sa.String(length=80), nullable=True),
            sa.Column("idempotency_key", sa.String(length=180), nullable=True),
            sa.Column("severity", sa.String(length=16), nullable=False, server_default="INFO"),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        _index("platform_events", "created_at")
        _index("platform_events", "event_type")
        _index("platform_events", "actor_user_id")
        _index("platform_events", "order_id")
        _index("platform_events", "idempotency_key", unique=True)

    # Delivery fee defaults; pricing falls back to the same values when rows are absent.
    if _table_exists(bind, "platform_settings"):
        existing = bind.execute(
            sa.text("SELECT COUNT(*) FROM platform_settings WHERE category = 'delivery'")
        ).scalar()
        if not existing:
            op.bulk_insert(
                sa.table(
                    "platform_settings",
                    sa.column("category", sa.String),
                    sa.column("setting_key", sa.String),
                    sa.column("setting_value", sa.String),
                    sa.column("description", sa.String),
                    sa.column("created_at", sa.DateTime),
                    sa.column("updated_at", sa.DateTime),
                ),
                [
                    _setting("home_delivery_fee_percent", "6", "Home delivery fee as % of base price"),
                    _setting("home_delivery_flat_fee", "0", "Flat home delivery fee"),
                    _setting("pickup_delivery_fee", "0", "Flat pickup delivery fee"),
                ],
            )


def _setting(key: str, value: str, description: str) -> dict:
    now = datetime.utcnow()
    return {
        "category": "delivery",
        "setting_key": key,
        "setting_value": value,
        "description": description,
        "created_at": now,
        "updated_at": now,
    }


def downgrade():
    for table in (
        "platform_events",
        "platform_settings",
        "agent_ratings",
        "delivery_issues",
        "admin_actions",
        "wallet_transactions",
        "user_wallets",
        "escrow_transactions",
        "referral_purchases",
        "referral_links",
        "agent_earnings",
        "cart_items",
        "order_tracking",
        "order_items",
        "orders",
        "pickup_sites",
        "products",
        "agents",
        "users",
    ):
        op.drop_table(table)
