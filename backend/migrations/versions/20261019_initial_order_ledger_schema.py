"""Initial schema: users, stores, orders, payment negotiation and khatabook ledger

Revision ID: 20261019_initial
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_initial"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name, nullable=False):
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False)


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("full_name", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("role", sa.String(16), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        _ts("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    with op.batch_alter_table("users", schema=None) as batch_op:
        batch_op.create_index("ix_users_role", ["role"], unique=False)

    op.create_table(
        "session_tokens",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("token_hash", sa.String(64), nullable=False),
        _ts("created_at"),
        _ts("last_used_at"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_revoked", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        _ts("revoked_at", nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("session_tokens", schema=None) as batch_op:
        batch_op.create_index("ix_session_tokens_user_id", ["user_id"], unique=False)
        batch_op.create_index("ix_session_tokens_token_hash", ["token_hash"], unique=True)
        batch_op.create_index("ix_session_tokens_expires_at", ["expires_at"], unique=False)
        batch_op.create_index("ix_session_tokens_user_active", ["user_id", "is_revoked"], unique=False)

    op.create_table(
        "retailer_delivery_boys",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("retailer_id", sa.String(36), nullable=False),
        sa.Column("delivery_boy_id", sa.String(36), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="ACTIVE"),
        _ts("created_at"),
        _ts("updated_at", nullable=True),
        sa.ForeignKeyConstraint(["retailer_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["delivery_boy_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("retailer_id", "delivery_boy_id", name="uq_retailer_delivery_boy"),
    )
    with op.batch_alter_table("retailer_delivery_boys", schema=None) as batch_op:
        batch_op.create_index("ix_retailer_delivery_boys_retailer_id", ["retailer_id"], unique=False)
        batch_op.create_index("ix_retailer_delivery_boys_delivery_boy_id", ["delivery_boy_id"], unique=False)

    op.create_table(
        "stores",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("owner_id", sa.String(36), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("city", sa.String(128), nullable=True),
        sa.Column("is_open", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        _ts("created_at"),
        sa.ForeignKeyConstraint(["owner_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("owner_id"),
    )

    op.create_table(
        "listings",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("store_id", sa.String(36), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("unit", sa.String(32), nullable=True),
        sa.Column("price_retail_cents", sa.BigInteger(), nullable=False),
        sa.Column("price_wholesale_cents", sa.BigInteger(), nullable=True),
        sa.Column("available", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("stock_qty", sa.Integer(), nullable=True),
        _ts("created_at"),
        _ts("updated_at", nullable=True),
        sa.ForeignKeyConstraint(["store_id"], ["stores.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    with op.batch_alter_table("listings", schema=None) as batch_op:
        batch_op.create_index("ix_listings_store_id", ["store_id"], unique=False)

    op.create_table(
        "orders",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("owner_id", sa.String(36), nullable=False),
        sa.Column("retailer_id", sa.String(36), nullable=False),
        sa.Column("store_id", sa.String(36), nullable=False),
        sa.Column("status", sa.String(24), nullable=False, server_default="PENDING"),
        sa.Column("total_amount_cents", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("delivery_type", sa.String(16), nullable=False, server_default="PICKUP"),
        _ts("delivery_at", nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("assigned_delivery_boy_id", sa.String(36), nullable=True),
        sa.Column("payment_received", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("amount_received_cents", sa.BigInteger(), nullable=True),
        sa.Column("original_amount_received_cents", sa.BigInteger(), nullable=True),
        sa.Column("remaining_balance_cents", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_partial_payment", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        _ts("payment_received_at", nullable=True),
        sa.Column("payment_received_by", sa.String(36), nullable=True),
        sa.Column("amount_adjusted_by", sa.String(36), nullable=True),
        _ts("amount_adjusted_at", nullable=True),
        sa.Column("adjustment_note", sa.Text(), nullable=True),
        sa.Column("liability_posted", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        _ts("created_at"),
        _ts("updated_at"),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.ForeignKeyConstraint(["owner_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["retailer_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["store_id"], ["stores.id"]),
        sa.ForeignKeyConstraint(["assigned_delivery_boy_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    with op.batch_alter_table("orders", schema=None) as batch_op:
        batch_op.create_index("ix_orders_owner_id", ["owner_id"], unique=False)
        batch_op.create_index("ix_orders_retailer_id", ["retailer_id"], unique=False)
        batch_op.create_index("ix_orders_store_id", ["store_id"], unique=False)
        batch_op.create_index("ix_orders_status", ["status"], unique=False)
        batch_op.create_index("ix_orders_assigned_delivery_boy_id", ["assigned_delivery_boy_id"], unique=False)
        batch_op.create_index("ix_orders_created_at", ["created_at"], unique=False)
        batch_op.create_index("ix_orders_owner_status", ["owner_id", "status"], unique=False)
        batch_op.create_index("ix_orders_retailer_status", ["retailer_id", "status"], unique=False)

    op.create_table(
        "order_items",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("order_id", sa.String(36), nullable=False),
        sa.Column("listing_id", sa.String(36), nullable=False),
        sa.Column("qty", sa.Integer(), nullable=False),
        sa.Column("price_at_cents", sa.BigInteger(), nullable=False),
        sa.Column("line_total_cents", sa.BigInteger(), nullable=False),
        _ts("created_at"),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["listing_id"], ["listings.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    with op.batch_alter_table("order_items", schema=None) as batch_op:
        batch_op.create_index("ix_order_items_order_id", ["order_id"], unique=False)

    op.create_table(
        "order_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.String(36), nullable=False),
        sa.Column("event_type", sa.String(48), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("actor_user_id", sa.String(36), nullable=True),
        _ts("created_at"),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("order_events", schema=None) as batch_op:
        batch_op.create_index("ix_order_events_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_order_events_order_created", ["order_id", "created_at"], unique=False)

    op.create_table(
        "payment_audit_trail",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.String(36), nullable=True),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("action", sa.String(32), nullable=False),
        sa.Column("old_amount_cents", sa.BigInteger(), nullable=True),
        sa.Column("new_amount_cents", sa.BigInteger(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        _ts("created_at"),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("payment_audit_trail", schema=None) as batch_op:
        batch_op.create_index("ix_payment_audit_trail_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_payment_audit_trail_user_id", ["user_id"], unique=False)

    op.create_table(
        "payment_change_requests",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("order_id", sa.String(36), nullable=False),
        sa.Column("delivery_boy_id", sa.String(36), nullable=False),
        sa.Column("original_amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("requested_amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="PENDING"),
        sa.Column("resolved_by", sa.String(36), nullable=True),
        _ts("resolved_at", nullable=True),
        sa.Column("resolution_note", sa.Text(), nullable=True),
        _ts("created_at"),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["delivery_boy_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    with op.batch_alter_table("payment_change_requests", schema=None) as batch_op:
        batch_op.create_index("ix_payment_change_requests_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_payment_change_requests_delivery_boy_id", ["delivery_boy_id"], unique=False)
        batch_op.create_index("ix_payment_change_requests_status", ["status"], unique=False)
        batch_op.create_index("ix_payment_change_requests_order_status", ["order_id", "status"], unique=False)

    op.create_table(
        "ledger_accounts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("counterparty_key", sa.String(36), nullable=False, server_default=""),
        sa.Column("balance_cents", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_credits_cents", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_debits_cents", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("entry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _ts("last_entry_at", nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "counterparty_key", name="uq_ledger_accounts_scope"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("ledger_accounts", schema=None) as batch_op:
        batch_op.create_index("ix_ledger_accounts_user_id", ["user_id"], unique=False)

    op.create_table(
        "khatabook",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("counterparty_id", sa.String(36), nullable=True),
        sa.Column("order_id", sa.String(36), nullable=True),
        sa.Column("entry_type", sa.String(8), nullable=False),
        sa.Column("transaction_type", sa.String(32), nullable=False),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("balance_cents", sa.BigInteger(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("reference_id", sa.String(64), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        _ts("created_at"),
        sa.ForeignKeyConstraint(["account_id"], ["ledger_accounts.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["counterparty_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", "sequence", name="uq_khatabook_account_sequence"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("khatabook", schema=None) as batch_op:
        batch_op.create_index("ix_khatabook_account_id", ["account_id"], unique=False)
        batch_op.create_index("ix_khatabook_user_id", ["user_id"], unique=False)
        batch_op.create_index("ix_khatabook_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_khatabook_transaction_type", ["transaction_type"], unique=False)
        batch_op.create_index("ix_khatabook_created_at", ["created_at"], unique=False)
        batch_op.create_index("ix_khatabook_user_counterparty", ["user_id", "counterparty_id"], unique=False)


def downgrade():
    op.drop_table("khatabook")
    op.drop_table("ledger_accounts")
    op.drop_table("payment_change_requests")
    op.drop_table("payment_audit_trail")
    op.drop_table("order_events")
    op.drop_table("order_items")
    op.drop_table("orders")
    op.drop_table("listings")
    op.drop_table("stores")
    op.drop_table("retailer_delivery_boys")
    op.drop_table("session_tokens")
    op.drop_table("users")
