"""Initial schema: agents, trade queue, treasury orders and flywheel bookkeeping.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE_TRADE_STATUSES = "status IN ('queued', 'quoted', 'signed', 'submitted', 'open')"


def _order_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("order_uid", sa.String(114), nullable=True),
        sa.Column("sell_token", sa.String(42), nullable=False),
        sa.Column("buy_token", sa.String(42), nullable=False),
        sa.Column("sell_amount", sa.String(78), nullable=False),
        sa.Column("usdc_amount", sa.Numeric(20, 6), nullable=False),
        sa.Column("buy_amount_min", sa.String(78), nullable=True),
        sa.Column("fee_amount", sa.String(78), nullable=True),
        sa.Column("valid_to", sa.Integer(), nullable=True),
        sa.Column("quote_data", sa.JSON(), nullable=True),
        sa.Column("buy_amount_actual", sa.String(78), nullable=True),
        sa.Column("savings", sa.String(78), nullable=True),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("filled_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    # Agents
    op.create_table(
        "agents",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("owner_address", sa.String(42), nullable=False),
        sa.Column("name", sa.String(100), nullable=True),
        sa.Column("strategy_id", sa.String(32), nullable=False),
        sa.Column("max_drawdown_pct", sa.Numeric(6, 2), nullable=True),
        sa.Column("max_position_size_pct", sa.Numeric(6, 2), nullable=True),
        sa.Column("allocated_budget", sa.Numeric(20, 6), nullable=False),
        sa.Column("remaining_budget", sa.Numeric(20, 6), nullable=False),
        sa.Column("budget_currency", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("trading_enabled", sa.Boolean(), nullable=False),
        sa.Column("agent_wallet_address", sa.String(42), nullable=True),
        sa.Column("agent_wallet_encrypted", sa.Text(), nullable=True),
        sa.Column("pnl_usd", sa.Numeric(20, 6), nullable=False),
        sa.Column("pnl_pct", sa.Numeric(10, 4), nullable=False),
        sa.Column("trade_count", sa.Integer(), nullable=False),
        sa.Column("last_trade_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "remaining_budget >= 0 AND remaining_budget <= allocated_budget",
            name="ck_agents_budget_bounds",
        ),
    )
    op.create_index("idx_agents_status_trading", "agents", ["status", "trading_enabled"])
    op.create_index("idx_agents_owner", "agents", ["owner_address"])

    # Trade queue
    op.create_table(
        "trade_queue",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("agent_id", sa.String(36), nullable=False),
        sa.Column("owner_address", sa.String(42), nullable=False),
        sa.Column("sell_token", sa.String(42), nullable=False),
        sa.Column("buy_token", sa.String(42), nullable=False),
        sa.Column("sell_amount", sa.String(78), nullable=False),
        sa.Column("sell_amount_usd", sa.Numeric(20, 6), nullable=False),
        sa.Column("receiver", sa.String(42), nullable=True),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("quote_buy_amount", sa.String(78), nullable=True),
        sa.Column("quote_fee_amount", sa.String(78), nullable=True),
        sa.Column("quote_valid_to", sa.Integer(), nullable=True),
        sa.Column("quote_data", sa.JSON(), nullable=True),
        sa.Column("signature", sa.String(132), nullable=True),
        sa.Column("order_uid", sa.String(114), nullable=True),
        sa.Column("executed_buy_amount", sa.String(78), nullable=True),
        sa.Column("executed_sell_amount", sa.String(78), nullable=True),
        sa.Column("savings", sa.String(78), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("filled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_uid"),
    )
    op.create_index(
        "uq_trade_queue_agent_active",
        "trade_queue",
        ["agent_id"],
        unique=True,
        postgresql_where=sa.text(ACTIVE_TRADE_STATUSES),
        sqlite_where=sa.text(ACTIVE_TRADE_STATUSES),
    )
    op.create_index("idx_trade_queue_agent_status", "trade_queue", ["agent_id", "status"])
    op.create_index("idx_trade_queue_status_next_run", "trade_queue", ["status", "next_run_at"])

    # Treasury order families
    op.create_table(
        "buyback_orders",
        *_order_columns(),
        sa.Column("trigger_balance", sa.Numeric(20, 6), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_uid"),
    )
    op.create_index("idx_buyback_orders_status", "buyback_orders", ["status"])
    op.create_index("idx_buyback_orders_created_at", "buyback_orders", ["created_at"])

    op.create_table(
        "sentiment_trades",
        *_order_columns(),
        sa.Column("sentiment_score", sa.Numeric(6, 4), nullable=False),
        sa.Column("trigger_snapshot_id", sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_uid"),
    )
    op.create_index("idx_sentiment_trades_status", "sentiment_trades", ["status"])
    op.create_index("idx_sentiment_trades_created_at", "sentiment_trades", ["created_at"])

    # Flywheel bookkeeping
    op.create_table(
        "sentiment_snapshots",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("average_score", sa.Numeric(6, 4), nullable=False),
        sa.Column("sample_size", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_sentiment_snapshots_created_at", "sentiment_snapshots", ["created_at"])

    op.create_table(
        "token_deployments",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("token_address", sa.String(42), nullable=False),
        sa.Column("symbol", sa.String(32), nullable=True),
        sa.Column("name", sa.String(100), nullable=True),
        sa.Column("fees_enabled", sa.Boolean(), nullable=False),
        sa.Column("last_fee_claim_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("token_address"),
    )

    op.create_table(
        "fee_claims",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("token_address", sa.String(42), nullable=False),
        sa.Column("fee_token", sa.String(42), nullable=False),
        sa.Column("amount", sa.String(78), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_fee_claims_token_created", "fee_claims", ["token_address", "created_at"])
    op.create_index("idx_fee_claims_status", "fee_claims", ["status"])


def downgrade() -> None:
    op.drop_index("idx_fee_claims_status", table_name="fee_claims")
    op.drop_index("idx_fee_claims_token_created", table_name="fee_claims")
    op.drop_table("fee_claims")
    op.drop_table("token_deployments")
    op.drop_index("idx_sentiment_snapshots_created_at", table_name="sentiment_snapshots")
    op.drop_table("sentiment_snapshots")
    op.drop_index("idx_sentiment_trades_created_at", table_name="sentiment_trades")
    op.drop_index("idx_sentiment_trades_status", table_name="sentiment_trades")
    op.drop_table("sentiment_trades")
    op.drop_index("idx_buyback_orders_created_at", table_name="buyback_orders")
    op.drop_index("idx_buyback_orders_status", table_name="buyback_orders")
    op.drop_table("buyback_orders")
    op.drop_index("idx_trade_queue_status_next_run", table_name="trade_queue")
    op.drop_index("idx_trade_queue_agent_status", table_name="trade_queue")
    op.drop_index("uq_trade_queue_agent_active", table_name="trade_queue")
    op.drop_table("trade_queue")
    op.drop_index("idx_agents_owner", table_name="agents")
    op.drop_index("idx_agents_status_trading", table_name="agents")
    op.drop_table("agents")
