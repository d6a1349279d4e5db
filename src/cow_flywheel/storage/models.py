"""SQLAlchemy models for persistent storage.

This module defines the database schema for agents, the trade queue,
the two treasury order families (buybacks and sentiment trades), and the
flywheel bookkeeping tables (token deployments, fee claims, sentiment
snapshots).

Raw token amounts are smallest-unit integers that routinely exceed 2**64,
so they are stored as decimal strings and converted at the repository
boundary.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Agent lifecycle
AGENT_STATUSES = ("deploying", "active", "paused", "stopped", "error")

# Trade queue state machine
TRADE_STATUS_QUEUED = "queued"
TRADE_STATUS_QUOTED = "quoted"
TRADE_STATUS_SIGNED = "signed"
TRADE_STATUS_SUBMITTED = "submitted"
TRADE_STATUS_OPEN = "open"
TRADE_STATUS_FILLED = "filled"
TRADE_STATUS_CANCELLED = "cancelled"
TRADE_STATUS_EXPIRED = "expired"
TRADE_STATUS_FAILED = "failed"

TRADE_PRE_SUBMISSION_STATUSES = (TRADE_STATUS_QUEUED, TRADE_STATUS_QUOTED, TRADE_STATUS_SIGNED)
TRADE_IN_FLIGHT_STATUSES = (TRADE_STATUS_SUBMITTED, TRADE_STATUS_OPEN)
TRADE_ACTIVE_STATUSES = TRADE_PRE_SUBMISSION_STATUSES + TRADE_IN_FLIGHT_STATUSES
TRADE_TERMINAL_STATUSES = (
    TRADE_STATUS_FILLED,
    TRADE_STATUS_CANCELLED,
    TRADE_STATUS_EXPIRED,
    TRADE_STATUS_FAILED,
)

# Buyback / sentiment order state machine
ORDER_STATUS_PENDING = "pending"
ORDER_STATUS_OPEN = "open"
ORDER_STATUS_FILLED = "filled"
ORDER_STATUS_CANCELLED = "cancelled"
ORDER_STATUS_EXPIRED = "expired"
ORDER_STATUS_FAILED = "failed"

ORDER_ACTIVE_STATUSES = (ORDER_STATUS_PENDING, ORDER_STATUS_OPEN)
ORDER_TERMINAL_STATUSES = (
    ORDER_STATUS_FILLED,
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_EXPIRED,
    ORDER_STATUS_FAILED,
)

FEE_CLAIM_STATUSES = ("pending", "claimed", "failed")


def new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(UTC)


def status_in_clause(statuses: tuple[str, ...]) -> Any:
    quoted = ", ".join(f"'{s}'" for s in statuses)
    return text(f"status IN ({quoted})")


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class AgentModel(Base):
    """An autonomous trading configuration owned by a wallet."""

    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    owner_address: Mapped[str] = mapped_column(String(42), nullable=False)
    name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    strategy_id: Mapped[str] = mapped_column(String(32), nullable=False)

    max_drawdown_pct: Mapped[Decimal | None] = mapped_column(Numeric(6, 2), nullable=True)
    max_position_size_pct: Mapped[Decimal | None] = mapped_column(Numeric(6, 2), nullable=True)

    allocated_budget: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False, default=Decimal("0"))
    remaining_budget: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False, default=Decimal("0"))
    budget_currency: Mapped[str] = mapped_column(String(16), nullable=False, default="USDC")

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="deploying")
    trading_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Delegated signing key, AES-256-GCM "iv:tag:ciphertext" hex
    agent_wallet_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    agent_wallet_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)

    pnl_usd: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False, default=Decimal("0"))
    pnl_pct: Mapped[Decimal] = mapped_column(Numeric(10, 4), nullable=False, default=Decimal("0"))
    trade_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_trade_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        CheckConstraint(
            "remaining_budget >= 0 AND remaining_budget <= allocated_budget",
            name="ck_agents_budget_bounds",
        ),
        Index("idx_agents_status_trading", "status", "trading_enabled"),
        Index("idx_agents_owner", "owner_address"),
    )


class TradeIntentModel(Base):
    """One candidate trade for an agent, advanced by the order pipeline."""

    __tablename__ = "trade_queue"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    agent_id: Mapped[str] = mapped_column(String(36), nullable=False)
    owner_address: Mapped[str] = mapped_column(String(42), nullable=False)

    sell_token: Mapped[str] = mapped_column(String(42), nullable=False)
    buy_token: Mapped[str] = mapped_column(String(42), nullable=False)
    sell_amount: Mapped[str] = mapped_column(String(78), nullable=False)
    sell_amount_usd: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False)
    receiver: Mapped[str | None] = mapped_column(String(42), nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=TRADE_STATUS_QUEUED)
    next_run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Latest quote snapshot; buy amount is the minimum acceptable output
    quote_buy_amount: Mapped[str | None] = mapped_column(String(78), nullable=True)
    quote_fee_amount: Mapped[str | None] = mapped_column(String(78), nullable=True)
    quote_valid_to: Mapped[int | None] = mapped_column(Integer, nullable=True)
    quote_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    signature: Mapped[str | None] = mapped_column(String(132), nullable=True)

    order_uid: Mapped[str | None] = mapped_column(String(114), nullable=True, unique=True)
    executed_buy_amount: Mapped[str | None] = mapped_column(String(78), nullable=True)
    executed_sell_amount: Mapped[str | None] = mapped_column(String(78), nullable=True)
    savings: Mapped[str | None] = mapped_column(String(78), nullable=True)

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    filled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        # At most one non-terminal intent per agent.
        Index(
            "uq_trade_queue_agent_active",
            "agent_id",
            unique=True,
            postgresql_where=status_in_clause(TRADE_ACTIVE_STATUSES),
            sqlite_where=status_in_clause(TRADE_ACTIVE_STATUSES),
        ),
        Index("idx_trade_queue_agent_status", "agent_id", "status"),
        Index("idx_trade_queue_status_next_run", "status", "next_run_at"),
    )


class SettlementOrderMixin:
    """Columns shared by the treasury order families."""

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    order_uid: Mapped[str | None] = mapped_column(String(114), nullable=True, unique=True)

    sell_token: Mapped[str] = mapped_column(String(42), nullable=False)
    buy_token: Mapped[str] = mapped_column(String(42), nullable=False)
    sell_amount: Mapped[str] = mapped_column(String(78), nullable=False)
    usdc_amount: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False)

    # Quote snapshot taken at signing time
    buy_amount_min: Mapped[str | None] = mapped_column(String(78), nullable=True)
    fee_amount: Mapped[str | None] = mapped_column(String(78), nullable=True)
    valid_to: Mapped[int | None] = mapped_column(Integer, nullable=True)
    quote_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    buy_amount_actual: Mapped[str | None] = mapped_column(String(78), nullable=True)
    savings: Mapped[str | None] = mapped_column(String(78), nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ORDER_STATUS_PENDING)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    filled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class BuybackOrderModel(SettlementOrderMixin, Base):
    """Threshold-triggered treasury buyback of the platform token."""

    __tablename__ = "buyback_orders"

    trigger_balance: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False)

    __table_args__ = (
        Index("idx_buyback_orders_status", "status"),
        Index("idx_buyback_orders_created_at", "created_at"),
    )


class SentimentTradeModel(SettlementOrderMixin, Base):
    """Treasury buy triggered by a positive community-sentiment reading."""

    __tablename__ = "sentiment_trades"

    sentiment_score: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False)
    trigger_snapshot_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        Index("idx_sentiment_trades_status", "status"),
        Index("idx_sentiment_trades_created_at", "created_at"),
    )


class SentimentSnapshotModel(Base):
    """Aggregated community-sentiment reading written by an external scorer."""

    __tablename__ = "sentiment_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    average_score: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False)
    sample_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (Index("idx_sentiment_snapshots_created_at", "created_at"),)


class TokenDeploymentModel(Base):
    """A deployed revenue-generating token whose LP fees accrue to the treasury."""

    __tablename__ = "token_deployments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    token_address: Mapped[str] = mapped_column(String(42), nullable=False, unique=True)
    symbol: Mapped[str | None] = mapped_column(String(32), nullable=True)
    name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    fees_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_fee_claim_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class FeeClaimModel(Base):
    """One fee-locker claim attempt for a (token, fee asset) pair."""

    __tablename__ = "fee_claims"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    token_address: Mapped[str] = mapped_column(String(42), nullable=False)
    fee_token: Mapped[str] = mapped_column(String(42), nullable=False)
    amount: Mapped[str] = mapped_column(String(78), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_fee_claims_token_created", "token_address", "created_at"),
        Index("idx_fee_claims_status", "status"),
    )
