"""Repository pattern implementations for data access.

Repositories take an `AsyncSession` and return dataclass DTOs. Every
status mutation is a single-row UPDATE keyed by primary id and guarded
by a status predicate, so a row that has already reached a terminal
state is never rewritten.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from cow_flywheel.storage.models import (
    ORDER_ACTIVE_STATUSES,
    ORDER_STATUS_FAILED,
    ORDER_STATUS_FILLED,
    ORDER_STATUS_PENDING,
    TRADE_ACTIVE_STATUSES,
    TRADE_IN_FLIGHT_STATUSES,
    TRADE_PRE_SUBMISSION_STATUSES,
    TRADE_STATUS_CANCELLED,
    TRADE_STATUS_FAILED,
    TRADE_STATUS_QUEUED,
    TRADE_STATUS_QUOTED,
    TRADE_STATUS_SIGNED,
    TRADE_STATUS_SUBMITTED,
    AgentModel,
    BuybackOrderModel,
    FeeClaimModel,
    SentimentSnapshotModel,
    SentimentTradeModel,
    TokenDeploymentModel,
    TradeIntentModel,
    new_id,
    status_in_clause,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def _to_int(value: str | None) -> int | None:
    return int(value) if value is not None else None


# ============================================================================
# Agents
# ============================================================================


@dataclass
class AgentDTO:
    """Data transfer object for agents."""

    id: str
    owner_address: str
    strategy_id: str
    status: str
    trading_enabled: bool
    allocated_budget: Decimal
    remaining_budget: Decimal
    max_drawdown_pct: Decimal | None = None
    max_position_size_pct: Decimal | None = None
    budget_currency: str = "USDC"
    name: str | None = None
    agent_wallet_address: str | None = None
    agent_wallet_encrypted: str | None = None
    pnl_usd: Decimal = Decimal("0")
    pnl_pct: Decimal = Decimal("0")
    trade_count: int = 0
    last_trade_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: AgentModel) -> AgentDTO:
        return cls(
            id=model.id,
            owner_address=model.owner_address,
            strategy_id=model.strategy_id,
            status=model.status,
            trading_enabled=model.trading_enabled,
            allocated_budget=Decimal(model.allocated_budget),
            remaining_budget=Decimal(model.remaining_budget),
            max_drawdown_pct=model.max_drawdown_pct,
            max_position_size_pct=model.max_position_size_pct,
            budget_currency=model.budget_currency,
            name=model.name,
            agent_wallet_address=model.agent_wallet_address,
            agent_wallet_encrypted=model.agent_wallet_encrypted,
            pnl_usd=Decimal(model.pnl_usd),
            pnl_pct=Decimal(model.pnl_pct),
            trade_count=model.trade_count,
            last_trade_at=model.last_trade_at,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )


class AgentRepository:
    """Repository for agent configuration and running statistics."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, agent_id: str) -> AgentDTO | None:
        model = await self.session.get(AgentModel, agent_id, populate_existing=True)
        return AgentDTO.from_model(model) if model else None

    async def create(
        self,
        *,
        owner_address: str,
        strategy_id: str,
        name: str | None = None,
        max_drawdown_pct: Decimal | None = None,
        max_position_size_pct: Decimal | None = None,
        agent_wallet_address: str | None = None,
        agent_wallet_encrypted: str | None = None,
    ) -> AgentDTO:
        """Create an agent in `deploying` with an empty budget."""
        model = AgentModel(
            owner_address=owner_address.lower(),
            strategy_id=strategy_id,
            name=name,
            max_drawdown_pct=max_drawdown_pct,
            max_position_size_pct=max_position_size_pct,
            agent_wallet_address=agent_wallet_address,
            agent_wallet_encrypted=agent_wallet_encrypted,
            allocated_budget=Decimal("0"),
            remaining_budget=Decimal("0"),
            status="deploying",
            trading_enabled=False,
        )
        self.session.add(model)
        await self.session.flush()
        return AgentDTO.from_model(model)

    async def list_tradeable(self) -> list[AgentDTO]:
        """Agents that are active with trading enabled."""
        result = await self.session.execute(
            select(AgentModel)
            .where((AgentModel.status == "active") & (AgentModel.trading_enabled.is_(True)))
            .order_by(AgentModel.created_at)
        )
        return [AgentDTO.from_model(m) for m in result.scalars().all()]

    async def set_status(
        self,
        agent_id: str,
        *,
        status: str,
        expected: tuple[str, ...],
        trading_enabled: bool | None = None,
    ) -> bool:
        """Move an agent to `status` if it is currently in one of `expected`.

        Returns:
            True if the row was updated.
        """
        values: dict[str, Any] = {"status": status, "updated_at": datetime.now(UTC)}
        if trading_enabled is not None:
            values["trading_enabled"] = trading_enabled
        result = await self.session.execute(
            update(AgentModel)
            .where((AgentModel.id == agent_id) & (AgentModel.status.in_(expected)))
            .values(**values)
        )
        await self.session.flush()
        return bool(result.rowcount)

    async def add_budget(self, agent_id: str, amount: Decimal) -> AgentDTO | None:
        """Raise both allocated and remaining budget by `amount`."""
        model = await self.session.get(AgentModel, agent_id)
        if model is None:
            return None
        model.allocated_budget = Decimal(model.allocated_budget) + amount
        model.remaining_budget = Decimal(model.remaining_budget) + amount
        model.updated_at = datetime.now(UTC)
        await self.session.flush()
        return AgentDTO.from_model(model)

    async def record_fill(self, agent_id: str, *, spent_usd: Decimal, filled_at: datetime) -> AgentDTO | None:
        """Bump trade statistics and deduct the spent amount from the remaining budget.

        The remaining budget is clamped to `[0, allocated_budget]`.
        """
        model = await self.session.get(AgentModel, agent_id)
        if model is None:
            return None
        allocated = Decimal(model.allocated_budget)
        remaining = Decimal(model.remaining_budget) - spent_usd
        model.remaining_budget = min(max(remaining, Decimal("0")), allocated)
        model.trade_count = model.trade_count + 1
        model.last_trade_at = filled_at
        model.updated_at = datetime.now(UTC)
        await self.session.flush()
        return AgentDTO.from_model(model)


# ============================================================================
# Trade queue
# ============================================================================


@dataclass
class TradeIntentDTO:
    """Data transfer object for trade-queue rows."""

    id: str
    agent_id: str
    owner_address: str
    sell_token: str
    buy_token: str
    sell_amount: int
    sell_amount_usd: Decimal
    status: str
    next_run_at: datetime | None = None
    receiver: str | None = None
    last_run_at: datetime | None = None
    quote_buy_amount: int | None = None
    quote_fee_amount: int | None = None
    quote_valid_to: int | None = None
    quote_data: dict[str, Any] | None = None
    signature: str | None = None
    order_uid: str | None = None
    executed_buy_amount: int | None = None
    executed_sell_amount: int | None = None
    savings: int | None = None
    attempts: int = 0
    error_message: str | None = None
    filled_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status not in TRADE_ACTIVE_STATUSES

    @classmethod
    def from_model(cls, model: TradeIntentModel) -> TradeIntentDTO:
        return cls(
            id=model.id,
            agent_id=model.agent_id,
            owner_address=model.owner_address,
            sell_token=model.sell_token,
            buy_token=model.buy_token,
            sell_amount=int(model.sell_amount),
            sell_amount_usd=Decimal(model.sell_amount_usd),
            status=model.status,
            next_run_at=model.next_run_at,
            receiver=model.receiver,
            last_run_at=model.last_run_at,
            quote_buy_amount=_to_int(model.quote_buy_amount),
            quote_fee_amount=_to_int(model.quote_fee_amount),
            quote_valid_to=model.quote_valid_to,
            quote_data=model.quote_data,
            signature=model.signature,
            order_uid=model.order_uid,
            executed_buy_amount=_to_int(model.executed_buy_amount),
            executed_sell_amount=_to_int(model.executed_sell_amount),
            savings=_to_int(model.savings),
            attempts=model.attempts,
            error_message=model.error_message,
            filled_at=model.filled_at,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )


class TradeIntentRepository:
    """Repository for the trade queue and its state machine."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, intent_id: str) -> TradeIntentDTO | None:
        model = await self.session.get(TradeIntentModel, intent_id, populate_existing=True)
        return TradeIntentDTO.from_model(model) if model else None

    async def get_active_for_agent(self, agent_id: str) -> TradeIntentDTO | None:
        result = await self.session.execute(
            select(TradeIntentModel)
            .where(
                (TradeIntentModel.agent_id == agent_id)
                & (TradeIntentModel.status.in_(TRADE_ACTIVE_STATUSES))
            )
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return TradeIntentDTO.from_model(model) if model else None

    async def has_active(self, agent_id: str) -> bool:
        """Advisory dedup check; `insert_if_no_active` is the authoritative guard."""
        result = await self.session.execute(
            select(func.count())
            .select_from(TradeIntentModel)
            .where(
                (TradeIntentModel.agent_id == agent_id)
                & (TradeIntentModel.status.in_(TRADE_ACTIVE_STATUSES))
            )
        )
        return int(result.scalar_one()) > 0

    async def count_active(self, agent_id: str) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(TradeIntentModel)
            .where(
                (TradeIntentModel.agent_id == agent_id)
                & (TradeIntentModel.status.in_(TRADE_ACTIVE_STATUSES))
            )
        )
        return int(result.scalar_one())

    async def insert_if_no_active(
        self,
        *,
        agent_id: str,
        owner_address: str,
        sell_token: str,
        buy_token: str,
        sell_amount: int,
        sell_amount_usd: Decimal,
        receiver: str | None = None,
    ) -> TradeIntentDTO | None:
        """Insert a `queued` intent unless the agent already has an active one.

        The insert is a single statement that yields to the partial unique
        index on active intents, so two racing invocations cannot both
        succeed.

        Returns:
            The new intent, or None if an active intent already exists.
        """
        if await self.has_active(agent_id):
            return None

        now = datetime.now(UTC)
        intent_id = new_id()
        values = {
            "id": intent_id,
            "agent_id": agent_id,
            "owner_address": owner_address.lower(),
            "sell_token": sell_token,
            "buy_token": buy_token,
            "sell_amount": str(sell_amount),
            "sell_amount_usd": sell_amount_usd,
            "receiver": receiver,
            "status": TRADE_STATUS_QUEUED,
            "next_run_at": now,
            "attempts": 0,
            "created_at": now,
            "updated_at": now,
        }
        dialect = self.session.get_bind().dialect.name
        insert = pg_insert if dialect == "postgresql" else sqlite_insert
        stmt = insert(TradeIntentModel).values(**values)
        stmt = stmt.on_conflict_do_nothing(
            index_elements=["agent_id"],
            index_where=status_in_clause(TRADE_ACTIVE_STATUSES),
        )
        result = await self.session.execute(stmt)
        await self.session.flush()
        if not result.rowcount:
            logger.debug("Active intent appeared concurrently for agent %s", agent_id)
            return None
        return await self.get(intent_id)

    async def list_ready(self, *, now: datetime, limit: int = 20) -> list[TradeIntentDTO]:
        """Pre-submission intents whose next run time has passed."""
        result = await self.session.execute(
            select(TradeIntentModel)
            .where(
                TradeIntentModel.status.in_(TRADE_PRE_SUBMISSION_STATUSES)
                & (TradeIntentModel.next_run_at <= now)
            )
            .order_by(TradeIntentModel.next_run_at, TradeIntentModel.created_at)
            .limit(limit)
        )
        return [TradeIntentDTO.from_model(m) for m in result.scalars().all()]

    async def list_in_flight(self, *, limit: int = 100) -> list[TradeIntentDTO]:
        """Submitted intents that the monitor still has to reconcile."""
        result = await self.session.execute(
            select(TradeIntentModel)
            .where(
                TradeIntentModel.status.in_(TRADE_IN_FLIGHT_STATUSES)
                & TradeIntentModel.order_uid.is_not(None)
            )
            .order_by(TradeIntentModel.created_at)
            .limit(limit)
        )
        return [TradeIntentDTO.from_model(m) for m in result.scalars().all()]

    async def _guarded_update(self, intent_id: str, expected: tuple[str, ...], **values: Any) -> bool:
        values.setdefault("updated_at", datetime.now(UTC))
        result = await self.session.execute(
            update(TradeIntentModel)
            .where((TradeIntentModel.id == intent_id) & (TradeIntentModel.status.in_(expected)))
            .values(**values)
        )
        await self.session.flush()
        return bool(result.rowcount)

    async def claim(self, intent_id: str, *, now: datetime, lease_until: datetime) -> bool:
        """Take a due intent for one invocation by pushing its next run time out.

        The UPDATE only matches while the intent is still due, so when two
        invocations overlap exactly one of them gets the row.

        Returns:
            False if the intent was claimed elsewhere or is no longer due.
        """
        result = await self.session.execute(
            update(TradeIntentModel)
            .where(
                (TradeIntentModel.id == intent_id)
                & TradeIntentModel.status.in_(TRADE_PRE_SUBMISSION_STATUSES)
                & (TradeIntentModel.next_run_at <= now)
            )
            .values(next_run_at=lease_until, last_run_at=now, updated_at=now)
        )
        await self.session.flush()
        return bool(result.rowcount)

    async def mark_quoted(
        self,
        intent_id: str,
        *,
        buy_amount: int,
        fee_amount: int,
        valid_to: int,
        quote_data: dict[str, Any],
    ) -> bool:
        """Record a fresh quote. Re-quoting a stale quoted/signed intent is allowed."""
        return await self._guarded_update(
            intent_id,
            TRADE_PRE_SUBMISSION_STATUSES,
            status=TRADE_STATUS_QUOTED,
            quote_buy_amount=str(buy_amount),
            quote_fee_amount=str(fee_amount),
            quote_valid_to=valid_to,
            quote_data=quote_data,
            signature=None,
            last_run_at=datetime.now(UTC),
        )

    async def mark_signed(self, intent_id: str, *, signature: str) -> bool:
        return await self._guarded_update(
            intent_id,
            (TRADE_STATUS_QUOTED,),
            status=TRADE_STATUS_SIGNED,
            signature=signature,
        )

    async def mark_submitted(self, intent_id: str, *, order_uid: str, signature: str | None = None) -> bool:
        """Record the uid of an order the order book accepted.

        Any pre-submission status is accepted: once the order is live its uid
        must be stored even if the row was re-quoted in the meantime.
        """
        values: dict[str, Any] = {"order_uid": order_uid, "error_message": None}
        if signature is not None:
            values["signature"] = signature
        return await self._guarded_update(
            intent_id,
            TRADE_PRE_SUBMISSION_STATUSES,
            status=TRADE_STATUS_SUBMITTED,
            **values,
        )

    async def mark_cancelled(self, intent_id: str, *, reason: str) -> bool:
        """Cancel an intent that has not been submitted yet."""
        return await self._guarded_update(
            intent_id,
            TRADE_PRE_SUBMISSION_STATUSES,
            status=TRADE_STATUS_CANCELLED,
            error_message=reason,
        )

    async def record_attempt_failure(
        self,
        intent_id: str,
        *,
        error: str,
        retry_at: datetime,
        max_attempts: int,
    ) -> str | None:
        """Count a failed attempt and schedule the retry.

        The intent keeps its last good status unless `max_attempts` is
        reached, in which case it becomes `failed`.

        Returns:
            The status after the update, or None if the intent was not
            in a pre-submission status.
        """
        current = await self.get(intent_id)
        if current is None or current.status not in TRADE_PRE_SUBMISSION_STATUSES:
            return None
        attempts = current.attempts + 1
        status = TRADE_STATUS_FAILED if attempts >= max_attempts else current.status
        updated = await self._guarded_update(
            intent_id,
            (current.status,),
            status=status,
            attempts=attempts,
            error_message=error[:2000],
            next_run_at=retry_at,
            last_run_at=datetime.now(UTC),
        )
        return status if updated else None

    async def apply_order_update(
        self,
        intent_id: str,
        *,
        expected_status: str,
        status: str,
        executed_buy_amount: int | None = None,
        executed_sell_amount: int | None = None,
        savings: int | None = None,
        filled_at: datetime | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Apply a reconciled settlement status to a submitted intent.

        The update only lands if the row is still in `expected_status`.
        """
        if expected_status not in TRADE_IN_FLIGHT_STATUSES:
            return False
        values: dict[str, Any] = {"status": status}
        if executed_buy_amount is not None:
            values["executed_buy_amount"] = str(executed_buy_amount)
        if executed_sell_amount is not None:
            values["executed_sell_amount"] = str(executed_sell_amount)
        if savings is not None:
            values["savings"] = str(savings)
        if filled_at is not None:
            values["filled_at"] = filled_at
        if error_message is not None:
            values["error_message"] = error_message
        return await self._guarded_update(intent_id, (expected_status,), **values)


# ============================================================================
# Treasury order families
# ============================================================================


@dataclass
class SettlementOrderDTO:
    """Data transfer object shared by buyback orders and sentiment trades."""

    id: str
    sell_token: str
    buy_token: str
    sell_amount: int
    usdc_amount: Decimal
    status: str
    order_uid: str | None = None
    buy_amount_min: int | None = None
    fee_amount: int | None = None
    valid_to: int | None = None
    quote_data: dict[str, Any] | None = None
    buy_amount_actual: int | None = None
    savings: int | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    filled_at: datetime | None = None
    trigger_balance: Decimal | None = None
    sentiment_score: Decimal | None = None
    trigger_snapshot_id: int | None = None

    @classmethod
    def from_model(cls, model: BuybackOrderModel | SentimentTradeModel) -> SettlementOrderDTO:
        return cls(
            id=model.id,
            sell_token=model.sell_token,
            buy_token=model.buy_token,
            sell_amount=int(model.sell_amount),
            usdc_amount=Decimal(model.usdc_amount),
            status=model.status,
            order_uid=model.order_uid,
            buy_amount_min=_to_int(model.buy_amount_min),
            fee_amount=_to_int(model.fee_amount),
            valid_to=model.valid_to,
            quote_data=model.quote_data,
            buy_amount_actual=_to_int(model.buy_amount_actual),
            savings=_to_int(model.savings),
            error_message=model.error_message,
            created_at=model.created_at,
            filled_at=model.filled_at,
            trigger_balance=getattr(model, "trigger_balance", None),
            sentiment_score=getattr(model, "sentiment_score", None),
            trigger_snapshot_id=getattr(model, "trigger_snapshot_id", None),
        )


class SettlementOrderRepository:
    """Shared persistence for a treasury order family."""

    model: type[BuybackOrderModel] | type[SentimentTradeModel]

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, order_id: str) -> SettlementOrderDTO | None:
        model = await self.session.get(self.model, order_id, populate_existing=True)
        return SettlementOrderDTO.from_model(model) if model else None

    async def list_all(self) -> list[SettlementOrderDTO]:
        result = await self.session.execute(select(self.model).order_by(self.model.created_at))
        return [SettlementOrderDTO.from_model(m) for m in result.scalars().all()]

    async def list_in_flight(self, *, limit: int = 100) -> list[SettlementOrderDTO]:
        result = await self.session.execute(
            select(self.model)
            .where(self.model.status.in_(ORDER_ACTIVE_STATUSES) & self.model.order_uid.is_not(None))
            .order_by(self.model.created_at)
            .limit(limit)
        )
        return [SettlementOrderDTO.from_model(m) for m in result.scalars().all()]

    async def _insert(self, **values: Any) -> SettlementOrderDTO:
        model = self.model(**values)
        self.session.add(model)
        await self.session.flush()
        return SettlementOrderDTO.from_model(model)

    @staticmethod
    def _submitted_values(
        *,
        order_uid: str,
        sell_token: str,
        buy_token: str,
        sell_amount: int,
        usdc_amount: Decimal,
        buy_amount_min: int,
        fee_amount: int,
        valid_to: int,
        quote_data: dict[str, Any] | None,
    ) -> dict[str, Any]:
        return {
            "order_uid": order_uid,
            "sell_token": sell_token,
            "buy_token": buy_token,
            "sell_amount": str(sell_amount),
            "usdc_amount": usdc_amount,
            "buy_amount_min": str(buy_amount_min),
            "fee_amount": str(fee_amount),
            "valid_to": valid_to,
            "quote_data": quote_data,
            "status": ORDER_STATUS_PENDING,
        }

    async def apply_order_update(
        self,
        order_id: str,
        *,
        expected_status: str,
        status: str,
        buy_amount_actual: int | None = None,
        savings: int | None = None,
        filled_at: datetime | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Apply a reconciled status if the row is still in `expected_status`."""
        if expected_status not in ORDER_ACTIVE_STATUSES:
            return False
        values: dict[str, Any] = {"status": status}
        if buy_amount_actual is not None:
            values["buy_amount_actual"] = str(buy_amount_actual)
        if savings is not None:
            values["savings"] = str(savings)
        if filled_at is not None:
            values["filled_at"] = filled_at
        if error_message is not None:
            values["error_message"] = error_message
        result = await self.session.execute(
            update(self.model)
            .where((self.model.id == order_id) & (self.model.status == expected_status))
            .values(**values)
        )
        await self.session.flush()
        return bool(result.rowcount)


class BuybackOrderRepository(SettlementOrderRepository):
    model = BuybackOrderModel

    async def insert_submitted(self, *, trigger_balance: Decimal, **order: Any) -> SettlementOrderDTO:
        return await self._insert(trigger_balance=trigger_balance, **self._submitted_values(**order))

    async def insert_failed(
        self,
        *,
        sell_token: str,
        buy_token: str,
        sell_amount: int,
        usdc_amount: Decimal,
        trigger_balance: Decimal,
        error_message: str,
    ) -> SettlementOrderDTO:
        return await self._insert(
            sell_token=sell_token,
            buy_token=buy_token,
            sell_amount=str(sell_amount),
            usdc_amount=usdc_amount,
            trigger_balance=trigger_balance,
            status=ORDER_STATUS_FAILED,
            error_message=error_message[:2000],
        )


class SentimentTradeRepository(SettlementOrderRepository):
    model = SentimentTradeModel

    async def insert_submitted(
        self,
        *,
        sentiment_score: Decimal,
        trigger_snapshot_id: int | None,
        **order: Any,
    ) -> SettlementOrderDTO:
        return await self._insert(
            sentiment_score=sentiment_score,
            trigger_snapshot_id=trigger_snapshot_id,
            **self._submitted_values(**order),
        )

    async def insert_failed(
        self,
        *,
        sell_token: str,
        buy_token: str,
        sell_amount: int,
        usdc_amount: Decimal,
        sentiment_score: Decimal,
        trigger_snapshot_id: int | None,
        error_message: str,
    ) -> SettlementOrderDTO:
        return await self._insert(
            sell_token=sell_token,
            buy_token=buy_token,
            sell_amount=str(sell_amount),
            usdc_amount=usdc_amount,
            sentiment_score=sentiment_score,
            trigger_snapshot_id=trigger_snapshot_id,
            status=ORDER_STATUS_FAILED,
            error_message=error_message[:2000],
        )

    async def has_trade_since(self, since: datetime) -> bool:
        """Whether a live or filled sentiment trade was placed at or after `since`."""
        result = await self.session.execute(
            select(func.count())
            .select_from(SentimentTradeModel)
            .where(
                (SentimentTradeModel.created_at >= since)
                & (SentimentTradeModel.status.in_(ORDER_ACTIVE_STATUSES + (ORDER_STATUS_FILLED,)))
            )
        )
        return int(result.scalar_one()) > 0


# ============================================================================
# Flywheel bookkeeping
# ============================================================================


@dataclass
class SentimentSnapshotDTO:
    id: int
    average_score: Decimal
    sample_size: int
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: SentimentSnapshotModel) -> SentimentSnapshotDTO:
        return cls(
            id=model.id,
            average_score=Decimal(model.average_score),
            sample_size=model.sample_size,
            created_at=model.created_at,
        )


class SentimentSnapshotRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, *, average_score: Decimal, sample_size: int) -> SentimentSnapshotDTO:
        model = SentimentSnapshotModel(average_score=average_score, sample_size=sample_size)
        self.session.add(model)
        await self.session.flush()
        return SentimentSnapshotDTO.from_model(model)

    async def get_latest(self) -> SentimentSnapshotDTO | None:
        result = await self.session.execute(
            select(SentimentSnapshotModel)
            .order_by(SentimentSnapshotModel.created_at.desc(), SentimentSnapshotModel.id.desc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return SentimentSnapshotDTO.from_model(model) if model else None


@dataclass
class TokenDeploymentDTO:
    token_address: str
    symbol: str | None = None
    name: str | None = None
    fees_enabled: bool = True
    last_fee_claim_at: datetime | None = None

    @classmethod
    def from_model(cls, model: TokenDeploymentModel) -> TokenDeploymentDTO:
        return cls(
            token_address=model.token_address,
            symbol=model.symbol,
            name=model.name,
            fees_enabled=model.fees_enabled,
            last_fee_claim_at=model.last_fee_claim_at,
        )


class TokenDeploymentRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, *, token_address: str, symbol: str | None = None, name: str | None = None) -> None:
        self.session.add(TokenDeploymentModel(token_address=token_address, symbol=symbol, name=name))
        await self.session.flush()

    async def list_fee_enabled(self) -> list[TokenDeploymentDTO]:
        result = await self.session.execute(
            select(TokenDeploymentModel)
            .where(TokenDeploymentModel.fees_enabled.is_(True))
            .order_by(TokenDeploymentModel.id)
        )
        return [TokenDeploymentDTO.from_model(m) for m in result.scalars().all()]

    async def get(self, token_address: str) -> TokenDeploymentDTO | None:
        result = await self.session.execute(
            select(TokenDeploymentModel).where(TokenDeploymentModel.token_address == token_address)
        )
        model = result.scalar_one_or_none()
        return TokenDeploymentDTO.from_model(model) if model else None

    async def touch_last_claim(self, token_address: str, *, at: datetime) -> None:
        await self.session.execute(
            update(TokenDeploymentModel)
            .where(TokenDeploymentModel.token_address == token_address)
            .values(last_fee_claim_at=at)
        )
        await self.session.flush()


@dataclass
class FeeClaimDTO:
    id: int
    token_address: str
    fee_token: str
    amount: int
    status: str
    tx_hash: str | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    claimed_at: datetime | None = None

    @classmethod
    def from_model(cls, model: FeeClaimModel) -> FeeClaimDTO:
        return cls(
            id=model.id,
            token_address=model.token_address,
            fee_token=model.fee_token,
            amount=int(model.amount),
            status=model.status,
            tx_hash=model.tx_hash,
            error_message=model.error_message,
            created_at=model.created_at,
            claimed_at=model.claimed_at,
        )


class FeeClaimRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_pending(self, *, token_address: str, fee_token: str, amount: int) -> FeeClaimDTO:
        model = FeeClaimModel(
            token_address=token_address,
            fee_token=fee_token,
            amount=str(amount),
            status="pending",
        )
        self.session.add(model)
        await self.session.flush()
        return FeeClaimDTO.from_model(model)

    async def mark_claimed(self, claim_id: int, *, tx_hash: str | None) -> None:
        await self.session.execute(
            update(FeeClaimModel)
            .where((FeeClaimModel.id == claim_id) & (FeeClaimModel.status == "pending"))
            .values(status="claimed", tx_hash=tx_hash, claimed_at=datetime.now(UTC))
        )
        await self.session.flush()

    async def mark_failed(self, claim_id: int, *, error: str) -> None:
        await self.session.execute(
            update(FeeClaimModel)
            .where((FeeClaimModel.id == claim_id) & (FeeClaimModel.status == "pending"))
            .values(status="failed", error_message=error[:2000])
        )
        await self.session.flush()

    async def list_all(self) -> list[FeeClaimDTO]:
        result = await self.session.execute(select(FeeClaimModel).order_by(FeeClaimModel.id))
        return [FeeClaimDTO.from_model(m) for m in result.scalars().all()]

