"""Tests for the order monitor."""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import pytest

from cow_flywheel.config import USDC_BASE_ADDRESS, WETH_BASE_ADDRESS
from cow_flywheel.effects import BackgroundEffects
from cow_flywheel.monitor.reconciler import (
    ORDER_POLICY,
    REASON_EXPIRED,
    REASON_INVALIDATED,
    TRADE_QUEUE_POLICY,
    OrderMonitor,
    compute_update,
)
from cow_flywheel.settlement.cow_client import CowClient
from cow_flywheel.settlement.models import OrderStatus
from cow_flywheel.storage.database import DatabaseManager
from cow_flywheel.storage.repos import (
    AgentRepository,
    BuybackOrderRepository,
    SentimentTradeRepository,
    TradeIntentDTO,
    TradeIntentRepository,
)

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)


def _uid(n: int) -> str:
    return "0x" + format(n, "0112x")


# ============================================================================
# compute_update Tests
# ============================================================================


class TestComputeUpdate:
    """Tests for the pure status mapping."""

    def _update(self, stored: str, external: OrderStatus, policy=TRADE_QUEUE_POLICY, minimum: int | None = 1000):
        return compute_update(
            stored_status=stored,
            external=external,
            buy_amount_min=minimum,
            policy=policy,
            now=NOW,
        )

    def test_fill_records_savings(self) -> None:
        update = self._update(
            "submitted",
            OrderStatus(uid="u", status="fulfilled", executed_buy_amount=1050, executed_sell_amount=500),
        )

        assert update is not None
        assert update.status == "filled"
        assert update.executed_buy_amount == 1050
        assert update.executed_sell_amount == 500
        assert update.savings == 50
        assert update.filled_at == NOW

    def test_fill_at_minimum_has_no_savings(self) -> None:
        update = self._update("open", OrderStatus(uid="u", status="fulfilled", executed_buy_amount=1000))
        assert update is not None
        assert update.savings is None

    def test_executed_amount_counts_as_fill(self) -> None:
        update = self._update("submitted", OrderStatus(uid="u", status="open", executed_buy_amount=10))
        assert update is not None
        assert update.status == "filled"

    def test_fill_without_minimum(self) -> None:
        update = self._update(
            "submitted", OrderStatus(uid="u", status="fulfilled", executed_buy_amount=7), minimum=None
        )
        assert update is not None
        assert update.savings is None

    def test_invalidated_cancels(self) -> None:
        update = self._update("open", OrderStatus(uid="u", status="open", invalidated=True))
        assert update is not None
        assert update.status == "cancelled"
        assert update.error_message == REASON_INVALIDATED

    def test_expired(self) -> None:
        update = self._update("submitted", OrderStatus(uid="u", status="expired"))
        assert update is not None
        assert update.status == "expired"
        assert update.error_message == REASON_EXPIRED

    def test_open_moves_submitted_once(self) -> None:
        update = self._update("submitted", OrderStatus(uid="u", status="open"))
        assert update is not None
        assert update.status == "open"
        assert self._update("open", OrderStatus(uid="u", status="open")) is None

    def test_presignature_pending_is_no_op(self) -> None:
        assert self._update("submitted", OrderStatus(uid="u", status="presignaturePending")) is None

    def test_order_policy_collapses_to_failed(self) -> None:
        expired = self._update("pending", OrderStatus(uid="u", status="expired"), policy=ORDER_POLICY)
        cancelled = self._update("open", OrderStatus(uid="u", status="cancelled"), policy=ORDER_POLICY)
        opened = self._update("pending", OrderStatus(uid="u", status="open"), policy=ORDER_POLICY)

        assert expired is not None and expired.status == "failed"
        assert cancelled is not None and cancelled.status == "failed"
        assert opened is not None and opened.status == "open"


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def events() -> list[tuple[str, dict[str, Any]]]:
    return []


@pytest.fixture
def effects(events) -> BackgroundEffects:
    async def record(event_type: str, payload: dict[str, Any]) -> None:
        events.append((event_type, payload))

    return BackgroundEffects(record)


@pytest.fixture
def monitor(db: DatabaseManager, cow: CowClient, effects: BackgroundEffects) -> OrderMonitor:
    return OrderMonitor(db, cow=cow, settlement_decimals=6, effects=effects, clock=lambda: NOW)


async def _submitted_intent(db: DatabaseManager, agent, *, uid: str, buy_amount_min: int = 1000) -> TradeIntentDTO:
    async with db.get_async_session() as session:
        repo = TradeIntentRepository(session)
        intent = await repo.insert_if_no_active(
            agent_id=agent.id,
            owner_address=agent.agent_wallet_address,
            sell_token=USDC_BASE_ADDRESS,
            buy_token=WETH_BASE_ADDRESS,
            sell_amount=100_000_000,
            sell_amount_usd=Decimal("100"),
            receiver=agent.agent_wallet_address,
        )
        assert intent is not None
        await repo.mark_quoted(
            intent.id,
            buy_amount=buy_amount_min,
            fee_amount=0,
            valid_to=1_900_000_000,
            quote_data={"buyAmountMin": str(buy_amount_min)},
        )
        await repo.mark_signed(intent.id, signature="0x" + "11" * 65)
        await repo.mark_submitted(intent.id, order_uid=uid)
        stored = await repo.get(intent.id)
    assert stored is not None
    return stored


async def _load_intent(db: DatabaseManager, intent_id: str) -> TradeIntentDTO:
    async with db.get_async_session() as session:
        intent = await TradeIntentRepository(session).get(intent_id)
    assert intent is not None
    return intent


def _order_fields(uid: str, *, buy_amount_min: int = 1000) -> dict[str, Any]:
    return {
        "order_uid": uid,
        "sell_token": USDC_BASE_ADDRESS,
        "buy_token": WETH_BASE_ADDRESS,
        "sell_amount": 120_000_000,
        "usdc_amount": Decimal("120"),
        "buy_amount_min": buy_amount_min,
        "fee_amount": 0,
        "valid_to": 1_900_000_000,
        "quote_data": None,
    }


# ============================================================================
# OrderMonitor Tests
# ============================================================================


class TestTradeQueueReconciliation:
    """Tests for the trade-queue family."""

    @pytest.mark.asyncio
    async def test_fill_records_savings_and_deducts_budget(
        self, db: DatabaseManager, monitor: OrderMonitor, make_agent, order_book, effects, events
    ) -> None:
        agent = await make_agent(budget=Decimal("1000"))
        intent = await _submitted_intent(db, agent, uid=_uid(1))
        order_book.set_status(_uid(1), "fulfilled", executed_buy=1050, executed_sell=100_000_000)

        stats = await monitor.run()
        await effects.drain()

        assert stats.families["trade_queue"].to_dict() == {"checked": 1, "updated": 1, "errors": 0}
        stored = await _load_intent(db, intent.id)
        assert stored.status == "filled"
        assert stored.executed_buy_amount == 1050
        assert stored.savings == 50
        assert stored.filled_at is not None

        async with db.get_async_session() as session:
            updated_agent = await AgentRepository(session).get(agent.id)
        assert updated_agent is not None
        assert updated_agent.remaining_budget == Decimal("900")
        assert updated_agent.trade_count == 1

        assert events == [
            (
                "trade_filled",
                {
                    "intent_id": intent.id,
                    "agent_id": agent.id,
                    "order_uid": _uid(1),
                    "executed_buy_amount": "1050",
                    "savings": "50",
                },
            )
        ]

    @pytest.mark.asyncio
    async def test_second_run_writes_nothing(
        self, db: DatabaseManager, monitor: OrderMonitor, make_agent, order_book
    ) -> None:
        agent = await make_agent()
        intent = await _submitted_intent(db, agent, uid=_uid(1))
        order_book.set_status(_uid(1), "fulfilled", executed_buy=1050, executed_sell=100_000_000)

        await monitor.run()
        first = await _load_intent(db, intent.id)
        stats = await monitor.run()

        # Filled rows are no longer in flight.
        assert stats.families["trade_queue"].checked == 0
        assert await _load_intent(db, intent.id) == first
        async with db.get_async_session() as session:
            stored_agent = await AgentRepository(session).get(agent.id)
        assert stored_agent is not None
        assert stored_agent.trade_count == 1

    @pytest.mark.asyncio
    async def test_open_order_is_marked_once(
        self, db: DatabaseManager, monitor: OrderMonitor, make_agent, order_book
    ) -> None:
        agent = await make_agent()
        intent = await _submitted_intent(db, agent, uid=_uid(1))
        order_book.set_status(_uid(1), "open")

        first = await monitor.run()
        second = await monitor.run()

        assert first.families["trade_queue"].updated == 1
        assert second.families["trade_queue"].updated == 0
        assert second.families["trade_queue"].checked == 1
        assert (await _load_intent(db, intent.id)).status == "open"

    @pytest.mark.asyncio
    async def test_expired_and_invalidated(
        self, db: DatabaseManager, monitor: OrderMonitor, make_agent, order_book
    ) -> None:
        expiring = await _submitted_intent(db, await make_agent(), uid=_uid(1))
        invalid = await _submitted_intent(db, await make_agent(), uid=_uid(2))
        order_book.set_status(_uid(1), "expired")
        order_book.set_status(_uid(2), "open", invalidated=True)

        await monitor.run()

        expired = await _load_intent(db, expiring.id)
        cancelled = await _load_intent(db, invalid.id)
        assert expired.status == "expired"
        assert expired.error_message == REASON_EXPIRED
        assert cancelled.status == "cancelled"
        assert cancelled.error_message == REASON_INVALIDATED

    @pytest.mark.asyncio
    async def test_failure_on_one_order_does_not_block_others(
        self, db: DatabaseManager, monitor: OrderMonitor, make_agent, order_book
    ) -> None:
        broken = await _submitted_intent(db, await make_agent(), uid=_uid(1))
        missing = await _submitted_intent(db, await make_agent(), uid=_uid(2))
        healthy = await _submitted_intent(db, await make_agent(), uid=_uid(3))
        order_book.status_errors.add(_uid(1))
        order_book.set_status(_uid(3), "fulfilled", executed_buy=1200, executed_sell=100_000_000)

        stats = await monitor.run()

        assert stats.families["trade_queue"].to_dict() == {"checked": 3, "updated": 1, "errors": 2}
        assert (await _load_intent(db, broken.id)).status == "submitted"
        assert (await _load_intent(db, missing.id)).status == "submitted"
        assert (await _load_intent(db, healthy.id)).status == "filled"

    @pytest.mark.asyncio
    async def test_fill_without_executed_sell_uses_queued_usd(
        self, db: DatabaseManager, monitor: OrderMonitor, make_agent, order_book
    ) -> None:
        agent = await make_agent(budget=Decimal("1000"))
        await _submitted_intent(db, agent, uid=_uid(1))
        order_book.set_status(_uid(1), "fulfilled", executed_buy=1000)

        await monitor.run()

        async with db.get_async_session() as session:
            stored_agent = await AgentRepository(session).get(agent.id)
        assert stored_agent is not None
        assert stored_agent.remaining_budget == Decimal("900")

    @pytest.mark.asyncio
    async def test_fill_amounts_taken_from_trades_when_status_omits_them(
        self, db: DatabaseManager, monitor: OrderMonitor, make_agent, order_book
    ) -> None:
        agent = await make_agent(budget=Decimal("1000"))
        intent = await _submitted_intent(db, agent, uid=_uid(1))
        order_book.set_status(_uid(1), "fulfilled")
        order_book.trades[_uid(1)] = [
            {"orderUid": _uid(1), "buyAmount": "600", "sellAmount": "50000000"},
            {"orderUid": _uid(1), "buyAmount": "500", "sellAmount": "50000000"},
        ]

        stats = await monitor.run()

        assert stats.families["trade_queue"].errors == 0
        stored = await _load_intent(db, intent.id)
        assert stored.status == "filled"
        assert stored.executed_buy_amount == 1100
        assert stored.savings == 100
        async with db.get_async_session() as session:
            stored_agent = await AgentRepository(session).get(agent.id)
        assert stored_agent is not None
        assert stored_agent.remaining_budget == Decimal("900")

    @pytest.mark.asyncio
    async def test_fulfilled_without_amounts_or_trades_still_fills(
        self, db: DatabaseManager, monitor: OrderMonitor, make_agent, order_book
    ) -> None:
        agent = await make_agent()
        intent = await _submitted_intent(db, agent, uid=_uid(1))
        order_book.set_status(_uid(1), "fulfilled")

        await monitor.run()

        stored = await _load_intent(db, intent.id)
        assert stored.status == "filled"
        assert stored.savings is None


class TestTreasuryReconciliation:
    """Tests for the buyback and sentiment families."""

    @pytest.mark.asyncio
    async def test_buyback_fill(
        self, db: DatabaseManager, monitor: OrderMonitor, order_book, effects, events
    ) -> None:
        async with db.get_async_session() as session:
            order = await BuybackOrderRepository(session).insert_submitted(
                trigger_balance=Decimal("150"), **_order_fields(_uid(7))
            )
        order_book.set_status(_uid(7), "fulfilled", executed_buy=1300, executed_sell=120_000_000)

        stats = await monitor.run()
        await effects.drain()

        assert stats.families["buyback"].updated == 1
        async with db.get_async_session() as session:
            stored = await BuybackOrderRepository(session).get(order.id)
        assert stored is not None
        assert stored.status == "filled"
        assert stored.buy_amount_actual == 1300
        assert stored.savings == 300
        assert events[0][0] == "buyback_filled"
        assert events[0][1]["savings"] == "300"

    @pytest.mark.asyncio
    async def test_sentiment_expiry_marks_failed(self, db: DatabaseManager, monitor: OrderMonitor, order_book) -> None:
        async with db.get_async_session() as session:
            order = await SentimentTradeRepository(session).insert_submitted(
                sentiment_score=Decimal("0.8"), trigger_snapshot_id=None, **_order_fields(_uid(8))
            )
        order_book.set_status(_uid(8), "expired")

        stats = await monitor.run()

        assert stats.families["sentiment"].updated == 1
        async with db.get_async_session() as session:
            stored = await SentimentTradeRepository(session).get(order.id)
        assert stored is not None
        assert stored.status == "failed"
        assert stored.error_message == REASON_EXPIRED

    @pytest.mark.asyncio
    async def test_families_are_isolated(self, db: DatabaseManager, monitor: OrderMonitor, order_book) -> None:
        async with db.get_async_session() as session:
            await BuybackOrderRepository(session).insert_submitted(
                trigger_balance=Decimal("150"), **_order_fields(_uid(7))
            )
            sentiment = await SentimentTradeRepository(session).insert_submitted(
                sentiment_score=Decimal("0.8"), trigger_snapshot_id=None, **_order_fields(_uid(8))
            )
        order_book.status_errors.add(_uid(7))
        order_book.set_status(_uid(8), "fulfilled", executed_buy=1000)

        stats = await monitor.run()

        assert stats.families["buyback"].errors == 1
        assert stats.families["sentiment"].updated == 1
        async with db.get_async_session() as session:
            stored = await SentimentTradeRepository(session).get(sentiment.id)
        assert stored is not None
        assert stored.status == "filled"
        assert stored.savings is None

    @pytest.mark.asyncio
    async def test_failed_rows_are_not_polled(self, db: DatabaseManager, monitor: OrderMonitor, order_book) -> None:
        async with db.get_async_session() as session:
            await BuybackOrderRepository(session).insert_failed(
                sell_token=USDC_BASE_ADDRESS,
                buy_token=WETH_BASE_ADDRESS,
                sell_amount=1,
                usdc_amount=Decimal("1"),
                trigger_balance=Decimal("1"),
                error_message="no liquidity",
            )

        stats = await monitor.run()

        assert stats.families["buyback"].checked == 0
        assert order_book.status_requests == 0
