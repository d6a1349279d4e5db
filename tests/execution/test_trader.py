"""Tests for the trade-queue executor job."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy import update

from cow_flywheel.agents.keys import AgentKeyVault
from cow_flywheel.agents.lifecycle import AgentLifecycle
from cow_flywheel.config import USDC_BASE_ADDRESS, WETH_BASE_ADDRESS
from cow_flywheel.effects import BackgroundEffects
from cow_flywheel.execution.trader import TradeQueueExecutor, TraderStats
from cow_flywheel.settlement.executor import SwapExecutor
from cow_flywheel.storage.database import DatabaseManager
from cow_flywheel.storage.models import AgentModel
from cow_flywheel.storage.repos import AgentDTO, AgentRepository, TradeIntentDTO, TradeIntentRepository

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
def trader(
    db: DatabaseManager, swaps: SwapExecutor, vault: AgentKeyVault, effects: BackgroundEffects
) -> TradeQueueExecutor:
    return TradeQueueExecutor(db, swaps=swaps, vault=vault, effects=effects, max_attempts=3)


async def _queue(db: DatabaseManager, agent: AgentDTO) -> TradeIntentDTO:
    async with db.get_async_session() as session:
        intent = await TradeIntentRepository(session).insert_if_no_active(
            agent_id=agent.id,
            owner_address=agent.agent_wallet_address,
            sell_token=USDC_BASE_ADDRESS,
            buy_token=WETH_BASE_ADDRESS,
            sell_amount=100_000_000,
            sell_amount_usd=Decimal("100"),
            receiver=agent.agent_wallet_address,
        )
    assert intent is not None
    return intent


async def _load(db: DatabaseManager, intent_id: str) -> TradeIntentDTO:
    async with db.get_async_session() as session:
        intent = await TradeIntentRepository(session).get(intent_id)
    assert intent is not None
    return intent


async def _make_due(db: DatabaseManager, intent_id: str) -> None:
    """Pull a scheduled retry forward."""
    async with db.get_async_session() as session:
        await TradeIntentRepository(session)._guarded_update(
            intent_id,
            ("queued", "quoted", "signed"),
            next_run_at=datetime.now(UTC) - timedelta(seconds=1),
        )


# ============================================================================
# TradeQueueExecutor Tests
# ============================================================================


class TestTradeQueueExecutor:
    """Tests for TradeQueueExecutor.run."""

    @pytest.mark.asyncio
    async def test_queued_intent_is_submitted(
        self,
        db: DatabaseManager,
        trader: TradeQueueExecutor,
        make_agent,
        order_book,
        ledger,
        effects: BackgroundEffects,
        events,
    ) -> None:
        agent = await make_agent()
        intent = await _queue(db, agent)

        stats = await trader.run()
        await effects.drain()

        assert stats.checked == 1
        assert stats.quoted == 1
        assert stats.signed == 1
        assert stats.submitted == 1
        assert stats.errors == 0

        stored = await _load(db, intent.id)
        assert stored.status == "submitted"
        assert stored.order_uid in order_book.submitted
        assert stored.quote_buy_amount == order_book.buy_amount
        assert stored.quote_data is not None
        assert stored.quote_data["buyAmountMin"] == str(order_book.buy_amount)

        body = order_book.submitted[stored.order_uid]
        assert body["buyAmount"] == str(order_book.buy_amount)
        assert body["receiver"] == agent.agent_wallet_address
        assert len(ledger.approvals) == 1

        # The order is signed by the agent's own delegated key.
        quote_request = order_book.quote_requests[0]
        assert quote_request["from"].lower() == agent.agent_wallet_address.lower()
        assert stored.signature == body["signature"]

        assert events[0][0] == "trade_submitted"
        assert events[0][1]["order_uid"] == stored.order_uid

    @pytest.mark.asyncio
    async def test_quote_failure_keeps_intent_queued_with_backoff(
        self, db: DatabaseManager, trader: TradeQueueExecutor, make_agent, order_book
    ) -> None:
        agent = await make_agent()
        intent = await _queue(db, agent)
        order_book.quote_error = (400, {"errorType": "NoLiquidity", "description": "no route"})

        stats = await trader.run()

        assert stats.errors == 1
        assert stats.submitted == 0
        stored = await _load(db, intent.id)
        assert stored.status == "queued"
        assert stored.attempts == 1
        assert "NoLiquidity" in (stored.error_message or "")
        assert order_book.submitted == {}

        # Not due again until the retry delay has passed.
        again = await trader.run()
        assert again.checked == 0

    @pytest.mark.asyncio
    async def test_submission_failure_leaves_signed_and_requotes(
        self, db: DatabaseManager, trader: TradeQueueExecutor, make_agent, order_book
    ) -> None:
        agent = await make_agent()
        intent = await _queue(db, agent)
        order_book.submit_error = (400, {"errorType": "InvalidQuote", "description": "expired"})

        stats = await trader.run()

        assert stats.signed == 1
        assert stats.errors == 1
        stored = await _load(db, intent.id)
        assert stored.status == "signed"
        assert stored.order_uid is None

        order_book.submit_error = None
        await _make_due(db, intent.id)
        stats = await trader.run()

        assert stats.submitted == 1
        assert len(order_book.quote_requests) == 2
        assert (await _load(db, intent.id)).status == "submitted"

    @pytest.mark.asyncio
    async def test_intent_fails_after_max_attempts(
        self, db: DatabaseManager, trader: TradeQueueExecutor, make_agent, order_book
    ) -> None:
        agent = await make_agent()
        intent = await _queue(db, agent)
        order_book.quote_error = (500, {"errorType": "InternalServerError", "description": "down"})

        failed = 0
        for _ in range(3):
            stats = await trader.run()
            failed += stats.failed
            await _make_due(db, intent.id)

        assert failed == 1
        stored = await _load(db, intent.id)
        assert stored.status == "failed"
        assert stored.attempts == 3

    @pytest.mark.asyncio
    async def test_paused_agent_intent_waits(
        self, db: DatabaseManager, trader: TradeQueueExecutor, make_agent, order_book
    ) -> None:
        agent = await make_agent()
        intent = await _queue(db, agent)
        async with db.get_async_session() as session:
            await AgentLifecycle(session).pause(agent.id)

        stats = await trader.run()

        assert stats.skipped == 1
        assert (await _load(db, intent.id)).status == "queued"
        assert order_book.quote_requests == []

    @pytest.mark.asyncio
    async def test_stopped_agent_intent_is_cancelled(
        self, db: DatabaseManager, trader: TradeQueueExecutor, make_agent
    ) -> None:
        agent = await make_agent()
        intent = await _queue(db, agent)
        async with db.get_async_session() as session:
            await AgentLifecycle(session).stop(agent.id)

        stats = await trader.run()

        assert stats.cancelled == 1
        stored = await _load(db, intent.id)
        assert stored.status == "cancelled"
        assert stored.error_message == "Agent stopped"

    @pytest.mark.asyncio
    async def test_drawdown_breach_cancels_and_pauses(
        self, db: DatabaseManager, trader: TradeQueueExecutor, make_agent, order_book
    ) -> None:
        agent = await make_agent()
        intent = await _queue(db, agent)
        async with db.get_async_session() as session:
            await session.execute(update(AgentModel).where(AgentModel.id == agent.id).values(pnl_pct=Decimal("-30")))

        stats = await trader.run()

        assert stats.cancelled == 1
        assert (await _load(db, intent.id)).status == "cancelled"
        async with db.get_async_session() as session:
            stored = await AgentRepository(session).get(agent.id)
        assert stored is not None
        assert stored.status == "paused"
        assert order_book.submitted == {}

    @pytest.mark.asyncio
    async def test_mismatched_key_is_an_error(
        self, db: DatabaseManager, trader: TradeQueueExecutor, make_agent, order_book
    ) -> None:
        agent = await make_agent()
        other = await make_agent()
        async with db.get_async_session() as session:
            await session.execute(
                update(AgentModel)
                .where(AgentModel.id == agent.id)
                .values(agent_wallet_encrypted=other.agent_wallet_encrypted)
            )
        intent = await _queue(db, agent)

        stats = await trader.run()

        assert stats.errors == 1
        assert order_book.quote_requests == []
        stored = await _load(db, intent.id)
        assert stored.status == "queued"
        assert "does not match" in (stored.error_message or "")


# ============================================================================
# Overlapping invocation Tests
# ============================================================================


class TestOverlappingInvocations:
    """A second invocation must never orphan an order the first one placed."""

    @pytest.mark.asyncio
    async def test_requote_during_submit_keeps_live_uid(
        self,
        db: DatabaseManager,
        trader: TradeQueueExecutor,
        swaps: SwapExecutor,
        make_agent,
        order_book,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        agent = await make_agent()
        intent = await _queue(db, agent)
        real_submit = swaps.submit

        async def submit_after_requote(order, *, signature, owner):
            async with db.get_async_session() as session:
                await TradeIntentRepository(session).mark_quoted(
                    intent.id, buy_amount=1, fee_amount=0, valid_to=1, quote_data={}
                )
            return await real_submit(order, signature=signature, owner=owner)

        monkeypatch.setattr(swaps, "submit", submit_after_requote)

        stats = await trader.run()

        assert stats.submitted == 1
        assert stats.errors == 0
        assert len(order_book.submitted) == 1
        stored = await _load(db, intent.id)
        assert stored.status == "submitted"
        assert stored.order_uid in order_book.submitted
        assert stored.signature == order_book.submitted[stored.order_uid]["signature"]

    @pytest.mark.asyncio
    async def test_second_run_during_submit_does_not_touch_intent(
        self,
        db: DatabaseManager,
        trader: TradeQueueExecutor,
        swaps: SwapExecutor,
        make_agent,
        order_book,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        agent = await make_agent()
        intent = await _queue(db, agent)
        real_submit = swaps.submit
        overlapping: list[dict[str, int]] = []

        async def submit_with_overlap(order, *, signature, owner):
            overlapping.append((await trader.run()).to_dict())
            return await real_submit(order, signature=signature, owner=owner)

        monkeypatch.setattr(swaps, "submit", submit_with_overlap)

        stats = await trader.run()

        assert overlapping[0]["checked"] == 0
        assert overlapping[0]["quoted"] == 0
        assert stats.submitted == 1
        assert len(order_book.quote_requests) == 1
        assert len(order_book.submitted) == 1
        assert (await _load(db, intent.id)).status == "submitted"

    @pytest.mark.asyncio
    async def test_claimed_intent_is_skipped(
        self, db: DatabaseManager, trader: TradeQueueExecutor, make_agent, order_book
    ) -> None:
        agent = await make_agent()
        intent = await _queue(db, agent)
        now = datetime.now(UTC)
        async with db.get_async_session() as session:
            assert await TradeIntentRepository(session).claim(
                intent.id, now=now, lease_until=now + timedelta(minutes=5)
            )

        # The row was listed before another invocation claimed it.
        stats = TraderStats(checked=1)
        await trader._process(intent, stats)

        assert stats.skipped == 1
        assert stats.errors == 0
        assert order_book.quote_requests == []
        stored = await _load(db, intent.id)
        assert stored.status == "queued"
        assert stored.attempts == 0

    @pytest.mark.asyncio
    async def test_cancel_during_submit_is_reported_not_counted(
        self,
        db: DatabaseManager,
        trader: TradeQueueExecutor,
        swaps: SwapExecutor,
        make_agent,
        order_book,
        effects: BackgroundEffects,
        events,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        agent = await make_agent()
        intent = await _queue(db, agent)
        real_submit = swaps.submit

        async def submit_after_cancel(order, *, signature, owner):
            async with db.get_async_session() as session:
                await TradeIntentRepository(session).mark_cancelled(intent.id, reason="Agent stopped")
            return await real_submit(order, signature=signature, owner=owner)

        monkeypatch.setattr(swaps, "submit", submit_after_cancel)

        stats = await trader.run()
        await effects.drain()

        assert stats.submitted == 0
        assert stats.errors == 1
        assert len(order_book.submitted) == 1
        assert (await _load(db, intent.id)).status == "cancelled"
        assert [e for e, _ in events if e == "trade_submitted"] == []
