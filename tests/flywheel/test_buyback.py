"""Tests for the treasury buyback job."""

from decimal import Decimal

import pytest

from cow_flywheel.flywheel.buyback import BuybackExecutor
from cow_flywheel.settlement.executor import SwapExecutor
from cow_flywheel.settlement.signer import address_for_key
from cow_flywheel.storage.database import DatabaseManager
from cow_flywheel.storage.repos import BuybackOrderRepository

TREASURY_KEY = "0x" + "11" * 32
TREASURY = address_for_key(TREASURY_KEY)
PLATFORM_TOKEN = "0x5555555555555555555555555555555555555555"


@pytest.fixture
def make_buyback(db: DatabaseManager, swaps: SwapExecutor, ledger, usdc: str):
    def _make(**overrides) -> BuybackExecutor:
        options = {
            "enabled": True,
            "private_key": TREASURY_KEY,
            "treasury_wallet": TREASURY,
            "target_token": PLATFORM_TOKEN,
            "settlement_token": usdc,
            "settlement_decimals": 6,
            "threshold": Decimal("100"),
            "percent": Decimal("80"),
        }
        options.update(overrides)
        return BuybackExecutor(db, swaps=swaps, ledger=ledger, **options)

    return _make


async def _orders(db: DatabaseManager):
    async with db.get_async_session() as session:
        return await BuybackOrderRepository(session).list_all()


class TestBuybackExecutor:
    """Tests for BuybackExecutor.run."""

    @pytest.mark.asyncio
    async def test_below_threshold_is_skipped(self, db: DatabaseManager, make_buyback, ledger, usdc, order_book) -> None:
        ledger.set_balance(usdc, TREASURY, 80_000_000)

        result = await make_buyback().run()

        assert result == {
            "skipped": True,
            "reason": "Balance below threshold",
            "balance": "80",
            "threshold": "100",
        }
        assert await _orders(db) == []
        assert order_book.quote_requests == []

    @pytest.mark.asyncio
    async def test_spends_percentage_of_balance(
        self, db: DatabaseManager, make_buyback, ledger, usdc, order_book
    ) -> None:
        ledger.set_balance(usdc, TREASURY, 150_000_000)

        result = await make_buyback().run()

        assert result["executed"] is True
        assert result["usdcAmount"] == "120"
        assert result["triggerBalance"] == "150"
        assert "approvalTx" in result
        assert order_book.quote_requests[0]["sellAmountBeforeFee"] == "120000000"

        orders = await _orders(db)
        assert len(orders) == 1
        order = orders[0]
        assert order.status == "pending"
        assert order.order_uid == result["orderUid"]
        assert order.sell_amount == 120_000_000
        assert order.usdc_amount == Decimal("120")
        assert order.buy_amount_min == order_book.buy_amount
        assert order.trigger_balance == Decimal("150")
        assert order.buy_token == PLATFORM_TOKEN

    @pytest.mark.asyncio
    async def test_balance_at_threshold_executes(self, make_buyback, ledger, usdc) -> None:
        ledger.set_balance(usdc, TREASURY, 100_000_000)

        result = await make_buyback().run()
        assert result["executed"] is True
        assert result["usdcAmount"] == "80"

    def test_spend_amount_rounds_down(self, make_buyback) -> None:
        assert make_buyback(percent=Decimal("33")).spend_amount(1_000_001) == 330_000

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("overrides", "reason"),
        [
            ({"enabled": False}, "BUYBACK_ENABLED is not true"),
            ({"private_key": None}, "BUYBACK_PRIVATE_KEY not configured"),
            ({"target_token": None}, "BURN_TOKEN_ADDRESS not configured"),
        ],
    )
    async def test_missing_configuration_is_skipped(
        self, db: DatabaseManager, make_buyback, ledger, usdc, overrides, reason
    ) -> None:
        ledger.set_balance(usdc, TREASURY, 500_000_000)

        result = await make_buyback(**overrides).run()

        assert result == {"skipped": True, "reason": reason}
        assert await _orders(db) == []

    @pytest.mark.asyncio
    async def test_quote_failure_records_failed_row(
        self, db: DatabaseManager, make_buyback, ledger, usdc, order_book
    ) -> None:
        ledger.set_balance(usdc, TREASURY, 150_000_000)
        order_book.quote_error = (400, {"errorType": "NoLiquidity", "description": "no route"})

        result = await make_buyback().run()

        assert result["executed"] is False
        assert "NoLiquidity" in result["error"]
        orders = await _orders(db)
        assert len(orders) == 1
        assert orders[0].status == "failed"
        assert orders[0].order_uid is None
        assert orders[0].sell_amount == 120_000_000
        assert "NoLiquidity" in (orders[0].error_message or "")
        assert order_book.submitted == {}

    @pytest.mark.asyncio
    async def test_balance_read_failure_records_failed_row(self, db: DatabaseManager, make_buyback, ledger) -> None:
        ledger.balance_error = ConnectionError("rpc down")

        result = await make_buyback().run()

        assert result == {"executed": False, "error": "rpc down"}
        orders = await _orders(db)
        assert [o.status for o in orders] == ["failed"]
        assert orders[0].sell_amount == 0
