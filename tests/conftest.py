"""Pytest configuration and fixtures.

Job-level tests run against a file-backed SQLite database because every
job opens several sessions and they must see each other's commits. The
order book is an in-process fake served through `httpx.MockTransport`,
so quoting, EIP-712 signing and submission all run for real.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from decimal import Decimal
from typing import Any

import httpx
import pytest
from sqlalchemy import update

from cow_flywheel.agents.keys import AgentKeyVault
from cow_flywheel.agents.lifecycle import AgentLifecycle
from cow_flywheel.chain.client import MAX_UINT256
from cow_flywheel.config import (
    BASE_CHAIN_ID,
    COW_SETTLEMENT_ADDRESS,
    COW_VAULT_RELAYER_ADDRESS,
    USDC_BASE_ADDRESS,
    WETH_BASE_ADDRESS,
)
from cow_flywheel.settlement.cow_client import CowClient
from cow_flywheel.settlement.executor import SwapExecutor
from cow_flywheel.settlement.signer import OrderSigner
from cow_flywheel.storage.database import DatabaseManager
from cow_flywheel.storage.models import AgentModel
from cow_flywheel.storage.repos import AgentDTO, AgentRepository

TEST_ENCRYPTION_KEY = "ab" * 32
TEST_API_BASE = "https://orderbook.test/api/v1"
OWNER_ADDRESS = "0x1234567890abcdef1234567890abcdef12345678"


# ============================================================================
# Fakes
# ============================================================================


class FakeOrderBook:
    """Minimal order book: quotes at a fixed output, issues uids, serves statuses."""

    def __init__(self, *, buy_amount: int = 20_000_000_000_000_000, fee_amount: int = 0) -> None:
        self.buy_amount = buy_amount
        self.fee_amount = fee_amount
        self.valid_to = 1_900_000_000
        self.quote_requests: list[dict[str, Any]] = []
        self.submitted: dict[str, dict[str, Any]] = {}
        self.statuses: dict[str, dict[str, Any]] = {}
        self.trades: dict[str, list[dict[str, Any]]] = {}
        self.quote_error: tuple[int, dict[str, Any]] | None = None
        self.submit_error: tuple[int, dict[str, Any]] | None = None
        self.status_errors: set[str] = set()
        self.status_requests = 0

    def set_status(
        self,
        uid: str,
        status: str,
        *,
        executed_buy: int = 0,
        executed_sell: int = 0,
        invalidated: bool = False,
    ) -> None:
        self.statuses[uid] = {
            "uid": uid,
            "status": status,
            "executedBuyAmount": str(executed_buy),
            "executedSellAmount": str(executed_sell),
            "invalidated": invalidated,
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "POST" and path.endswith("/quote"):
            body = json.loads(request.content)
            self.quote_requests.append(body)
            if self.quote_error is not None:
                status_code, error = self.quote_error
                return httpx.Response(status_code, json=error)
            sell_amount = int(body["sellAmountBeforeFee"]) - self.fee_amount
            return httpx.Response(
                200,
                json={
                    "quote": {
                        "sellToken": body["sellToken"],
                        "buyToken": body["buyToken"],
                        "receiver": body["receiver"],
                        "sellAmount": str(sell_amount),
                        "buyAmount": str(self.buy_amount),
                        "feeAmount": str(self.fee_amount),
                        "validTo": self.valid_to,
                        "kind": "sell",
                    },
                    "from": body["from"],
                    "id": len(self.quote_requests),
                },
            )
        if request.method == "POST" and path.endswith("/orders"):
            body = json.loads(request.content)
            if self.submit_error is not None:
                status_code, error = self.submit_error
                return httpx.Response(status_code, json=error)
            uid = "0x" + format(len(self.submitted) + 1, "0112x")
            self.submitted[uid] = body
            return httpx.Response(201, json=uid)
        if request.method == "GET" and path.endswith("/trades"):
            uid = request.url.params.get("orderUid", "")
            return httpx.Response(200, json=self.trades.get(uid, []))
        if request.method == "GET" and "/orders/" in path:
            self.status_requests += 1
            uid = path.rsplit("/", 1)[-1]
            if uid in self.status_errors:
                return httpx.Response(500, json={"errorType": "InternalServerError", "description": "boom"})
            if uid not in self.statuses:
                return httpx.Response(404, json={"errorType": "NotFound", "description": "order not found"})
            return httpx.Response(200, json=self.statuses[uid])
        return httpx.Response(404, json={"errorType": "NotFound", "description": path})


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the job lock."""

    def __init__(self) -> None:
        self.store: dict[str, bytes] = {}
        self.ttls: dict[str, int] = {}

    async def set(self, key: str, value: str, *, nx: bool = False, ex: int | None = None) -> bool | None:
        if nx and key in self.store:
            return None
        self.store[key] = value.encode()
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def get(self, key: str) -> bytes | None:
        return self.store.get(key)

    async def delete(self, key: str) -> int:
        return 1 if self.store.pop(key, None) is not None else 0

    async def aclose(self) -> None:
        pass


class FakeLedger:
    """In-memory ERC-20 balances and allowances."""

    def __init__(self) -> None:
        self.balances: dict[tuple[str, str], int] = {}
        self.allowances: dict[tuple[str, str, str], int] = {}
        self.approvals: list[tuple[str, str, str]] = []
        self.balance_error: Exception | None = None

    def set_balance(self, token_address: str, owner: str, amount: int) -> None:
        self.balances[(token_address.lower(), owner.lower())] = amount

    async def get_token_balance(self, token_address: str, owner: str) -> int:
        if self.balance_error is not None:
            raise self.balance_error
        return self.balances.get((token_address.lower(), owner.lower()), 0)

    async def get_allowance(self, token_address: str, owner: str, spender: str) -> int:
        return self.allowances.get((token_address.lower(), owner.lower(), spender.lower()), 0)

    async def ensure_allowance(
        self,
        *,
        token_address: str,
        owner: str,
        spender: str,
        amount: int,
        private_key: str,
    ) -> str | None:
        if await self.get_allowance(token_address, owner, spender) >= amount:
            return None
        self.allowances[(token_address.lower(), owner.lower(), spender.lower())] = MAX_UINT256
        self.approvals.append((token_address, owner, spender))
        return "0x" + format(len(self.approvals), "064x")


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
async def db(tmp_path) -> DatabaseManager:
    """File-backed SQLite database with the full schema."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'flywheel.db'}")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()


@pytest.fixture
def vault() -> AgentKeyVault:
    return AgentKeyVault(TEST_ENCRYPTION_KEY)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def order_book() -> FakeOrderBook:
    return FakeOrderBook()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
async def cow(order_book: FakeOrderBook) -> CowClient:
    client = CowClient(
        api_base=TEST_API_BASE,
        max_retries=0,
        retry_base_delay=0,
        transport=httpx.MockTransport(order_book.handler),
    )
    yield client
    await client.aclose()


@pytest.fixture
def signer() -> OrderSigner:
    return OrderSigner(chain_id=BASE_CHAIN_ID, verifying_contract=COW_SETTLEMENT_ADDRESS)


@pytest.fixture
def swaps(cow: CowClient, signer: OrderSigner, ledger: FakeLedger) -> SwapExecutor:
    return SwapExecutor(cow=cow, signer=signer, ledger=ledger, vault_relayer=COW_VAULT_RELAYER_ADDRESS)


@pytest.fixture
def usdc() -> str:
    return USDC_BASE_ADDRESS


@pytest.fixture
def weth() -> str:
    return WETH_BASE_ADDRESS


@pytest.fixture
def make_agent(db: DatabaseManager, vault: AgentKeyVault) -> Callable[..., Awaitable[AgentDTO]]:
    """Factory for funded, active agents with a delegated wallet."""

    async def _make(
        *,
        strategy_id: str = "dca",
        budget: Decimal = Decimal("1000"),
        max_position_size_pct: Decimal | None = Decimal("25"),
        max_drawdown_pct: Decimal | None = None,
        pnl_pct: Decimal = Decimal("0"),
        trade_count: int = 0,
        activate: bool = True,
        with_wallet: bool = True,
    ) -> AgentDTO:
        wallet = vault.generate_wallet() if with_wallet else None
        async with db.get_async_session() as session:
            agent = await AgentRepository(session).create(
                owner_address=OWNER_ADDRESS,
                strategy_id=strategy_id,
                max_drawdown_pct=max_drawdown_pct,
                max_position_size_pct=max_position_size_pct,
                agent_wallet_address=wallet.address if wallet else None,
                agent_wallet_encrypted=wallet.encrypted_key if wallet else None,
            )
            lifecycle = AgentLifecycle(session)
            if budget > 0:
                await lifecycle.fund(agent.id, budget)
            if activate:
                await lifecycle.activate(agent.id)
            await session.execute(
                update(AgentModel)
                .where(AgentModel.id == agent.id)
                .values(pnl_pct=pnl_pct, trade_count=trade_count)
            )
        async with db.get_async_session() as session:
            loaded = await AgentRepository(session).get(agent.id)
        assert loaded is not None
        return loaded

    return _make
