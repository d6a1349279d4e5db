"""Order monitor: reconciles submitted orders with the settlement order book.

Three order families are polled independently: agent trade-queue
intents, buyback orders and sentiment trades. A row is only written when
the reconciled status differs from the stored one, and every update is
guarded on the stored status, so a second run against an unchanged order
book writes nothing and terminal rows are never reopened.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal

from cow_flywheel.effects import BackgroundEffects
from cow_flywheel.settlement.cow_client import CowClient
from cow_flywheel.settlement.models import (
    EXTERNAL_STATUS_CANCELLED,
    EXTERNAL_STATUS_EXPIRED,
    EXTERNAL_STATUS_FULFILLED,
    EXTERNAL_STATUS_OPEN,
    OrderStatus,
)
from cow_flywheel.storage.database import DatabaseManager
from cow_flywheel.storage.models import (
    ORDER_STATUS_FAILED,
    ORDER_STATUS_FILLED,
    ORDER_STATUS_OPEN,
    ORDER_STATUS_PENDING,
    TRADE_STATUS_CANCELLED,
    TRADE_STATUS_EXPIRED,
    TRADE_STATUS_FILLED,
    TRADE_STATUS_OPEN,
    TRADE_STATUS_SUBMITTED,
)
from cow_flywheel.storage.repos import (
    AgentRepository,
    BuybackOrderRepository,
    SentimentTradeRepository,
    SettlementOrderDTO,
    SettlementOrderRepository,
    TradeIntentDTO,
    TradeIntentRepository,
)

logger = logging.getLogger(__name__)

FAMILY_TRADE_QUEUE = "trade_queue"
FAMILY_BUYBACK = "buyback"
FAMILY_SENTIMENT = "sentiment"
FAMILIES = (FAMILY_TRADE_QUEUE, FAMILY_BUYBACK, FAMILY_SENTIMENT)

REASON_INVALIDATED = "Order invalidated"
REASON_EXPIRED = "Order expired"

DEFAULT_BATCH_LIMIT = 100


@dataclass(frozen=True)
class StatusPolicy:
    """How a family names its reconciled statuses."""

    filled: str
    open: str
    cancelled: str
    expired: str
    # Stored statuses that may move to `open`
    awaiting: tuple[str, ...]


TRADE_QUEUE_POLICY = StatusPolicy(
    filled=TRADE_STATUS_FILLED,
    open=TRADE_STATUS_OPEN,
    cancelled=TRADE_STATUS_CANCELLED,
    expired=TRADE_STATUS_EXPIRED,
    awaiting=(TRADE_STATUS_SUBMITTED,),
)
ORDER_POLICY = StatusPolicy(
    filled=ORDER_STATUS_FILLED,
    open=ORDER_STATUS_OPEN,
    cancelled=ORDER_STATUS_FAILED,
    expired=ORDER_STATUS_FAILED,
    awaiting=(ORDER_STATUS_PENDING,),
)


@dataclass(frozen=True)
class ReconciledUpdate:
    """The write a reconciliation wants to make."""

    status: str
    executed_buy_amount: int | None = None
    executed_sell_amount: int | None = None
    savings: int | None = None
    filled_at: datetime | None = None
    error_message: str | None = None


def compute_update(
    *,
    stored_status: str,
    external: OrderStatus,
    buy_amount_min: int | None,
    policy: StatusPolicy,
    now: datetime,
) -> ReconciledUpdate | None:
    """Map the order book's view of an order onto a stored row.

    Returns:
        The update to apply, or None if the stored status already
        reflects the external one.
    """
    if external.is_filled:
        savings = None
        if buy_amount_min is not None and external.executed_buy_amount > buy_amount_min:
            savings = external.executed_buy_amount - buy_amount_min
        update = ReconciledUpdate(
            status=policy.filled,
            executed_buy_amount=external.executed_buy_amount,
            executed_sell_amount=external.executed_sell_amount or None,
            savings=savings,
            filled_at=now,
        )
    elif external.invalidated or external.status == EXTERNAL_STATUS_CANCELLED:
        update = ReconciledUpdate(status=policy.cancelled, error_message=REASON_INVALIDATED)
    elif external.status == EXTERNAL_STATUS_EXPIRED:
        update = ReconciledUpdate(status=policy.expired, error_message=REASON_EXPIRED)
    elif external.status == EXTERNAL_STATUS_OPEN and stored_status in policy.awaiting:
        update = ReconciledUpdate(status=policy.open)
    else:
        return None

    if update.status == stored_status:
        return None
    return update


@dataclass
class FamilyStats:
    checked: int = 0
    updated: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"checked": self.checked, "updated": self.updated, "errors": self.errors}


@dataclass
class MonitorStats:
    """Per-family counts for one monitor invocation."""

    families: dict[str, FamilyStats] = field(default_factory=lambda: {f: FamilyStats() for f in FAMILIES})

    def to_dict(self) -> dict[str, dict[str, int]]:
        return {name: stats.to_dict() for name, stats in self.families.items()}


class OrderMonitor:
    """Polls order status for every in-flight order and advances its row.

    Example:
        ```python
        async with CowClient() as cow:
            monitor = OrderMonitor(db, cow=cow, settlement_decimals=6)
            stats = await monitor.run()
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        *,
        cow: CowClient,
        settlement_decimals: int = 6,
        effects: BackgroundEffects | None = None,
        batch_limit: int = DEFAULT_BATCH_LIMIT,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db
        self._cow = cow
        self._settlement_scale = Decimal(10) ** settlement_decimals
        self._effects = effects or BackgroundEffects()
        self._batch_limit = batch_limit
        self._clock = clock or (lambda: datetime.now(UTC))

    async def run(self) -> MonitorStats:
        stats = MonitorStats()
        await self._reconcile_trade_queue(stats.families[FAMILY_TRADE_QUEUE])
        await self._reconcile_orders(FAMILY_BUYBACK, BuybackOrderRepository, stats.families[FAMILY_BUYBACK])
        await self._reconcile_orders(
            FAMILY_SENTIMENT, SentimentTradeRepository, stats.families[FAMILY_SENTIMENT]
        )
        for name, family in stats.families.items():
            if family.checked:
                logger.info(
                    "Monitor %s: checked=%d updated=%d errors=%d",
                    name,
                    family.checked,
                    family.updated,
                    family.errors,
                )
        return stats

    async def _isolated(self, family: FamilyStats, label: str, step: Callable[[], Awaitable[bool]]) -> None:
        try:
            if await step():
                family.updated += 1
        except Exception as e:
            family.errors += 1
            logger.warning("Reconciling %s failed: %s", label, e)

    async def _fetch_status(self, uid: str) -> OrderStatus:
        """Order status, with executed amounts summed from its trades when the book omits them."""
        external = await self._cow.get_order_status(uid)
        if external.status != EXTERNAL_STATUS_FULFILLED or external.executed_buy_amount > 0:
            return external
        trades = await self._cow.get_order_trades(uid)
        if not trades:
            return external
        return replace(
            external,
            executed_buy_amount=sum(t.buy_amount for t in trades),
            executed_sell_amount=sum(t.sell_amount for t in trades),
        )

    # ------------------------------------------------------------------
    # Trade queue
    # ------------------------------------------------------------------

    async def _reconcile_trade_queue(self, family: FamilyStats) -> None:
        async with self._db.get_async_session() as session:
            intents = await TradeIntentRepository(session).list_in_flight(limit=self._batch_limit)
        family.checked = len(intents)
        for intent in intents:
            await self._isolated(family, f"intent {intent.id}", lambda i=intent: self._reconcile_intent(i))

    async def _reconcile_intent(self, intent: TradeIntentDTO) -> bool:
        if not intent.order_uid:
            return False
        external = await self._fetch_status(intent.order_uid)
        update = compute_update(
            stored_status=intent.status,
            external=external,
            buy_amount_min=intent.quote_buy_amount,
            policy=TRADE_QUEUE_POLICY,
            now=self._clock(),
        )
        if update is None:
            return False

        async with self._db.get_async_session() as session:
            applied = await TradeIntentRepository(session).apply_order_update(
                intent.id,
                expected_status=intent.status,
                status=update.status,
                executed_buy_amount=update.executed_buy_amount,
                executed_sell_amount=update.executed_sell_amount,
                savings=update.savings,
                filled_at=update.filled_at,
                error_message=update.error_message,
            )
            if applied and update.status == TRADE_STATUS_FILLED and update.filled_at is not None:
                await AgentRepository(session).record_fill(
                    intent.agent_id,
                    spent_usd=self._spent_usd(intent, update),
                    filled_at=update.filled_at,
                )
        if not applied:
            return False

        logger.info("Intent %s (uid=%s): %s -> %s", intent.id, intent.order_uid, intent.status, update.status)
        if update.status == TRADE_STATUS_FILLED:
            self._effects.publish(
                "trade_filled",
                {
                    "intent_id": intent.id,
                    "agent_id": intent.agent_id,
                    "order_uid": intent.order_uid,
                    "executed_buy_amount": str(update.executed_buy_amount),
                    "savings": str(update.savings or 0),
                },
            )
        return True

    def _spent_usd(self, intent: TradeIntentDTO, update: ReconciledUpdate) -> Decimal:
        if update.executed_sell_amount:
            return Decimal(update.executed_sell_amount) / self._settlement_scale
        return intent.sell_amount_usd

    # ------------------------------------------------------------------
    # Treasury order families
    # ------------------------------------------------------------------

    async def _reconcile_orders(
        self,
        name: str,
        repo_cls: type[SettlementOrderRepository],
        family: FamilyStats,
    ) -> None:
        async with self._db.get_async_session() as session:
            orders = await repo_cls(session).list_in_flight(limit=self._batch_limit)
        family.checked = len(orders)
        for order in orders:
            await self._isolated(
                family,
                f"{name} order {order.id}",
                lambda o=order: self._reconcile_order(name, repo_cls, o),
            )

    async def _reconcile_order(
        self,
        name: str,
        repo_cls: type[SettlementOrderRepository],
        order: SettlementOrderDTO,
    ) -> bool:
        if not order.order_uid:
            return False
        external = await self._fetch_status(order.order_uid)
        update = compute_update(
            stored_status=order.status,
            external=external,
            buy_amount_min=order.buy_amount_min,
            policy=ORDER_POLICY,
            now=self._clock(),
        )
        if update is None:
            return False

        async with self._db.get_async_session() as session:
            applied = await repo_cls(session).apply_order_update(
                order.id,
                expected_status=order.status,
                status=update.status,
                buy_amount_actual=update.executed_buy_amount,
                savings=update.savings,
                filled_at=update.filled_at,
                error_message=update.error_message,
            )
        if not applied:
            return False

        logger.info("%s order %s (uid=%s): %s -> %s", name, order.id, order.order_uid, order.status, update.status)
        if update.status == ORDER_STATUS_FILLED:
            self._effects.publish(
                f"{name}_filled",
                {
                    "order_id": order.id,
                    "order_uid": order.order_uid,
                    "usdc_amount": str(order.usdc_amount),
                    "buy_amount_actual": str(update.executed_buy_amount),
                    "savings": str(update.savings or 0),
                },
            )
        return True
