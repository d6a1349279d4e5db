"""Trade-queue executor job.

Advances due TradeIntents through quote, sign and submit using each
agent's delegated key. Each intent is claimed first by pushing its next
run time out, so overlapping invocations never work on the same row.
Progress is committed after every step so a failure leaves the intent in
its last good status; the next attempt always fetches a fresh quote
because a stale one cannot be resubmitted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from cow_flywheel.agents.keys import AgentKeyVault
from cow_flywheel.agents.lifecycle import STATUS_ACTIVE, STATUS_STOPPED, AgentLifecycle, drawdown_breached
from cow_flywheel.effects import BackgroundEffects
from cow_flywheel.settlement.executor import SwapExecutor
from cow_flywheel.settlement.signer import address_for_key
from cow_flywheel.storage.database import DatabaseManager
from cow_flywheel.storage.models import TRADE_STATUS_FAILED
from cow_flywheel.storage.repos import AgentRepository, TradeIntentDTO, TradeIntentRepository

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_BATCH_LIMIT = 20
DEFAULT_RETRY_DELAY_SECONDS = 300
DEFAULT_MAX_ATTEMPTS = 12
DEFAULT_SLIPPAGE_BPS = 50

OUTCOME_SUBMITTED = "submitted"
OUTCOME_SKIPPED = "skipped"
OUTCOME_CANCELLED = "cancelled"
OUTCOME_UNTRACKED = "untracked"


class IntentSkipped(Exception):
    """Raised when an intent cannot advance for a non-error reason."""


@dataclass
class TraderStats:
    """Counts for one executor invocation."""

    checked: int = 0
    quoted: int = 0
    signed: int = 0
    submitted: int = 0
    skipped: int = 0
    cancelled: int = 0
    failed: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "checked": self.checked,
            "quoted": self.quoted,
            "signed": self.signed,
            "submitted": self.submitted,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "failed": self.failed,
            "errors": self.errors,
        }


class TradeQueueExecutor:
    """Quotes, signs and submits queued agent trades.

    Example:
        ```python
        executor = TradeQueueExecutor(db, swaps=swaps, vault=AgentKeyVault(key))
        stats = await executor.run()
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        *,
        swaps: SwapExecutor,
        vault: AgentKeyVault,
        effects: BackgroundEffects | None = None,
        default_max_drawdown_pct: Decimal = Decimal("15"),
        slippage_bps: int = DEFAULT_SLIPPAGE_BPS,
        batch_limit: int = DEFAULT_BATCH_LIMIT,
        retry_delay_seconds: int = DEFAULT_RETRY_DELAY_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self._db = db
        self._swaps = swaps
        self._vault = vault
        self._effects = effects or BackgroundEffects()
        self._default_max_drawdown_pct = default_max_drawdown_pct
        self._slippage_bps = slippage_bps
        self._batch_limit = batch_limit
        self._retry_delay = timedelta(seconds=retry_delay_seconds)
        self._max_attempts = max_attempts

    async def run(self) -> TraderStats:
        async with self._db.get_async_session() as session:
            intents = await TradeIntentRepository(session).list_ready(
                now=datetime.now(UTC),
                limit=self._batch_limit,
            )

        stats = TraderStats(checked=len(intents))
        for intent in intents:
            await self._process(intent, stats)

        logger.info(
            "Trader run: checked=%d submitted=%d skipped=%d cancelled=%d failed=%d errors=%d",
            stats.checked,
            stats.submitted,
            stats.skipped,
            stats.cancelled,
            stats.failed,
            stats.errors,
        )
        return stats

    async def _process(self, intent: TradeIntentDTO, stats: TraderStats) -> None:
        try:
            outcome = await self._advance(intent, stats)
        except IntentSkipped as e:
            stats.skipped += 1
            logger.debug("Intent %s skipped: %s", intent.id, e)
            return
        except Exception as e:
            stats.errors += 1
            logger.warning("Intent %s attempt failed: %s", intent.id, e)
            await self._record_failure(intent, str(e) or type(e).__name__, stats)
            return

        if outcome == OUTCOME_SUBMITTED:
            stats.submitted += 1
        elif outcome == OUTCOME_CANCELLED:
            stats.cancelled += 1
        elif outcome == OUTCOME_UNTRACKED:
            stats.errors += 1
        else:
            stats.skipped += 1

    async def _record_failure(self, intent: TradeIntentDTO, error: str, stats: TraderStats) -> None:
        try:
            async with self._db.get_async_session() as session:
                status = await TradeIntentRepository(session).record_attempt_failure(
                    intent.id,
                    error=error,
                    retry_at=datetime.now(UTC) + self._retry_delay,
                    max_attempts=self._max_attempts,
                )
        except Exception as e:
            logger.error("Could not record failure for intent %s: %s", intent.id, e)
            return
        if status == TRADE_STATUS_FAILED:
            stats.failed += 1
            logger.error("Intent %s failed after %d attempts: %s", intent.id, self._max_attempts, error)

    async def _advance(self, intent: TradeIntentDTO, stats: TraderStats) -> str:
        async with self._db.get_async_session() as session:
            intents = TradeIntentRepository(session)
            now = datetime.now(UTC)
            if not await intents.claim(intent.id, now=now, lease_until=now + self._retry_delay):
                raise IntentSkipped("claimed by another invocation")
            await session.commit()

            agent = await AgentRepository(session).get(intent.agent_id)

            if agent is None or agent.status == STATUS_STOPPED:
                await intents.mark_cancelled(intent.id, reason="Agent stopped")
                return OUTCOME_CANCELLED
            if agent.status != STATUS_ACTIVE or not agent.trading_enabled:
                raise IntentSkipped(f"agent {agent.id} is {agent.status}")

            if drawdown_breached(agent, default_max_drawdown_pct=self._default_max_drawdown_pct):
                await AgentLifecycle(session).auto_pause(agent.id, reason=f"drawdown {agent.pnl_pct}%")
                await intents.mark_cancelled(intent.id, reason="Agent exceeded max drawdown")
                return OUTCOME_CANCELLED

            if not agent.agent_wallet_encrypted:
                raise ValueError(f"Agent {agent.id} has no delegated key")
            private_key = self._vault.decrypt(agent.agent_wallet_encrypted)
            owner = intent.owner_address
            if address_for_key(private_key).lower() != owner.lower():
                raise ValueError(f"Delegated key does not match intent owner {owner}")
            receiver = intent.receiver or owner

            quote = await self._swaps.quote(
                sell_token=intent.sell_token,
                buy_token=intent.buy_token,
                sell_amount=intent.sell_amount,
                owner=owner,
                receiver=receiver,
                slippage_bps=self._slippage_bps,
            )
            if not await intents.mark_quoted(
                intent.id,
                buy_amount=quote.buy_amount,
                fee_amount=quote.fee_amount,
                valid_to=quote.valid_to,
                quote_data=quote.snapshot(),
            ):
                raise IntentSkipped("intent moved before it could be quoted")
            await session.commit()
            stats.quoted += 1

            await self._swaps.ensure_allowance(
                token_address=intent.sell_token,
                owner=owner,
                amount=intent.sell_amount,
                private_key=private_key,
            )
            order = self._swaps.build(quote, receiver=receiver)
            signature = self._swaps.sign(order, private_key)
            if not await intents.mark_signed(intent.id, signature=signature):
                raise IntentSkipped("intent moved before it could be signed")
            await session.commit()
            stats.signed += 1

            uid = await self._swaps.submit(order, signature=signature, owner=owner)
            persisted = await intents.mark_submitted(intent.id, order_uid=uid, signature=signature)

        if not persisted:
            logger.error(
                "Order %s for intent %s is live but the intent is no longer pre-submission; uid not recorded",
                uid,
                intent.id,
            )
            return OUTCOME_UNTRACKED

        logger.info("Submitted intent %s for agent %s (uid=%s)", intent.id, intent.agent_id, uid)
        self._effects.publish(
            "trade_submitted",
            {
                "intent_id": intent.id,
                "agent_id": intent.agent_id,
                "order_uid": uid,
                "sell_token": intent.sell_token,
                "buy_token": intent.buy_token,
                "sell_amount": str(intent.sell_amount),
                "buy_amount_min": str(quote.buy_amount),
            },
        )
        return OUTCOME_SUBMITTED
