"""Strategy signal generator job.

For each active, trading-enabled agent this evaluates exactly one
candidate entry and queues at most one TradeIntent. Agents are processed
in their own sessions so a failure on one never rolls back or blocks
another.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from cow_flywheel.agents.lifecycle import AgentLifecycle, drawdown_breached
from cow_flywheel.storage.database import DatabaseManager
from cow_flywheel.storage.repos import AgentDTO, AgentRepository, TradeIntentRepository
from cow_flywheel.strategy.signals import SizingConfig, evaluate_strategy, to_smallest_units

logger = logging.getLogger(__name__)

OUTCOME_QUEUED = "queued"
OUTCOME_PAUSED = "paused"
OUTCOME_SKIPPED = "skipped"


@dataclass
class GeneratorStats:
    """Counts for one generator invocation."""

    evaluated: int = 0
    queued: int = 0
    paused: int = 0
    skipped: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "evaluated": self.evaluated,
            "queued": self.queued,
            "paused": self.paused,
            "skipped": self.skipped,
            "errors": self.errors,
        }


class StrategySignalGenerator:
    """Turns agent strategy signals into queued TradeIntents.

    Per agent, in order:
    1. Drawdown breaker: |pnlPct| above the agent's limit auto-pauses it.
    2. Dedup guard: an agent with a non-terminal intent is skipped.
    3. Budget: nothing remaining means nothing to queue.
    4. Sizing: the strategy's per-cycle percentage, capped and floored.

    Example:
        ```python
        generator = StrategySignalGenerator(
            db,
            sizing=SizingConfig(),
            sell_token=USDC_BASE_ADDRESS,
            buy_token=WETH_BASE_ADDRESS,
            sell_token_decimals=6,
            default_max_drawdown_pct=Decimal("15"),
        )
        stats = await generator.run()
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        *,
        sizing: SizingConfig,
        sell_token: str,
        buy_token: str,
        sell_token_decimals: int,
        default_max_drawdown_pct: Decimal,
    ) -> None:
        self._db = db
        self._sizing = sizing
        self._sell_token = sell_token
        self._buy_token = buy_token
        self._sell_token_decimals = sell_token_decimals
        self._default_max_drawdown_pct = default_max_drawdown_pct

    async def run(self) -> GeneratorStats:
        """Evaluate every tradeable agent once.

        Raises:
            Only if the agent list itself cannot be loaded.
        """
        async with self._db.get_async_session() as session:
            agents = await AgentRepository(session).list_tradeable()

        stats = GeneratorStats(evaluated=len(agents))
        for agent in agents:
            try:
                outcome = await self._evaluate(agent)
            except Exception as e:
                stats.errors += 1
                logger.error("Strategy evaluation failed for agent %s: %s", agent.id, e, exc_info=True)
                continue
            if outcome == OUTCOME_QUEUED:
                stats.queued += 1
            elif outcome == OUTCOME_PAUSED:
                stats.paused += 1
            else:
                stats.skipped += 1

        logger.info(
            "Strategy run: evaluated=%d queued=%d paused=%d skipped=%d errors=%d",
            stats.evaluated,
            stats.queued,
            stats.paused,
            stats.skipped,
            stats.errors,
        )
        return stats

    async def _evaluate(self, agent: AgentDTO) -> str:
        async with self._db.get_async_session() as session:
            if drawdown_breached(agent, default_max_drawdown_pct=self._default_max_drawdown_pct):
                paused = await AgentLifecycle(session).auto_pause(
                    agent.id,
                    reason=f"drawdown {agent.pnl_pct}% exceeds limit",
                )
                return OUTCOME_PAUSED if paused else OUTCOME_SKIPPED

            intents = TradeIntentRepository(session)
            if await intents.has_active(agent.id):
                logger.debug("Agent %s already has an active intent", agent.id)
                return OUTCOME_SKIPPED

            if agent.remaining_budget <= 0:
                logger.debug("Agent %s has no remaining budget", agent.id)
                return OUTCOME_SKIPPED

            if not agent.agent_wallet_address:
                logger.debug("Agent %s has no delegated wallet", agent.id)
                return OUTCOME_SKIPPED

            signal = evaluate_strategy(agent, self._sizing)
            if signal is None:
                logger.debug("No %s signal for agent %s", agent.strategy_id, agent.id)
                return OUTCOME_SKIPPED

            sell_amount = to_smallest_units(signal.sell_amount_usd, self._sell_token_decimals)
            if sell_amount <= 0:
                return OUTCOME_SKIPPED

            intent = await intents.insert_if_no_active(
                agent_id=agent.id,
                owner_address=agent.agent_wallet_address,
                sell_token=self._sell_token,
                buy_token=self._buy_token,
                sell_amount=sell_amount,
                sell_amount_usd=signal.sell_amount_usd,
                receiver=agent.agent_wallet_address,
            )
            if intent is None:
                logger.debug("Agent %s lost the race for a new intent", agent.id)
                return OUTCOME_SKIPPED

        logger.info(
            "Queued %s trade for agent %s: %s USD (%s%% of remaining)",
            signal.strategy_id,
            agent.id,
            signal.sell_amount_usd,
            signal.position_size_pct,
        )
        return OUTCOME_QUEUED
