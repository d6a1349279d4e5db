"""Strategy evaluation and position sizing.

Every strategy currently enters by selling the settlement currency for
WETH; they differ only in how much of the remaining budget a cycle may
spend and whether recent losses suppress the entry.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal

from cow_flywheel.config import AgentTradingSettings
from cow_flywheel.storage.repos import AgentDTO

STRATEGY_MOMENTUM = "momentum"
STRATEGY_MEAN_REVERSION = "mean_reversion"
STRATEGY_ARBITRAGE = "arbitrage"
STRATEGY_BREAKOUT = "breakout"
STRATEGY_GRID_TRADING = "grid_trading"
STRATEGY_DCA = "dca"

STRATEGIES = (
    STRATEGY_MOMENTUM,
    STRATEGY_MEAN_REVERSION,
    STRATEGY_ARBITRAGE,
    STRATEGY_BREAKOUT,
    STRATEGY_GRID_TRADING,
    STRATEGY_DCA,
)

# Periodic-accumulation entries: a capped slice of the budget each cycle.
ACCUMULATION_STRATEGIES = frozenset(
    {STRATEGY_DCA, STRATEGY_MEAN_REVERSION, STRATEGY_GRID_TRADING, STRATEGY_ARBITRAGE}
)
TREND_STRATEGIES = frozenset({STRATEGY_MOMENTUM, STRATEGY_BREAKOUT})

HUNDRED = Decimal("100")
USD_QUANTUM = Decimal("0.000001")


@dataclass(frozen=True)
class SizingConfig:
    """Position sizing parameters shared by all strategies."""

    min_trade_usd: Decimal = Decimal("1")
    default_max_position_size_pct: Decimal = Decimal("25")
    accumulation_cycle_cap_pct: Decimal = Decimal("10")
    trend_loss_cutoff_pct: Decimal = Decimal("-5")

    @classmethod
    def from_settings(cls, settings: AgentTradingSettings) -> SizingConfig:
        return cls(
            min_trade_usd=settings.min_trade_usd,
            default_max_position_size_pct=settings.default_max_position_size_pct,
            accumulation_cycle_cap_pct=settings.dca_cycle_cap_pct,
            trend_loss_cutoff_pct=settings.momentum_loss_cutoff_pct,
        )


@dataclass(frozen=True)
class TradeSignal:
    """A sized entry produced by a strategy."""

    strategy_id: str
    sell_amount_usd: Decimal
    position_size_pct: Decimal


def max_position_pct(agent: AgentDTO, config: SizingConfig) -> Decimal:
    return agent.max_position_size_pct or config.default_max_position_size_pct


def position_size_pct(agent: AgentDTO, config: SizingConfig) -> Decimal | None:
    """Per-cycle budget percentage for the agent's strategy.

    Returns:
        The percentage, or None when the strategy does not enter this
        cycle (unknown strategy, or a trend strategy that is losing).
    """
    max_pct = max_position_pct(agent, config)
    if agent.strategy_id in ACCUMULATION_STRATEGIES:
        return min(max_pct, config.accumulation_cycle_cap_pct)
    if agent.strategy_id in TREND_STRATEGIES:
        if agent.trade_count > 0 and agent.pnl_pct < config.trend_loss_cutoff_pct:
            return None
        return max_pct
    return None


def evaluate_strategy(agent: AgentDTO, config: SizingConfig) -> TradeSignal | None:
    """Size one candidate entry for the agent.

    The amount is `min(remaining × pct, remaining)`, further capped at
    `remaining × maxPositionSizePct`, and dropped below the trade floor.
    """
    remaining = agent.remaining_budget
    if remaining <= 0:
        return None
    pct = position_size_pct(agent, config)
    if pct is None:
        return None

    amount = min(remaining * pct / HUNDRED, remaining)
    amount = min(amount, remaining * max_position_pct(agent, config) / HUNDRED)
    amount = amount.quantize(USD_QUANTUM, rounding=ROUND_FLOOR)
    if amount < config.min_trade_usd or amount <= 0:
        return None
    return TradeSignal(strategy_id=agent.strategy_id, sell_amount_usd=amount, position_size_pct=pct)


def to_smallest_units(amount: Decimal, decimals: int) -> int:
    """Convert a token amount to integer smallest units, rounding down."""
    return int((amount * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_FLOOR))
