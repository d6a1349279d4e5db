"""Strategy evaluation - signal sizing and the generator job."""

from cow_flywheel.strategy.generator import GeneratorStats, StrategySignalGenerator
from cow_flywheel.strategy.signals import (
    STRATEGIES,
    SizingConfig,
    TradeSignal,
    evaluate_strategy,
    position_size_pct,
    to_smallest_units,
)

__all__ = [
    "GeneratorStats",
    "STRATEGIES",
    "SizingConfig",
    "StrategySignalGenerator",
    "TradeSignal",
    "evaluate_strategy",
    "position_size_pct",
    "to_smallest_units",
]
