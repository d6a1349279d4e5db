"""Trade-queue execution."""

from cow_flywheel.execution.trader import TradeQueueExecutor, TraderStats

__all__ = ["TradeQueueExecutor", "TraderStats"]
