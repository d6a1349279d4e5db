"""Treasury flywheel - fee harvesting, buybacks and sentiment buys."""

from cow_flywheel.flywheel.buyback import BuybackExecutor
from cow_flywheel.flywheel.fee_harvester import FeeHarvester
from cow_flywheel.flywheel.sentiment import SentimentTrader

__all__ = ["BuybackExecutor", "FeeHarvester", "SentimentTrader"]
