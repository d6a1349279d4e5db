"""Storage layer - Database schemas and repositories."""

from cow_flywheel.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from cow_flywheel.storage.models import (
    AgentModel,
    Base,
    BuybackOrderModel,
    FeeClaimModel,
    SentimentSnapshotModel,
    SentimentTradeModel,
    TokenDeploymentModel,
    TradeIntentModel,
)
from cow_flywheel.storage.repos import (
    AgentDTO,
    AgentRepository,
    BuybackOrderRepository,
    FeeClaimRepository,
    SentimentSnapshotRepository,
    SentimentTradeRepository,
    SettlementOrderDTO,
    TokenDeploymentRepository,
    TradeIntentDTO,
    TradeIntentRepository,
)

__all__ = [
    "AgentDTO",
    "AgentModel",
    "AgentRepository",
    "Base",
    "BuybackOrderModel",
    "BuybackOrderRepository",
    "DatabaseManager",
    "FeeClaimModel",
    "FeeClaimRepository",
    "SentimentSnapshotModel",
    "SentimentSnapshotRepository",
    "SentimentTradeModel",
    "SentimentTradeRepository",
    "SettlementOrderDTO",
    "TokenDeploymentModel",
    "TokenDeploymentRepository",
    "TradeIntentDTO",
    "TradeIntentModel",
    "TradeIntentRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
