"""Order monitor - settlement status reconciliation."""

from cow_flywheel.monitor.reconciler import (
    FAMILIES,
    ORDER_POLICY,
    TRADE_QUEUE_POLICY,
    MonitorStats,
    OrderMonitor,
    ReconciledUpdate,
    compute_update,
)

__all__ = [
    "FAMILIES",
    "ORDER_POLICY",
    "TRADE_QUEUE_POLICY",
    "MonitorStats",
    "OrderMonitor",
    "ReconciledUpdate",
    "compute_update",
]
