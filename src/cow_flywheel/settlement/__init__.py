"""Settlement protocol triad - quote, sign, submit - and status polling."""

from cow_flywheel.settlement.cow_client import (
    CowClient,
    CowClientError,
    CowOrderStatusError,
    CowQuoteError,
    CowSubmissionError,
    CowTransientError,
)
from cow_flywheel.settlement.executor import SwapExecutor
from cow_flywheel.settlement.models import OrderPayload, OrderStatus, OrderTrade, Quote, SubmittedOrder
from cow_flywheel.settlement.orders import build_order
from cow_flywheel.settlement.signer import OrderSigner, OrderSigningError, address_for_key

__all__ = [
    "CowClient",
    "CowClientError",
    "CowOrderStatusError",
    "CowQuoteError",
    "CowSubmissionError",
    "CowTransientError",
    "OrderPayload",
    "OrderSigner",
    "OrderSigningError",
    "OrderStatus",
    "OrderTrade",
    "Quote",
    "SubmittedOrder",
    "SwapExecutor",
    "address_for_key",
    "build_order",
]
