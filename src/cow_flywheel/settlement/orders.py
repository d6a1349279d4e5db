"""Canonical order construction from a quote."""

from __future__ import annotations

from cow_flywheel.settlement.models import (
    ORDER_KIND_SELL,
    TOKEN_BALANCE_ERC20,
    OrderPayload,
    Quote,
)

ZERO_APP_DATA = "0x" + "0" * 64


def build_order(quote: Quote, *, receiver: str, app_data: str = ZERO_APP_DATA) -> OrderPayload:
    """Build the order payload that will be signed and submitted.

    The quote's buy amount is used as-is: it is the minimum the order will
    accept, and later reconciliation measures savings against it.

    Args:
        quote: Quote returned by the order book.
        receiver: Address that receives the bought tokens.
        app_data: bytes32 correlation field (zero-filled by default).

    Returns:
        OrderPayload in canonical field order.
    """
    if quote.kind != ORDER_KIND_SELL:
        raise ValueError(f"Unsupported order kind {quote.kind!r}")
    if quote.sell_amount <= 0 or quote.buy_amount <= 0:
        raise ValueError("Quote amounts must be positive")
    return OrderPayload(
        sell_token=quote.sell_token,
        buy_token=quote.buy_token,
        receiver=receiver,
        sell_amount=quote.sell_amount,
        buy_amount=quote.buy_amount,
        valid_to=quote.valid_to,
        app_data=app_data,
        fee_amount=quote.fee_amount,
        kind=ORDER_KIND_SELL,
        partially_fillable=False,
        sell_token_balance=TOKEN_BALANCE_ERC20,
        buy_token_balance=TOKEN_BALANCE_ERC20,
    )


def order_record(quote: Quote, order: OrderPayload, *, owner: str) -> dict[str, object]:
    """JSON-safe record of a quoted order, persisted alongside the row."""
    return {
        **order.to_api(),
        "from": owner,
        "quote": quote.snapshot(),
    }
