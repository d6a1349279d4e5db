"""Data models for the settlement protocol client."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

ORDER_KIND_SELL = "sell"
TOKEN_BALANCE_ERC20 = "erc20"
SIGNING_SCHEME_EIP712 = "eip712"

# External order status values reported by the order book
EXTERNAL_STATUS_OPEN = "open"
EXTERNAL_STATUS_FULFILLED = "fulfilled"
EXTERNAL_STATUS_CANCELLED = "cancelled"
EXTERNAL_STATUS_EXPIRED = "expired"
EXTERNAL_STATUS_PRESIGNATURE_PENDING = "presignaturePending"


def _parse_amount(value: Any) -> int:
    """Parse an integer token amount, flooring decimal strings."""
    if value is None or value == "":
        return 0
    if isinstance(value, int):
        return value
    text = str(value)
    if "." in text:
        text = text.split(".", 1)[0] or "0"
    return int(text)


@dataclass(frozen=True)
class Quote:
    """A priced quote for a sell order.

    `buy_amount` is the minimum acceptable output, not an estimate.

    Attributes:
        sell_token: Address of the token being sold.
        buy_token: Address of the token being bought.
        sell_amount: Sell amount after fees, in smallest units.
        buy_amount: Minimum buy amount, in smallest units.
        fee_amount: Protocol fee, in sell-token smallest units.
        valid_to: Unix timestamp after which the quote can no longer settle.
        kind: Order kind; always "sell" for this pipeline.
        quote_id: Order book quote identifier, when provided.
    """

    sell_token: str
    buy_token: str
    sell_amount: int
    buy_amount: int
    fee_amount: int
    valid_to: int
    kind: str = ORDER_KIND_SELL
    quote_id: int | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> Quote:
        """Parse a `/quote` response body."""
        quote = data.get("quote")
        if not isinstance(quote, dict):
            raise ValueError("Quote response is missing the 'quote' object")
        try:
            return cls(
                sell_token=str(quote["sellToken"]),
                buy_token=str(quote["buyToken"]),
                sell_amount=_parse_amount(quote["sellAmount"]),
                buy_amount=_parse_amount(quote["buyAmount"]),
                fee_amount=_parse_amount(quote.get("feeAmount")),
                valid_to=int(quote["validTo"]),
                kind=str(quote.get("kind") or ORDER_KIND_SELL),
                quote_id=int(data["id"]) if data.get("id") is not None else None,
                raw=data,
            )
        except KeyError as e:
            raise ValueError(f"Quote response is missing field {e.args[0]!r}") from e

    def snapshot(self) -> dict[str, Any]:
        """Quote fields captured on the order row for later reconciliation."""
        return {
            "buyAmountMin": str(self.buy_amount),
            "feeAmount": str(self.fee_amount),
            "validTo": self.valid_to,
            "quoteId": self.quote_id,
        }


@dataclass(frozen=True)
class OrderPayload:
    """Canonical order payload, in wire field order.

    Field order matches the settlement protocol's typed-data schema and
    must not change.
    """

    sell_token: str
    buy_token: str
    receiver: str
    sell_amount: int
    buy_amount: int
    valid_to: int
    app_data: str
    fee_amount: int
    kind: str = ORDER_KIND_SELL
    partially_fillable: bool = False
    sell_token_balance: str = TOKEN_BALANCE_ERC20
    buy_token_balance: str = TOKEN_BALANCE_ERC20

    def to_message(self) -> dict[str, Any]:
        """Typed-data message values (native types, for signing)."""
        return {
            "sellToken": self.sell_token,
            "buyToken": self.buy_token,
            "receiver": self.receiver,
            "sellAmount": self.sell_amount,
            "buyAmount": self.buy_amount,
            "validTo": self.valid_to,
            "appData": bytes.fromhex(self.app_data[2:] if self.app_data.startswith("0x") else self.app_data),
            "feeAmount": self.fee_amount,
            "kind": self.kind,
            "partiallyFillable": self.partially_fillable,
            "sellTokenBalance": self.sell_token_balance,
            "buyTokenBalance": self.buy_token_balance,
        }

    def to_api(self) -> dict[str, Any]:
        """JSON body fields for order submission (amounts as decimal strings)."""
        return {
            "sellToken": self.sell_token,
            "buyToken": self.buy_token,
            "receiver": self.receiver,
            "sellAmount": str(self.sell_amount),
            "buyAmount": str(self.buy_amount),
            "validTo": self.valid_to,
            "appData": self.app_data,
            "feeAmount": str(self.fee_amount),
            "kind": self.kind,
            "partiallyFillable": self.partially_fillable,
            "sellTokenBalance": self.sell_token_balance,
            "buyTokenBalance": self.buy_token_balance,
        }


@dataclass(frozen=True)
class OrderStatus:
    """Order book view of a submitted order."""

    uid: str
    status: str
    executed_buy_amount: int = 0
    executed_sell_amount: int = 0
    invalidated: bool = False

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> OrderStatus:
        return cls(
            uid=str(data.get("uid", "")),
            status=str(data.get("status", "")),
            executed_buy_amount=_parse_amount(data.get("executedBuyAmount")),
            executed_sell_amount=_parse_amount(data.get("executedSellAmount")),
            invalidated=bool(data.get("invalidated", False)),
        )

    @property
    def is_filled(self) -> bool:
        return self.status == EXTERNAL_STATUS_FULFILLED or self.executed_buy_amount > 0


@dataclass(frozen=True)
class OrderTrade:
    """A single settlement of (part of) an order."""

    order_uid: str
    buy_amount: int
    sell_amount: int
    tx_hash: str | None = None
    block_number: int | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> OrderTrade:
        return cls(
            order_uid=str(data.get("orderUid", "")),
            buy_amount=_parse_amount(data.get("buyAmount")),
            sell_amount=_parse_amount(data.get("sellAmount")),
            tx_hash=data.get("txHash"),
            block_number=int(data["blockNumber"]) if data.get("blockNumber") is not None else None,
        )


@dataclass(frozen=True)
class SubmittedOrder:
    """Result of a successful quote, sign and submit sequence."""

    uid: str
    quote: Quote
    order: OrderPayload
    signature: str
    approval_tx: str | None = None
