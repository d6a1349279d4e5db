"""CoW Protocol order book client with timeouts and retry logic.

This module wraps the order book REST API used by every producer:
- `POST /quote` to price a sell order
- `POST /orders` to submit a signed order
- `GET /orders/{uid}` to poll settlement status
- `GET /trades?orderUid=` to list fills

Transient failures (timeouts, connection errors, 429 and 5xx responses)
are retried with exponential backoff a bounded number of times before
the error propagates to the calling job.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from cow_flywheel.settlement.models import (
    ORDER_KIND_SELL,
    SIGNING_SCHEME_EIP712,
    OrderPayload,
    OrderStatus,
    OrderTrade,
    Quote,
)

logger = logging.getLogger(__name__)

# Constants
DEFAULT_API_BASE = "https://api.cow.fi/base/api/v1"
DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_RETRIES = 2
DEFAULT_RETRY_BASE_DELAY = 0.5
RETRY_STATUS_CODES = (429, 500, 502, 503, 504)


class CowClientError(Exception):
    """Base exception for order book client errors."""


class CowTransientError(CowClientError):
    """Raised for retryable errors (timeouts, 429/5xx, network issues)."""


class CowQuoteError(CowClientError):
    """Raised when the order book rejects a quote request."""


class CowSubmissionError(CowClientError):
    """Raised when the order book rejects an order."""


class CowOrderStatusError(CowClientError):
    """Raised when an order's status cannot be read."""


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(body, dict):
        kind = body.get("errorType")
        description = body.get("description")
        if kind or description:
            return f"{kind}: {description}"
    return str(body)[:500]


class CowClient:
    """Async client for the CoW Protocol order book API.

    Example:
        ```python
        async with CowClient(api_base="https://api.cow.fi/base/api/v1") as cow:
            quote = await cow.get_quote(
                sell_token=USDC,
                buy_token=WETH,
                sell_amount=50_000_000,
                sender=wallet,
            )
        ```
    """

    def __init__(
        self,
        *,
        api_base: str = DEFAULT_API_BASE,
        app_data: str = "0x" + "0" * 64,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the order book client.

        Args:
            api_base: Order book base URL, including the `/api/v1` suffix.
            app_data: bytes32 correlation field attached to every order.
            timeout_seconds: Per-request timeout.
            max_retries: Retries after the first attempt on transient errors.
            retry_base_delay: Initial backoff delay, doubled per retry.
            transport: Optional httpx transport (tests inject a mock).
        """
        self._api_base = api_base.rstrip("/")
        self._app_data = app_data
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._client = httpx.AsyncClient(
            base_url=self._api_base,
            timeout=httpx.Timeout(timeout_seconds),
            headers={"Accept": "application/json"},
            transport=transport,
        )

    @property
    def app_data(self) -> str:
        return self._app_data

    async def __aenter__(self) -> CowClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a request, retrying transient failures with exponential backoff.

        Raises:
            CowTransientError: If every attempt failed transiently.
        """
        last_error: Exception | None = None
        delay = self._retry_base_delay

        for attempt in range(self._max_retries + 1):
            try:
                response = await self._client.request(method, path, **kwargs)
            except httpx.TransportError as e:
                last_error = e
            else:
                if response.status_code not in RETRY_STATUS_CODES:
                    return response
                last_error = CowTransientError(
                    f"{method} {path} returned {response.status_code}: {_error_detail(response)}"
                )

            if attempt == self._max_retries:
                break
            logger.warning(
                "Order book %s %s failed (attempt %d/%d): %s. Retrying in %.1f seconds...",
                method,
                path,
                attempt + 1,
                self._max_retries + 1,
                last_error,
                delay,
            )
            await asyncio.sleep(delay)
            delay *= 2

        raise CowTransientError(
            f"{method} {path} failed after {self._max_retries + 1} attempts: {last_error}"
        ) from last_error

    async def get_quote(
        self,
        *,
        sell_token: str,
        buy_token: str,
        sell_amount: int,
        sender: str,
        receiver: str | None = None,
        slippage_bps: int = 50,
    ) -> Quote:
        """Price a sell order.

        Args:
            sell_token: Token to sell.
            buy_token: Token to buy.
            sell_amount: Amount to sell before fees, in smallest units.
            sender: Address that will sign and fund the order.
            receiver: Address receiving the bought tokens (defaults to sender).
            slippage_bps: Slippage tolerance applied to the minimum buy amount.

        Returns:
            Quote whose `buy_amount` is the minimum acceptable output.

        Raises:
            CowQuoteError: If the order book rejects the request.
            CowTransientError: If the order book stayed unavailable.
        """
        body = {
            "sellToken": sell_token,
            "buyToken": buy_token,
            "sellAmountBeforeFee": str(sell_amount),
            "from": sender,
            "receiver": receiver or sender,
            "kind": ORDER_KIND_SELL,
            "appData": self._app_data,
            "partiallyFillable": False,
            "signingScheme": SIGNING_SCHEME_EIP712,
            "slippageBps": slippage_bps,
        }
        response = await self._request("POST", "/quote", json=body)
        if response.is_error:
            raise CowQuoteError(f"Quote failed ({response.status_code}): {_error_detail(response)}")
        try:
            quote = Quote.from_api(response.json())
        except ValueError as e:
            raise CowQuoteError(f"Malformed quote response: {e}") from e
        logger.debug(
            "Quoted %s %s -> %s %s (fee=%s, validTo=%d)",
            quote.sell_amount,
            sell_token,
            quote.buy_amount,
            buy_token,
            quote.fee_amount,
            quote.valid_to,
        )
        return quote

    async def submit_order(self, order: OrderPayload, *, signature: str, owner: str) -> str:
        """Submit a signed order.

        Returns:
            The opaque order uid.

        Raises:
            CowSubmissionError: If the order book rejects the order.
            CowTransientError: If the order book stayed unavailable.
        """
        body = {
            **order.to_api(),
            "signature": signature,
            "signingScheme": SIGNING_SCHEME_EIP712,
            "from": owner,
        }
        response = await self._request("POST", "/orders", json=body)
        if response.is_error:
            raise CowSubmissionError(
                f"Order submission failed ({response.status_code}): {_error_detail(response)}"
            )
        try:
            data = response.json()
        except ValueError:
            data = response.text.strip().strip('"')
        uid = data.get("uid") if isinstance(data, dict) else data
        if not isinstance(uid, str) or not uid:
            raise CowSubmissionError(f"Order submission returned no uid: {data!r}")
        logger.info("Submitted order %s", uid)
        return uid

    async def get_order_status(self, uid: str) -> OrderStatus:
        """Fetch the order book's view of an order.

        Raises:
            CowOrderStatusError: If the order cannot be read.
            CowTransientError: If the order book stayed unavailable.
        """
        response = await self._request("GET", f"/orders/{uid}")
        if response.is_error:
            raise CowOrderStatusError(
                f"Order status for {uid} failed ({response.status_code}): {_error_detail(response)}"
            )
        data = response.json()
        if not isinstance(data, dict):
            raise CowOrderStatusError(f"Unexpected order status shape for {uid}")
        return OrderStatus.from_api(data)

    async def get_order_trades(self, uid: str) -> list[OrderTrade]:
        """List the settlements that filled (part of) an order."""
        response = await self._request("GET", "/trades", params={"orderUid": uid})
        if response.is_error:
            raise CowOrderStatusError(
                f"Trades for {uid} failed ({response.status_code}): {_error_detail(response)}"
            )
        data = response.json()
        if not isinstance(data, list):
            raise CowOrderStatusError(f"Unexpected trades shape for {uid}")
        return [OrderTrade.from_api(item) for item in data if isinstance(item, dict)]
