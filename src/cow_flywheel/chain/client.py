"""EVM chain client with retry, failover and rate limiting.

This module provides the blockchain reads and writes the pipeline needs
at its edges:
- ERC-20 balances and allowances (read on demand, never cached)
- ERC-20 approvals signed locally and broadcast as raw transactions
- Generic contract calls and transactions for the fee lockers

Reads are retried with exponential backoff and fail over to a secondary
RPC URL. Transactions are broadcast once; a failed broadcast surfaces to
the caller instead of being replayed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

from aiohttp import ClientTimeout
from eth_account import Account
from web3 import AsyncWeb3
from web3.exceptions import Web3Exception
from web3.providers import AsyncHTTPProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default configuration
DEFAULT_MAX_REQUESTS_PER_SECOND = 10
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 0.5
DEFAULT_REQUEST_TIMEOUT = 10.0
DEFAULT_RECEIPT_TIMEOUT = 60.0

MAX_UINT256 = 2**256 - 1

ERC20_ABI: list[dict[str, Any]] = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [
            {"name": "_owner", "type": "address"},
            {"name": "_spender", "type": "address"},
        ],
        "name": "allowance",
        "outputs": [{"name": "remaining", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "_spender", "type": "address"},
            {"name": "_value", "type": "uint256"},
        ],
        "name": "approve",
        "outputs": [{"name": "success", "type": "bool"}],
        "type": "function",
    },
]


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when an RPC call fails after retries and failover."""


class TransactionError(ChainClientError):
    """Raised when a transaction cannot be broadcast or reverts."""


class TokenLedger(Protocol):
    """The ERC-20 operations producers depend on."""

    async def get_token_balance(self, token_address: str, owner: str) -> int: ...

    async def get_allowance(self, token_address: str, owner: str, spender: str) -> int: ...

    async def ensure_allowance(
        self,
        *,
        token_address: str,
        owner: str,
        spender: str,
        amount: int,
        private_key: str,
    ) -> str | None: ...


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


class ChainClient:
    """Async EVM client for balance reads, allowances and transactions.

    Example:
        ```python
        chain = ChainClient("https://mainnet.base.org", chain_id=8453)
        balance = await chain.get_token_balance(USDC, treasury)
        await chain.aclose()
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        chain_id: int,
        fallback_rpc_url: str | None = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        receipt_timeout: float = DEFAULT_RECEIPT_TIMEOUT,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
    ) -> None:
        """Initialize the chain client.

        Args:
            rpc_url: Primary RPC endpoint URL.
            chain_id: Chain ID used when signing transactions.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            request_timeout: Per-request HTTP timeout in seconds.
            receipt_timeout: How long to wait for a transaction receipt.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Maximum attempts per endpoint.
            retry_delay_seconds: Initial delay between retries.
        """
        self._chain_id = chain_id
        self._request_timeout = request_timeout
        self._receipt_timeout = receipt_timeout
        self._max_retries = max(1, max_retries)
        self._retry_delay = retry_delay_seconds

        self._w3 = self._new_web3_client(rpc_url)
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = self._new_web3_client(fallback_rpc_url)

        self._rate_limiter = RateLimiter.create(max_requests_per_second)
        self._primary_healthy = True

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        provider = AsyncHTTPProvider(
            rpc_url,
            request_kwargs={"timeout": ClientTimeout(total=self._request_timeout)},
        )
        return AsyncWeb3(provider)

    @property
    def _active_w3(self) -> AsyncWeb3[AsyncHTTPProvider]:
        if self._primary_healthy or self._w3_fallback is None:
            return self._w3
        return self._w3_fallback

    async def _with_failover(
        self,
        description: str,
        call: Callable[[AsyncWeb3[AsyncHTTPProvider]], Awaitable[T]],
    ) -> T:
        """Run a read with retry on the primary RPC, then on the fallback.

        Raises:
            RPCError: If all retries and failover fail.
        """
        await self._rate_limiter.acquire()

        last_error: Exception | None = None
        endpoints: list[tuple[str, AsyncWeb3[AsyncHTTPProvider]]] = [("Primary", self._w3)]
        if self._w3_fallback is not None:
            endpoints.append(("Fallback", self._w3_fallback))

        for label, w3 in endpoints:
            delay = self._retry_delay
            for attempt in range(self._max_retries):
                try:
                    result = await call(w3)
                    if w3 is self._w3:
                        self._primary_healthy = True
                    else:
                        logger.info("Fallback RPC succeeded for %s", description)
                    return result
                except (Web3Exception, OSError, asyncio.TimeoutError) as e:
                    last_error = e
                    logger.warning(
                        "%s RPC %s failed (attempt %d/%d): %s",
                        label,
                        description,
                        attempt + 1,
                        self._max_retries,
                        e,
                    )
                    if attempt < self._max_retries - 1:
                        await asyncio.sleep(delay)
                        delay *= 2
            if w3 is self._w3:
                self._primary_healthy = False

        raise RPCError(f"RPC call {description} failed after all retries: {last_error}")

    def _contract(self, w3: AsyncWeb3[AsyncHTTPProvider], address: str, abi: list[dict[str, Any]]) -> Any:
        return w3.eth.contract(address=AsyncWeb3.to_checksum_address(address), abi=abi)

    async def call_function(
        self,
        *,
        contract_address: str,
        abi: list[dict[str, Any]],
        fn_name: str,
        args: tuple[Any, ...] = (),
    ) -> Any:
        """Call a read-only contract function."""

        async def _call(w3: AsyncWeb3[AsyncHTTPProvider]) -> Any:
            contract = self._contract(w3, contract_address, abi)
            return await getattr(contract.functions, fn_name)(*args).call()

        return await self._with_failover(f"{fn_name}@{contract_address}", _call)

    async def get_token_balance(self, token_address: str, owner: str) -> int:
        """ERC-20 balance of `owner` in smallest units."""
        balance = await self.call_function(
            contract_address=token_address,
            abi=ERC20_ABI,
            fn_name="balanceOf",
            args=(AsyncWeb3.to_checksum_address(owner),),
        )
        return int(balance)

    async def get_allowance(self, token_address: str, owner: str, spender: str) -> int:
        """ERC-20 allowance granted by `owner` to `spender`."""
        allowance = await self.call_function(
            contract_address=token_address,
            abi=ERC20_ABI,
            fn_name="allowance",
            args=(AsyncWeb3.to_checksum_address(owner), AsyncWeb3.to_checksum_address(spender)),
        )
        return int(allowance)

    async def send_transaction(
        self,
        *,
        contract_address: str,
        abi: list[dict[str, Any]],
        fn_name: str,
        args: tuple[Any, ...],
        private_key: str,
    ) -> str:
        """Sign a contract call locally, broadcast it and wait for the receipt.

        Returns:
            The 0x-prefixed transaction hash.

        Raises:
            TransactionError: If the transaction cannot be sent or reverts.
        """
        account = Account.from_key(private_key)
        nonce = await self._with_failover(
            "get_transaction_count",
            lambda w3: w3.eth.get_transaction_count(account.address, "pending"),
        )
        w3 = self._active_w3
        try:
            contract = self._contract(w3, contract_address, abi)
            tx = await getattr(contract.functions, fn_name)(*args).build_transaction(
                {"from": account.address, "nonce": nonce, "chainId": self._chain_id}
            )
            signed = account.sign_transaction(tx)
            tx_hash = await w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = await w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._receipt_timeout)
        except (Web3Exception, OSError, asyncio.TimeoutError, ValueError) as e:
            raise TransactionError(f"{fn_name} on {contract_address} failed: {e}") from e

        tx_hex = "0x" + bytes(tx_hash).hex()
        if int(receipt.get("status", 0)) != 1:
            raise TransactionError(f"{fn_name} on {contract_address} reverted (tx {tx_hex})")
        logger.info("%s on %s confirmed in tx %s", fn_name, contract_address, tx_hex)
        return tx_hex

    async def approve(self, *, token_address: str, spender: str, amount: int, private_key: str) -> str:
        """Approve `spender` to move `amount` of the token."""
        return await self.send_transaction(
            contract_address=token_address,
            abi=ERC20_ABI,
            fn_name="approve",
            args=(AsyncWeb3.to_checksum_address(spender), amount),
            private_key=private_key,
        )

    async def ensure_allowance(
        self,
        *,
        token_address: str,
        owner: str,
        spender: str,
        amount: int,
        private_key: str,
    ) -> str | None:
        """Approve an unlimited allowance if the current one is below `amount`.

        Returns:
            The approval transaction hash, or None if no approval was needed.
        """
        current = await self.get_allowance(token_address, owner, spender)
        if current >= amount:
            return None
        logger.info(
            "Allowance %d < %d for %s on %s; approving",
            current,
            amount,
            owner,
            token_address,
        )
        return await self.approve(
            token_address=token_address,
            spender=spender,
            amount=MAX_UINT256,
            private_key=private_key,
        )

    async def health_check(self) -> bool:
        try:
            await self._with_failover("block_number", lambda w3: w3.eth.block_number)
            return True
        except RPCError:
            return False

    async def aclose(self) -> None:
        """Close async HTTP provider sessions."""
        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)
