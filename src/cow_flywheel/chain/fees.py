"""Fee locker adapter for deployed revenue-generating tokens.

The harvester only needs three operations, so the lockers are reached
through the narrow `FeeClaimer` interface below and adapted to the
contracts at this one boundary.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from web3 import AsyncWeb3

from cow_flywheel.chain.client import ChainClient

logger = logging.getLogger(__name__)

FEE_LOCKER_ABI: list[dict[str, Any]] = [
    {
        "inputs": [
            {"name": "feeOwner", "type": "address"},
            {"name": "token", "type": "address"},
        ],
        "name": "availableFees",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "feeOwner", "type": "address"},
            {"name": "token", "type": "address"},
        ],
        "name": "claim",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

LP_LOCKER_ABI: list[dict[str, Any]] = [
    {
        "inputs": [{"name": "token", "type": "address"}],
        "name": "collectRewards",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


class FeeClaimer(Protocol):
    """Operations the fee harvester performs against the fee lockers."""

    async def available_fees(self, fee_owner: str, token_address: str) -> int: ...

    async def collect_rewards(self, token_address: str) -> str | None: ...

    async def claim_fees(self, fee_owner: str, token_address: str) -> str: ...


class LockerFeeClaimer:
    """`FeeClaimer` backed by the LP locker and fee locker contracts."""

    def __init__(
        self,
        chain: ChainClient,
        *,
        fee_locker_address: str,
        lp_locker_address: str,
        private_key: str,
    ) -> None:
        self._chain = chain
        self._fee_locker = fee_locker_address
        self._lp_locker = lp_locker_address
        self._private_key = private_key

    async def available_fees(self, fee_owner: str, token_address: str) -> int:
        fees = await self._chain.call_function(
            contract_address=self._fee_locker,
            abi=FEE_LOCKER_ABI,
            fn_name="availableFees",
            args=(AsyncWeb3.to_checksum_address(fee_owner), AsyncWeb3.to_checksum_address(token_address)),
        )
        return int(fees)

    async def collect_rewards(self, token_address: str) -> str | None:
        """Push accrued LP fees into the fee locker.

        This reverts when rewards were collected recently, which is
        expected; the failure is logged and the claim proceeds.
        """
        try:
            return await self._chain.send_transaction(
                contract_address=self._lp_locker,
                abi=LP_LOCKER_ABI,
                fn_name="collectRewards",
                args=(AsyncWeb3.to_checksum_address(token_address),),
                private_key=self._private_key,
            )
        except Exception as e:
            logger.warning("collectRewards for %s did not complete: %s", token_address, e)
            return None

    async def claim_fees(self, fee_owner: str, token_address: str) -> str:
        return await self._chain.send_transaction(
            contract_address=self._fee_locker,
            abi=FEE_LOCKER_ABI,
            fn_name="claim",
            args=(AsyncWeb3.to_checksum_address(fee_owner), AsyncWeb3.to_checksum_address(token_address)),
            private_key=self._private_key,
        )
