"""Blockchain collaborators - ERC-20 reads, approvals and fee lockers."""

from cow_flywheel.chain.client import (
    ChainClient,
    ChainClientError,
    RPCError,
    TokenLedger,
    TransactionError,
)
from cow_flywheel.chain.fees import FeeClaimer, LockerFeeClaimer

__all__ = [
    "ChainClient",
    "ChainClientError",
    "FeeClaimer",
    "LockerFeeClaimer",
    "RPCError",
    "TokenLedger",
    "TransactionError",
]
