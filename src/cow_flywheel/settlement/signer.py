"""EIP-712 order signing for the settlement protocol.

The domain and the `Order` type below are verified by the settlement
contract against this exact structure; field names, order and types
are part of the wire contract.
"""

from __future__ import annotations

import logging
from typing import Any

from eth_account import Account
from eth_account.messages import encode_typed_data

from cow_flywheel.settlement.models import OrderPayload

logger = logging.getLogger(__name__)

DOMAIN_NAME = "Gnosis Protocol"
DOMAIN_VERSION = "v2"

ORDER_TYPES: dict[str, list[dict[str, str]]] = {
    "Order": [
        {"name": "sellToken", "type": "address"},
        {"name": "buyToken", "type": "address"},
        {"name": "receiver", "type": "address"},
        {"name": "sellAmount", "type": "uint256"},
        {"name": "buyAmount", "type": "uint256"},
        {"name": "validTo", "type": "uint32"},
        {"name": "appData", "type": "bytes32"},
        {"name": "feeAmount", "type": "uint256"},
        {"name": "kind", "type": "string"},
        {"name": "partiallyFillable", "type": "bool"},
        {"name": "sellTokenBalance", "type": "string"},
        {"name": "buyTokenBalance", "type": "string"},
    ],
}


class OrderSigningError(Exception):
    """Raised when an order cannot be signed."""


def address_for_key(private_key: str) -> str:
    """Checksummed address controlled by `private_key`."""
    try:
        return str(Account.from_key(private_key).address)
    except Exception as e:
        raise OrderSigningError(f"Invalid signing key: {type(e).__name__}") from e


class OrderSigner:
    """Signs canonical orders for one chain and settlement contract."""

    def __init__(self, *, chain_id: int, verifying_contract: str) -> None:
        self._domain: dict[str, Any] = {
            "name": DOMAIN_NAME,
            "version": DOMAIN_VERSION,
            "chainId": chain_id,
            "verifyingContract": verifying_contract,
        }

    @property
    def domain(self) -> dict[str, Any]:
        return dict(self._domain)

    def sign(self, order: OrderPayload, private_key: str) -> str:
        """Sign an order with the given key.

        Args:
            order: Canonical order payload.
            private_key: 0x-prefixed hex private key (agent delegated key or
                treasury key).

        Returns:
            0x-prefixed hex encoding of the 65-byte signature.

        Raises:
            OrderSigningError: If the key or payload is invalid.
        """
        try:
            signed = Account.sign_typed_data(
                private_key,
                domain_data=self._domain,
                message_types=ORDER_TYPES,
                message_data=order.to_message(),
            )
        except Exception as e:
            # Never include the key material in the message.
            raise OrderSigningError(f"Failed to sign order: {type(e).__name__}") from e
        return "0x" + bytes(signed.signature).hex()

    def recover(self, order: OrderPayload, signature: str) -> str:
        """Recover the address that produced `signature` over `order`."""
        signable = encode_typed_data(
            domain_data=self._domain,
            message_types=ORDER_TYPES,
            message_data=order.to_message(),
        )
        return str(Account.recover_message(signable, signature=signature))
