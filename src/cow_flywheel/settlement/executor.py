"""Quote, build, sign and submit composed into one swap call."""

from __future__ import annotations

import logging

from cow_flywheel.chain.client import TokenLedger
from cow_flywheel.settlement.cow_client import CowClient
from cow_flywheel.settlement.models import OrderPayload, Quote, SubmittedOrder
from cow_flywheel.settlement.orders import ZERO_APP_DATA, build_order
from cow_flywheel.settlement.signer import OrderSigner, OrderSigningError, address_for_key

logger = logging.getLogger(__name__)


class SwapExecutor:
    """Runs sell orders through the settlement protocol.

    Each step is exposed on its own so the trade-queue executor can
    persist progress between them; treasury producers use `execute`.
    """

    def __init__(
        self,
        *,
        cow: CowClient,
        signer: OrderSigner,
        ledger: TokenLedger,
        vault_relayer: str,
        app_data: str = ZERO_APP_DATA,
    ) -> None:
        self._cow = cow
        self._signer = signer
        self._ledger = ledger
        self._vault_relayer = vault_relayer
        self._app_data = app_data

    async def quote(
        self,
        *,
        sell_token: str,
        buy_token: str,
        sell_amount: int,
        owner: str,
        receiver: str | None = None,
        slippage_bps: int = 50,
    ) -> Quote:
        return await self._cow.get_quote(
            sell_token=sell_token,
            buy_token=buy_token,
            sell_amount=sell_amount,
            sender=owner,
            receiver=receiver,
            slippage_bps=slippage_bps,
        )

    def build(self, quote: Quote, *, receiver: str) -> OrderPayload:
        return build_order(quote, receiver=receiver, app_data=self._app_data)

    def sign(self, order: OrderPayload, private_key: str) -> str:
        """Sign the order and check the signature recovers to the signing key."""
        signature = self._signer.sign(order, private_key)
        if self._signer.recover(order, signature).lower() != address_for_key(private_key).lower():
            raise OrderSigningError("Signature does not recover to the signing key")
        return signature

    async def submit(self, order: OrderPayload, *, signature: str, owner: str) -> str:
        return await self._cow.submit_order(order, signature=signature, owner=owner)

    async def ensure_allowance(self, *, token_address: str, owner: str, amount: int, private_key: str) -> str | None:
        """Approve the vault relayer for `amount` of the sell token if needed."""
        return await self._ledger.ensure_allowance(
            token_address=token_address,
            owner=owner,
            spender=self._vault_relayer,
            amount=amount,
            private_key=private_key,
        )

    async def execute(
        self,
        *,
        sell_token: str,
        buy_token: str,
        sell_amount: int,
        private_key: str,
        owner: str | None = None,
        receiver: str | None = None,
        slippage_bps: int = 50,
    ) -> SubmittedOrder:
        """Ensure allowance, then quote, build, sign and submit a sell order.

        Args:
            sell_token: Token to sell.
            buy_token: Token to buy.
            sell_amount: Sell amount in smallest units.
            private_key: Key that signs the order and any approval.
            owner: Order owner; defaults to the key's address.
            receiver: Recipient of the bought tokens; defaults to the owner.
            slippage_bps: Slippage tolerance for the quote.

        Returns:
            The submitted order with its quote and signature.
        """
        owner = owner or address_for_key(private_key)
        receiver = receiver or owner

        approval_tx = await self.ensure_allowance(
            token_address=sell_token,
            owner=owner,
            amount=sell_amount,
            private_key=private_key,
        )
        quote = await self.quote(
            sell_token=sell_token,
            buy_token=buy_token,
            sell_amount=sell_amount,
            owner=owner,
            receiver=receiver,
            slippage_bps=slippage_bps,
        )
        order = self.build(quote, receiver=receiver)
        signature = self.sign(order, private_key)
        uid = await self.submit(order, signature=signature, owner=owner)
        logger.info(
            "Swap submitted: %d %s -> min %d %s (uid=%s)",
            order.sell_amount,
            sell_token,
            order.buy_amount,
            buy_token,
            uid,
        )
        return SubmittedOrder(uid=uid, quote=quote, order=order, signature=signature, approval_tx=approval_tx)
