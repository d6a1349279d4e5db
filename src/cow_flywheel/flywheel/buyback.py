"""Threshold-triggered treasury buyback.

Reads the treasury's settlement-currency balance on demand and, when it
is at or above the threshold, swaps `floor(balance × percent / 100)` of
it into the platform token through the settlement protocol.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from cow_flywheel.chain.client import TokenLedger
from cow_flywheel.config import Settings
from cow_flywheel.settlement.executor import SwapExecutor
from cow_flywheel.storage.database import DatabaseManager
from cow_flywheel.storage.repos import BuybackOrderRepository

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


class BuybackExecutor:
    """Treasury buyback job.

    Missing configuration or a disabled flag produce a `skipped` summary,
    never an error. Any upstream failure is recorded as a `failed`
    buyback row and not retried within the invocation.
    """

    def __init__(
        self,
        db: DatabaseManager,
        *,
        swaps: SwapExecutor,
        ledger: TokenLedger,
        enabled: bool,
        private_key: str | None,
        treasury_wallet: str,
        target_token: str | None,
        settlement_token: str,
        settlement_decimals: int,
        threshold: Decimal,
        percent: Decimal,
        slippage_bps: int = 100,
    ) -> None:
        self._db = db
        self._swaps = swaps
        self._ledger = ledger
        self._enabled = enabled
        self._private_key = private_key
        self._treasury_wallet = treasury_wallet
        self._target_token = target_token
        self._settlement_token = settlement_token
        self._scale = Decimal(10) ** settlement_decimals
        self._threshold = threshold
        self._percent = percent
        self._slippage_bps = slippage_bps

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        db: DatabaseManager,
        swaps: SwapExecutor,
        ledger: TokenLedger,
    ) -> BuybackExecutor:
        buyback = settings.buyback
        return cls(
            db,
            swaps=swaps,
            ledger=ledger,
            enabled=buyback.enabled,
            private_key=buyback.private_key.get_secret_value() if buyback.private_key else None,
            treasury_wallet=buyback.treasury_wallet,
            target_token=buyback.target_token_address,
            settlement_token=settings.tokens.settlement_currency_address,
            settlement_decimals=settings.tokens.settlement_currency_decimals,
            threshold=buyback.threshold,
            percent=buyback.percent,
            slippage_bps=buyback.slippage_bps,
        )

    def spend_amount(self, balance_raw: int) -> int:
        """Smallest-unit amount to spend for a given raw balance, rounded down."""
        return int(Decimal(balance_raw) * self._percent // HUNDRED)

    async def run(self) -> dict[str, Any]:
        if not self._enabled:
            return {"skipped": True, "reason": "BUYBACK_ENABLED is not true"}
        if not self._private_key:
            return {"skipped": True, "reason": "BUYBACK_PRIVATE_KEY not configured"}
        if not self._target_token:
            return {"skipped": True, "reason": "BURN_TOKEN_ADDRESS not configured"}

        balance = Decimal(0)
        amount_raw = 0
        try:
            balance_raw = await self._ledger.get_token_balance(self._settlement_token, self._treasury_wallet)
            balance = Decimal(balance_raw) / self._scale
            if balance < self._threshold:
                logger.debug("Treasury balance %s below buyback threshold %s", balance, self._threshold)
                return {
                    "skipped": True,
                    "reason": "Balance below threshold",
                    "balance": str(balance),
                    "threshold": str(self._threshold),
                }

            amount_raw = self.spend_amount(balance_raw)
            if amount_raw <= 0:
                return {"skipped": True, "reason": "Buyback amount rounds to zero", "balance": str(balance)}

            submitted = await self._swaps.execute(
                sell_token=self._settlement_token,
                buy_token=self._target_token,
                sell_amount=amount_raw,
                private_key=self._private_key,
                owner=self._treasury_wallet,
                receiver=self._treasury_wallet,
                slippage_bps=self._slippage_bps,
            )
        except Exception as e:
            logger.error("Buyback failed: %s", e)
            await self._record_failure(amount_raw, balance, str(e) or type(e).__name__)
            return {"executed": False, "error": str(e)}

        usdc_amount = Decimal(amount_raw) / self._scale
        async with self._db.get_async_session() as session:
            await BuybackOrderRepository(session).insert_submitted(
                trigger_balance=balance,
                order_uid=submitted.uid,
                sell_token=self._settlement_token,
                buy_token=self._target_token,
                sell_amount=amount_raw,
                usdc_amount=usdc_amount,
                buy_amount_min=submitted.quote.buy_amount,
                fee_amount=submitted.quote.fee_amount,
                valid_to=submitted.quote.valid_to,
                quote_data=submitted.quote.snapshot(),
            )

        logger.info("Buyback submitted: %s of %s treasury balance (uid=%s)", usdc_amount, balance, submitted.uid)
        result: dict[str, Any] = {
            "executed": True,
            "orderUid": submitted.uid,
            "usdcAmount": str(usdc_amount),
            "expectedBuyAmount": str(submitted.quote.buy_amount),
            "triggerBalance": str(balance),
        }
        if submitted.approval_tx:
            result["approvalTx"] = submitted.approval_tx
        return result

    async def _record_failure(self, amount_raw: int, balance: Decimal, error: str) -> None:
        try:
            async with self._db.get_async_session() as session:
                await BuybackOrderRepository(session).insert_failed(
                    sell_token=self._settlement_token,
                    buy_token=self._target_token or "",
                    sell_amount=amount_raw,
                    usdc_amount=Decimal(amount_raw) / self._scale,
                    trigger_balance=balance,
                    error_message=error,
                )
        except Exception as e:
            logger.error("Could not record failed buyback: %s", e)
