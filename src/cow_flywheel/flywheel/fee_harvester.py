"""LP fee harvesting for deployed tokens.

For every fee-enabled token the harvester reads the claimable WETH fees,
pushes LP rewards into the fee locker (allowed to revert when recently
collected), claims them, and finally swaps the accumulated WETH into the
settlement currency once it clears the minimum swap floor.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from cow_flywheel.chain.client import TokenLedger
from cow_flywheel.chain.fees import FeeClaimer
from cow_flywheel.effects import BackgroundEffects
from cow_flywheel.settlement.executor import SwapExecutor
from cow_flywheel.storage.database import DatabaseManager
from cow_flywheel.storage.repos import FeeClaimRepository, TokenDeploymentDTO, TokenDeploymentRepository

logger = logging.getLogger(__name__)

DEFAULT_MIN_SWAP_WEI = 500_000_000_000_000
WETH_DECIMALS = 18


class FeeHarvester:
    """Claims accumulated LP fees and forwards them into the swap pipeline.

    Example:
        ```python
        harvester = FeeHarvester(
            db,
            claimer=LockerFeeClaimer(chain, ...),
            swaps=swaps,
            ledger=chain,
            enabled=True,
            private_key=key,
            fee_recipient=treasury,
            fee_token=WETH_BASE_ADDRESS,
            settlement_token=USDC_BASE_ADDRESS,
        )
        summary = await harvester.run()
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        *,
        claimer: FeeClaimer | None,
        swaps: SwapExecutor,
        ledger: TokenLedger,
        enabled: bool,
        private_key: str | None,
        fee_recipient: str,
        fee_token: str,
        settlement_token: str,
        min_swap_wei: int = DEFAULT_MIN_SWAP_WEI,
        slippage_bps: int = 100,
        effects: BackgroundEffects | None = None,
    ) -> None:
        self._db = db
        self._claimer = claimer
        self._swaps = swaps
        self._ledger = ledger
        self._enabled = enabled
        self._private_key = private_key
        self._fee_recipient = fee_recipient
        self._fee_token = fee_token
        self._settlement_token = settlement_token
        self._min_swap_wei = min_swap_wei
        self._slippage_bps = slippage_bps
        self._effects = effects or BackgroundEffects()

    async def run(self) -> dict[str, Any]:
        if not self._enabled:
            return {"skipped": True, "reason": "FEE_HARVESTER_ENABLED is not true"}
        if not self._private_key:
            return {"skipped": True, "reason": "CLAWNCHER_PRIVATE_KEY not configured"}
        if self._claimer is None:
            return {"skipped": True, "reason": "Fee locker addresses not configured"}

        async with self._db.get_async_session() as session:
            tokens = await TokenDeploymentRepository(session).list_fee_enabled()
        if not tokens:
            return {"checked": 0, "claimed": 0, "reason": "No deployed tokens"}

        checked = 0
        claimed = 0
        for token in tokens:
            checked += 1
            if await self._harvest(self._claimer, token):
                claimed += 1

        summary: dict[str, Any] = {"checked": checked, "claimed": claimed, "tokens": len(tokens)}
        if claimed > 0:
            swap = await self._swap_proceeds(self._private_key)
            if swap is not None:
                summary["swap"] = swap
            self._effects.publish("fees_claimed", {"claimed": claimed, "swap": swap})

        logger.info("Fee harvest: checked=%d claimed=%d", checked, claimed)
        return summary

    async def _harvest(self, claimer: FeeClaimer, token: TokenDeploymentDTO) -> bool:
        """Claim one token's fees; failures are contained to the token."""
        label = token.symbol or token.token_address
        claim_id: int | None = None
        try:
            fees = await claimer.available_fees(self._fee_recipient, token.token_address)
            if fees <= 0:
                logger.debug("No claimable fees for %s", label)
                return False

            async with self._db.get_async_session() as session:
                claim = await FeeClaimRepository(session).insert_pending(
                    token_address=token.token_address,
                    fee_token=self._fee_token,
                    amount=fees,
                )
                claim_id = claim.id

            await claimer.collect_rewards(token.token_address)
            tx_hash = await claimer.claim_fees(self._fee_recipient, token.token_address)

            async with self._db.get_async_session() as session:
                await FeeClaimRepository(session).mark_claimed(claim_id, tx_hash=tx_hash)
                await TokenDeploymentRepository(session).touch_last_claim(
                    token.token_address,
                    at=datetime.now(UTC),
                )
        except Exception as e:
            logger.error("Fee claim failed for %s: %s", label, e)
            if claim_id is not None:
                await self._mark_failed(claim_id, str(e) or type(e).__name__)
            return False

        logger.info("Claimed %d fee units for %s (tx %s)", fees, label, tx_hash)
        return True

    async def _mark_failed(self, claim_id: int, error: str) -> None:
        try:
            async with self._db.get_async_session() as session:
                await FeeClaimRepository(session).mark_failed(claim_id, error=error)
        except Exception as e:
            logger.error("Could not mark fee claim %d failed: %s", claim_id, e)

    async def _swap_proceeds(self, private_key: str) -> dict[str, Any] | None:
        """Swap the fee recipient's WETH into the settlement currency above the floor."""
        try:
            balance = await self._ledger.get_token_balance(self._fee_token, self._fee_recipient)
            if balance <= self._min_swap_wei:
                logger.debug("Fee token balance %d not above swap floor %d", balance, self._min_swap_wei)
                return None
            submitted = await self._swaps.execute(
                sell_token=self._fee_token,
                buy_token=self._settlement_token,
                sell_amount=balance,
                private_key=private_key,
                owner=self._fee_recipient,
                receiver=self._fee_recipient,
                slippage_bps=self._slippage_bps,
            )
        except Exception as e:
            logger.error("Fee proceeds swap failed: %s", e)
            return {"error": str(e)}

        weth_amount = Decimal(balance) / (Decimal(10) ** WETH_DECIMALS)
        swap: dict[str, Any] = {"orderUid": submitted.uid, "wethAmount": str(weth_amount)}
        if submitted.approval_tx:
            swap["approvalTx"] = submitted.approval_tx
        return swap
