"""Sentiment-triggered treasury buys.

When the latest community-sentiment snapshot is at or above the
threshold and no sentiment trade was placed within the cooldown window,
a fixed settlement-currency amount is swapped into the platform token.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

from cow_flywheel.chain.client import TokenLedger
from cow_flywheel.config import Settings
from cow_flywheel.effects import BackgroundEffects
from cow_flywheel.settlement.executor import SwapExecutor
from cow_flywheel.storage.database import DatabaseManager
from cow_flywheel.storage.repos import SentimentSnapshotRepository, SentimentTradeRepository
from cow_flywheel.strategy.signals import to_smallest_units

logger = logging.getLogger(__name__)


class SentimentTrader:
    """Sentiment trade job; the third producer into the order pipeline."""

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
        trade_amount: Decimal,
        cooldown_hours: float,
        slippage_bps: int = 100,
        effects: BackgroundEffects | None = None,
    ) -> None:
        self._db = db
        self._swaps = swaps
        self._ledger = ledger
        self._enabled = enabled
        self._private_key = private_key
        self._treasury_wallet = treasury_wallet
        self._target_token = target_token
        self._settlement_token = settlement_token
        self._settlement_decimals = settlement_decimals
        self._threshold = threshold
        self._trade_amount = trade_amount
        self._cooldown = timedelta(hours=cooldown_hours)
        self._slippage_bps = slippage_bps
        self._effects = effects or BackgroundEffects()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        db: DatabaseManager,
        swaps: SwapExecutor,
        ledger: TokenLedger,
        effects: BackgroundEffects | None = None,
    ) -> SentimentTrader:
        # Sentiment buys spend from the buyback treasury.
        buyback = settings.buyback
        sentiment = settings.sentiment
        return cls(
            db,
            swaps=swaps,
            ledger=ledger,
            enabled=sentiment.enabled,
            private_key=buyback.private_key.get_secret_value() if buyback.private_key else None,
            treasury_wallet=buyback.treasury_wallet,
            target_token=buyback.target_token_address,
            settlement_token=settings.tokens.settlement_currency_address,
            settlement_decimals=settings.tokens.settlement_currency_decimals,
            threshold=sentiment.threshold,
            trade_amount=sentiment.trade_amount,
            cooldown_hours=sentiment.cooldown_hours,
            slippage_bps=sentiment.slippage_bps,
            effects=effects,
        )

    async def run(self) -> dict[str, Any]:
        if not self._enabled:
            return {"skipped": True, "reason": "SENTIMENT_TRADER_ENABLED is not true"}
        if not self._private_key:
            return {"skipped": True, "reason": "BUYBACK_PRIVATE_KEY not configured"}
        if not self._target_token:
            return {"skipped": True, "reason": "BURN_TOKEN_ADDRESS not configured"}

        async with self._db.get_async_session() as session:
            snapshot = await SentimentSnapshotRepository(session).get_latest()
            if snapshot is None:
                return {"skipped": True, "reason": "No sentiment snapshot available"}
            score = snapshot.average_score
            if score < self._threshold:
                return {
                    "skipped": True,
                    "reason": "Sentiment below threshold",
                    "avgScore": str(score),
                    "threshold": str(self._threshold),
                }
            since = datetime.now(UTC) - self._cooldown
            if await SentimentTradeRepository(session).has_trade_since(since):
                return {
                    "skipped": True,
                    "reason": "Cooldown active",
                    "avgScore": str(score),
                    "cooldownHours": self._cooldown.total_seconds() / 3600,
                }

        amount_raw = to_smallest_units(self._trade_amount, self._settlement_decimals)
        try:
            balance_raw = await self._ledger.get_token_balance(self._settlement_token, self._treasury_wallet)
            if balance_raw < amount_raw:
                return {
                    "skipped": True,
                    "reason": "Insufficient USDC balance",
                    "balance": str(Decimal(balance_raw) / (Decimal(10) ** self._settlement_decimals)),
                    "required": str(self._trade_amount),
                }
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
            logger.error("Sentiment trade failed: %s", e)
            await self._record_failure(amount_raw, score, snapshot.id, str(e) or type(e).__name__)
            return {"executed": False, "error": str(e)}

        async with self._db.get_async_session() as session:
            await SentimentTradeRepository(session).insert_submitted(
                sentiment_score=score,
                trigger_snapshot_id=snapshot.id,
                order_uid=submitted.uid,
                sell_token=self._settlement_token,
                buy_token=self._target_token,
                sell_amount=amount_raw,
                usdc_amount=self._trade_amount,
                buy_amount_min=submitted.quote.buy_amount,
                fee_amount=submitted.quote.fee_amount,
                valid_to=submitted.quote.valid_to,
                quote_data=submitted.quote.snapshot(),
            )

        logger.info("Sentiment trade submitted at score %s: %s (uid=%s)", score, self._trade_amount, submitted.uid)
        self._effects.publish(
            "sentiment_trade",
            {"order_uid": submitted.uid, "sentiment_score": str(score), "usdc_amount": str(self._trade_amount)},
        )
        result: dict[str, Any] = {
            "executed": True,
            "orderUid": submitted.uid,
            "sentimentScore": str(score),
            "usdcAmount": str(self._trade_amount),
            "expectedBuyAmount": str(submitted.quote.buy_amount),
        }
        if submitted.approval_tx:
            result["approvalTx"] = submitted.approval_tx
        return result

    async def _record_failure(self, amount_raw: int, score: Decimal, snapshot_id: int, error: str) -> None:
        try:
            async with self._db.get_async_session() as session:
                await SentimentTradeRepository(session).insert_failed(
                    sell_token=self._settlement_token,
                    buy_token=self._target_token or "",
                    sell_amount=amount_raw,
                    usdc_amount=self._trade_amount,
                    sentiment_score=score,
                    trigger_snapshot_id=snapshot_id,
                    error_message=error,
                )
        except Exception as e:
            logger.error("Could not record failed sentiment trade: %s", e)
