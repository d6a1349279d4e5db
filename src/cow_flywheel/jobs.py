"""Job registry and per-invocation wiring.

Every invocation starts cold: `JobContext.create` builds the database
manager, settlement client, chain client and side-effect runner from
settings, the job runs against them, and everything is closed again.
Nothing is cached at module level between invocations.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from redis.asyncio import Redis

from cow_flywheel.agents.keys import AgentKeyVault
from cow_flywheel.chain.client import ChainClient
from cow_flywheel.chain.fees import LockerFeeClaimer
from cow_flywheel.config import Settings, get_settings
from cow_flywheel.effects import BackgroundEffects, JobLock, RedisEventPublisher
from cow_flywheel.execution.trader import TradeQueueExecutor
from cow_flywheel.flywheel.buyback import BuybackExecutor
from cow_flywheel.flywheel.fee_harvester import FeeHarvester
from cow_flywheel.flywheel.sentiment import SentimentTrader
from cow_flywheel.monitor.reconciler import OrderMonitor
from cow_flywheel.settlement.cow_client import CowClient
from cow_flywheel.settlement.executor import SwapExecutor
from cow_flywheel.settlement.signer import OrderSigner
from cow_flywheel.storage.database import DatabaseManager
from cow_flywheel.strategy.generator import StrategySignalGenerator
from cow_flywheel.strategy.signals import SizingConfig

logger = logging.getLogger(__name__)

JOB_AGENT_STRATEGY = "agent-strategy"
JOB_AGENT_TRADER = "agent-trader"
JOB_ORDER_MONITOR = "order-monitor"
JOB_FEE_HARVESTER = "fee-harvester"
JOB_BUYBACK_EXECUTOR = "buyback-executor"
JOB_SENTIMENT_TRADER = "sentiment-trader"


class UnknownJobError(LookupError):
    """Raised when a job name is not registered."""


def build_chain_client(settings: Settings) -> ChainClient:
    return ChainClient(
        settings.chain.rpc_url,
        chain_id=settings.chain.chain_id,
        fallback_rpc_url=settings.chain.fallback_rpc_url,
        request_timeout=settings.chain.request_timeout_seconds,
        receipt_timeout=settings.chain.receipt_timeout_seconds,
    )


async def check_chain(settings: Settings) -> bool:
    """Whether the configured RPC endpoints answer."""
    chain = build_chain_client(settings)
    try:
        return await chain.health_check()
    finally:
        await chain.aclose()


@dataclass
class JobContext:
    """Collaborators for one job invocation."""

    settings: Settings
    db: DatabaseManager
    cow: CowClient
    chain: ChainClient
    swaps: SwapExecutor
    effects: BackgroundEffects
    redis: Redis | None = None

    @classmethod
    def create(cls, settings: Settings) -> JobContext:
        db = DatabaseManager(settings.database.url)
        cow = CowClient(
            api_base=settings.cow.api_base,
            app_data=settings.cow.app_data,
            timeout_seconds=settings.cow.request_timeout_seconds,
            max_retries=settings.cow.max_retries,
        )
        chain = build_chain_client(settings)
        swaps = SwapExecutor(
            cow=cow,
            signer=OrderSigner(chain_id=settings.chain.chain_id, verifying_contract=settings.cow.settlement_address),
            ledger=chain,
            vault_relayer=settings.cow.vault_relayer_address,
            app_data=settings.cow.app_data,
        )
        redis = Redis.from_url(settings.redis.url) if settings.redis.url else None
        publisher = RedisEventPublisher(redis, channel=settings.redis.events_channel) if redis else None
        return cls(
            settings=settings,
            db=db,
            cow=cow,
            chain=chain,
            swaps=swaps,
            effects=BackgroundEffects(publisher),
            redis=redis,
        )

    async def aclose(self) -> None:
        await self.effects.drain()
        await self.cow.aclose()
        await self.chain.aclose()
        if self.redis is not None:
            await self.redis.aclose()
        await self.db.dispose_async()


# ============================================================================
# Jobs
# ============================================================================


async def run_agent_strategy(ctx: JobContext) -> dict[str, Any]:
    settings = ctx.settings
    generator = StrategySignalGenerator(
        ctx.db,
        sizing=SizingConfig.from_settings(settings.agents),
        sell_token=settings.tokens.settlement_currency_address,
        buy_token=settings.tokens.weth_address,
        sell_token_decimals=settings.tokens.settlement_currency_decimals,
        default_max_drawdown_pct=settings.agents.default_max_drawdown_pct,
    )
    stats = await generator.run()
    return stats.to_dict()


async def run_agent_trader(ctx: JobContext) -> dict[str, Any]:
    agents = ctx.settings.agents
    if agents.encryption_key is None:
        return {"skipped": True, "reason": "AGENT_ENCRYPTION_KEY not configured"}
    executor = TradeQueueExecutor(
        ctx.db,
        swaps=ctx.swaps,
        vault=AgentKeyVault(agents.encryption_key.get_secret_value()),
        effects=ctx.effects,
        default_max_drawdown_pct=agents.default_max_drawdown_pct,
        slippage_bps=agents.slippage_bps,
        batch_limit=agents.batch_limit,
        retry_delay_seconds=agents.retry_delay_seconds,
        max_attempts=agents.max_attempts,
    )
    stats = await executor.run()
    return stats.to_dict()


async def run_order_monitor(ctx: JobContext) -> dict[str, Any]:
    monitor = OrderMonitor(
        ctx.db,
        cow=ctx.cow,
        settlement_decimals=ctx.settings.tokens.settlement_currency_decimals,
        effects=ctx.effects,
    )
    stats = await monitor.run()
    return stats.to_dict()


async def run_fee_harvester(ctx: JobContext) -> dict[str, Any]:
    settings = ctx.settings
    fees = settings.fee_harvester
    private_key = fees.private_key.get_secret_value() if fees.private_key else None
    claimer = None
    if private_key and fees.fee_locker_address and fees.lp_locker_address:
        claimer = LockerFeeClaimer(
            ctx.chain,
            fee_locker_address=fees.fee_locker_address,
            lp_locker_address=fees.lp_locker_address,
            private_key=private_key,
        )
    harvester = FeeHarvester(
        ctx.db,
        claimer=claimer,
        swaps=ctx.swaps,
        ledger=ctx.chain,
        enabled=fees.enabled,
        private_key=private_key,
        fee_recipient=fees.fee_recipient or settings.buyback.treasury_wallet,
        fee_token=settings.tokens.weth_address,
        settlement_token=settings.tokens.settlement_currency_address,
        min_swap_wei=fees.min_swap_wei,
        slippage_bps=fees.slippage_bps,
        effects=ctx.effects,
    )
    return await harvester.run()


async def run_buyback_executor(ctx: JobContext) -> dict[str, Any]:
    executor = BuybackExecutor.from_settings(ctx.settings, db=ctx.db, swaps=ctx.swaps, ledger=ctx.chain)
    return await executor.run()


async def run_sentiment_trader(ctx: JobContext) -> dict[str, Any]:
    trader = SentimentTrader.from_settings(
        ctx.settings,
        db=ctx.db,
        swaps=ctx.swaps,
        ledger=ctx.chain,
        effects=ctx.effects,
    )
    return await trader.run()


JOBS: dict[str, Callable[[JobContext], Awaitable[dict[str, Any]]]] = {
    JOB_AGENT_STRATEGY: run_agent_strategy,
    JOB_AGENT_TRADER: run_agent_trader,
    JOB_ORDER_MONITOR: run_order_monitor,
    JOB_FEE_HARVESTER: run_fee_harvester,
    JOB_BUYBACK_EXECUTOR: run_buyback_executor,
    JOB_SENTIMENT_TRADER: run_sentiment_trader,
}
JOB_NAMES = tuple(JOBS)


async def run_job(
    name: str,
    settings: Settings | None = None,
    *,
    context_factory: Callable[[Settings], JobContext] = JobContext.create,
) -> dict[str, Any]:
    """Run one job invocation end to end and return its JSON summary.

    Raises:
        UnknownJobError: If `name` is not a registered job.
    """
    job = JOBS.get(name)
    if job is None:
        raise UnknownJobError(name)

    settings = settings or get_settings()
    ctx = context_factory(settings)
    try:
        lock: JobLock | None = None
        if ctx.redis is not None:
            lock = JobLock(ctx.redis, ttl_seconds=settings.redis.lock_ttl_seconds)
            try:
                if not await lock.acquire(name):
                    logger.info("Job %s already running; skipping", name)
                    return {"skipped": True, "reason": "Job already running"}
            except Exception as e:
                logger.warning("Job lock unavailable for %s, running unlocked: %s", name, e)
                lock = None

        try:
            logger.info("Running job %s", name)
            return await job(ctx)
        finally:
            if lock is not None:
                try:
                    await lock.release(name)
                except Exception as e:
                    logger.warning("Failed to release job lock for %s: %s", name, e)
    finally:
        await ctx.aclose()
