"""Command line entry point.

    cow-flywheel run <job>            run one job invocation, print its summary
    cow-flywheel serve                start the scheduler trigger HTTP surface
    cow-flywheel init-db              create the schema (local runs; use alembic otherwise)
    cow-flywheel agent <action> ...   create agents and apply lifecycle actions
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from collections.abc import Iterable
from decimal import Decimal, InvalidOperation
from typing import Any

from cow_flywheel.agents.keys import AgentKeyVault
from cow_flywheel.agents.lifecycle import AgentLifecycle, AgentTransitionError
from cow_flywheel.config import Settings, get_settings
from cow_flywheel.jobs import JOB_NAMES, run_job
from cow_flywheel.storage.database import DatabaseManager
from cow_flywheel.storage.repos import AgentDTO, AgentRepository
from cow_flywheel.strategy.signals import STRATEGIES

logger = logging.getLogger("cow_flywheel")

LIFECYCLE_ACTIONS = ("activate", "pause", "resume", "stop")


def _setup_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for noisy in ("httpx", "httpcore", "web3", "aiosqlite"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def _decimal(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation as e:
        raise argparse.ArgumentTypeError(f"not a number: {value!r}") from e


def _print(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _agent_summary(agent: AgentDTO) -> dict[str, Any]:
    return {
        "id": agent.id,
        "strategy": agent.strategy_id,
        "status": agent.status,
        "tradingEnabled": agent.trading_enabled,
        "allocatedBudget": agent.allocated_budget,
        "remainingBudget": agent.remaining_budget,
        "wallet": agent.agent_wallet_address,
    }


def _run_command(args: argparse.Namespace, settings: Settings) -> int:
    summary = asyncio.run(run_job(args.job, settings))
    _print(summary)
    return 0


def _serve_command(args: argparse.Namespace, settings: Settings) -> int:
    import uvicorn

    from cow_flywheel.api import create_app

    uvicorn.run(
        create_app(settings),
        host=args.host or settings.host,
        port=args.port or settings.port,
        log_level=settings.log_level.lower(),
    )
    return 0


def _init_db_command(args: argparse.Namespace, settings: Settings) -> int:
    async def _init() -> None:
        db = DatabaseManager(settings.database.url)
        try:
            await db.init_schema_async()
        finally:
            await db.dispose_async()

    asyncio.run(_init())
    logger.info("Schema created")
    return 0


async def _agent_action(args: argparse.Namespace, settings: Settings) -> AgentDTO:
    db = DatabaseManager(settings.database.url)
    try:
        async with db.get_async_session() as session:
            if args.action == "create":
                if settings.agents.encryption_key is None:
                    raise AgentTransitionError("AGENT_ENCRYPTION_KEY is required to create agents")
                wallet = AgentKeyVault(settings.agents.encryption_key.get_secret_value()).generate_wallet()
                return await AgentRepository(session).create(
                    owner_address=args.owner,
                    strategy_id=args.strategy,
                    name=args.name,
                    max_drawdown_pct=args.max_drawdown_pct,
                    max_position_size_pct=args.max_position_size_pct,
                    agent_wallet_address=wallet.address,
                    agent_wallet_encrypted=wallet.encrypted_key,
                )
            lifecycle = AgentLifecycle(session)
            if args.action == "fund":
                return await lifecycle.fund(args.agent_id, args.amount)
            action = getattr(lifecycle, args.action)
            result: AgentDTO = await action(args.agent_id)
            return result
    finally:
        await db.dispose_async()


def _agent_command(args: argparse.Namespace, settings: Settings) -> int:
    try:
        agent = asyncio.run(_agent_action(args, settings))
    except (AgentTransitionError, ValueError) as e:
        logger.error("%s", e)
        return 1
    _print(_agent_summary(agent))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cow-flywheel",
        description="Agent trading and treasury flywheel jobs over the CoW settlement protocol",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run one job invocation")
    run.add_argument("job", choices=JOB_NAMES)
    run.set_defaults(func=_run_command)

    serve = sub.add_parser("serve", help="Serve the scheduler trigger endpoints")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)
    serve.set_defaults(func=_serve_command)

    init_db = sub.add_parser("init-db", help="Create database tables")
    init_db.set_defaults(func=_init_db_command)

    agent = sub.add_parser("agent", help="Create agents and apply lifecycle actions")
    actions = agent.add_subparsers(dest="action", required=True)

    create = actions.add_parser("create", help="Create an agent with a fresh delegated wallet")
    create.add_argument("--owner", required=True, help="Owner wallet address")
    create.add_argument("--strategy", required=True, choices=STRATEGIES)
    create.add_argument("--name", default=None)
    create.add_argument("--max-drawdown-pct", type=_decimal, default=None)
    create.add_argument("--max-position-size-pct", type=_decimal, default=None)

    fund = actions.add_parser("fund", help="Add budget to an agent")
    fund.add_argument("agent_id")
    fund.add_argument("amount", type=_decimal, help="Amount in the settlement currency")

    for name in LIFECYCLE_ACTIONS:
        action = actions.add_parser(name, help=f"{name.capitalize()} an agent")
        action.add_argument("agent_id")

    agent.set_defaults(func=_agent_command)
    return parser


def cli(argv: Iterable[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    settings = get_settings()
    _setup_logging(settings)
    return int(args.func(args, settings))


def main() -> None:
    raise SystemExit(cli())


if __name__ == "__main__":
    main()
