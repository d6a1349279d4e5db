"""Agent lifecycle transitions and the drawdown circuit breaker.

An agent's status only changes through an explicit action or the
automatic drawdown pause:

    deploying --activate--> active <--resume-- paused
                              |                 ^
                              +------pause------+
                              +---auto_pause----+
    {deploying, active, paused, error} --stop--> stopped
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import TYPE_CHECKING

from cow_flywheel.storage.repos import AgentDTO, AgentRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

STATUS_DEPLOYING = "deploying"
STATUS_ACTIVE = "active"
STATUS_PAUSED = "paused"
STATUS_STOPPED = "stopped"
STATUS_ERROR = "error"

# action -> (allowed source statuses, target status, trading_enabled after)
TRANSITIONS: dict[str, tuple[tuple[str, ...], str, bool]] = {
    "activate": ((STATUS_DEPLOYING,), STATUS_ACTIVE, True),
    "pause": ((STATUS_ACTIVE,), STATUS_PAUSED, False),
    "resume": ((STATUS_PAUSED,), STATUS_ACTIVE, True),
    "stop": ((STATUS_DEPLOYING, STATUS_ACTIVE, STATUS_PAUSED, STATUS_ERROR), STATUS_STOPPED, False),
    "auto_pause": ((STATUS_ACTIVE,), STATUS_PAUSED, False),
}

FUNDABLE_STATUSES = (STATUS_DEPLOYING, STATUS_ACTIVE, STATUS_PAUSED)


class AgentTransitionError(Exception):
    """Raised when a lifecycle action is not allowed from the agent's status."""


def drawdown_breached(agent: AgentDTO, *, default_max_drawdown_pct: Decimal) -> bool:
    """Whether the agent's |P&L %| exceeds its maximum drawdown."""
    limit = agent.max_drawdown_pct if agent.max_drawdown_pct else default_max_drawdown_pct
    return abs(agent.pnl_pct) > limit


class AgentLifecycle:
    """Applies lifecycle actions to persisted agents."""

    def __init__(self, session: AsyncSession) -> None:
        self._agents = AgentRepository(session)

    async def _require(self, agent_id: str) -> AgentDTO:
        agent = await self._agents.get(agent_id)
        if agent is None:
            raise AgentTransitionError(f"Agent {agent_id} not found")
        return agent

    async def _transition(self, agent_id: str, action: str) -> AgentDTO:
        sources, target, trading_enabled = TRANSITIONS[action]
        agent = await self._require(agent_id)
        if agent.status not in sources:
            raise AgentTransitionError(f"Cannot {action} agent {agent_id} in status {agent.status!r}")
        updated = await self._agents.set_status(
            agent_id,
            status=target,
            expected=sources,
            trading_enabled=trading_enabled,
        )
        if not updated:
            raise AgentTransitionError(f"Agent {agent_id} changed status during {action}")
        logger.info("Agent %s: %s -> %s (%s)", agent_id, agent.status, target, action)
        return await self._require(agent_id)

    async def fund(self, agent_id: str, amount: Decimal) -> AgentDTO:
        """Add budget to an agent; raises allocated and remaining equally."""
        if amount <= 0:
            raise ValueError("Funding amount must be positive")
        agent = await self._require(agent_id)
        if agent.status not in FUNDABLE_STATUSES:
            raise AgentTransitionError(f"Cannot fund agent {agent_id} in status {agent.status!r}")
        funded = await self._agents.add_budget(agent_id, amount)
        if funded is None:
            raise AgentTransitionError(f"Agent {agent_id} not found")
        logger.info("Agent %s funded with %s (remaining=%s)", agent_id, amount, funded.remaining_budget)
        return funded

    async def activate(self, agent_id: str) -> AgentDTO:
        """Start trading; the agent must have been funded."""
        agent = await self._require(agent_id)
        if agent.allocated_budget <= 0:
            raise AgentTransitionError(f"Agent {agent_id} must be funded before activation")
        return await self._transition(agent_id, "activate")

    async def pause(self, agent_id: str) -> AgentDTO:
        return await self._transition(agent_id, "pause")

    async def resume(self, agent_id: str) -> AgentDTO:
        return await self._transition(agent_id, "resume")

    async def stop(self, agent_id: str) -> AgentDTO:
        return await self._transition(agent_id, "stop")

    async def auto_pause(self, agent_id: str, *, reason: str) -> bool:
        """Pause an active agent after a risk breach.

        Returns:
            True if this call paused the agent.
        """
        sources, target, trading_enabled = TRANSITIONS["auto_pause"]
        paused = await self._agents.set_status(
            agent_id,
            status=target,
            expected=sources,
            trading_enabled=trading_enabled,
        )
        if paused:
            logger.info("Agent %s auto-paused: %s", agent_id, reason)
        return paused
