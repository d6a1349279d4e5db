"""Agent lifecycle and delegated signing keys."""

from cow_flywheel.agents.keys import AgentKeyError, AgentKeyVault, AgentWallet
from cow_flywheel.agents.lifecycle import (
    AgentLifecycle,
    AgentTransitionError,
    drawdown_breached,
)

__all__ = [
    "AgentKeyError",
    "AgentKeyVault",
    "AgentLifecycle",
    "AgentTransitionError",
    "AgentWallet",
    "drawdown_breached",
]
