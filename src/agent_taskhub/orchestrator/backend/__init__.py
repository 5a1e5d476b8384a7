"""Agent backend implementations."""

from agent_taskhub.orchestrator.backend.base import (
    AgentBackend,
    AgentExit,
    AgentLaunchRequest,
    AgentSession,
    AgentSink,
)
from agent_taskhub.orchestrator.backend.cli_backend import (
    BackendRunError,
    CliAgentBackend,
    CliAgentSession,
)

__all__ = [
    "AgentBackend",
    "AgentExit",
    "AgentLaunchRequest",
    "AgentSession",
    "AgentSink",
    "BackendRunError",
    "CliAgentBackend",
    "CliAgentSession",
]
