"""Agent backend implementations."""

from agent_tasks.orchestrator.backend.base import AgentBackend, AgentRunRequest, AgentRunResult
from agent_tasks.orchestrator.backend.cli_backend import (
    BackendRunError,
    CliAgentBackend,
    ProcessCancelledError,
    ProcessSpawnError,
    ProcessTimeoutError,
    describe_exit_code,
)

__all__ = [
    "AgentBackend",
    "AgentRunRequest",
    "AgentRunResult",
    "BackendRunError",
    "CliAgentBackend",
    "ProcessCancelledError",
    "ProcessSpawnError",
    "ProcessTimeoutError",
    "describe_exit_code",
]
