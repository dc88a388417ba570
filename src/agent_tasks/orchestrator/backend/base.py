"""Backend interface for agent task execution."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to execute one task attempt."""

    run_id: str
    command: str
    args: tuple[str, ...]
    cwd: Path
    stdin_payload: str
    timeout_seconds: float
    on_output: Callable[[str], None] | None = None
    cancel_requested: Callable[[], bool] | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class AgentRunResult:
    """Execution outcome from the backend runner."""

    exit_code: int
    output: str
    duration_seconds: float


class AgentBackend(Protocol):
    """Protocol implemented by backend runners."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        """Run a task attempt and return its exit code and combined output."""

    def cancel(self, run_id: str) -> bool:
        """Terminate an in-flight run; return False when nothing is running."""
