"""Runtime configuration for the task queue and execution engine."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_DATA_DIR = ".agent-tasks"
DEFAULT_AGENT_ARGS = ("-p", "--dangerously-skip-permissions")


def _default_agent_command() -> str:
    return "claude.cmd" if os.name == "nt" else "claude"


@dataclass(slots=True)
class AgentSettings:
    """External agent CLI invocation."""

    command: str = field(default_factory=_default_agent_command)
    args: tuple[str, ...] = DEFAULT_AGENT_ARGS


@dataclass(slots=True)
class EngineSettings:
    """Execution engine settings."""

    default_max_retries: int = 15
    parallel_execution: bool = False
    max_parallel: int = 3
    task_timeout_minutes: float = 30
    poll_interval_seconds: float = 5.0
    cooldown_seconds: float = 2.0

    @property
    def task_timeout_seconds(self) -> float:
        return self.task_timeout_minutes * 60


@dataclass(slots=True)
class NotificationSettings:
    """Outbound task event notifications."""

    webhook_url: str | None = None
    timeout_seconds: float = 10.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    data_dir: Path = Path(DEFAULT_DATA_DIR)
    agent: AgentSettings = field(default_factory=AgentSettings)
    engine: EngineSettings = field(default_factory=EngineSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    task_retention_days: int = 30

    @classmethod
    def from_env(cls, data_dir: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            data_dir=data_dir or Path(os.getenv("AGENT_TASKS_DATA_DIR", DEFAULT_DATA_DIR)),
            agent=_agent_settings_from_env(),
            engine=EngineSettings(
                default_max_retries=int(os.getenv("AGENT_TASKS_DEFAULT_MAX_RETRIES", "15")),
                parallel_execution=_env_bool("AGENT_TASKS_PARALLEL_EXECUTION", default=False),
                max_parallel=int(os.getenv("AGENT_TASKS_MAX_PARALLEL", "3")),
                task_timeout_minutes=float(
                    os.getenv("AGENT_TASKS_TASK_TIMEOUT_MINUTES", "30"),
                ),
                poll_interval_seconds=float(
                    os.getenv("AGENT_TASKS_POLL_INTERVAL_SECONDS", "5.0"),
                ),
                cooldown_seconds=float(os.getenv("AGENT_TASKS_COOLDOWN_SECONDS", "2.0")),
            ),
            notifications=NotificationSettings(
                webhook_url=os.getenv("AGENT_TASKS_WEBHOOK_URL", "").strip() or None,
                timeout_seconds=float(
                    os.getenv("AGENT_TASKS_WEBHOOK_TIMEOUT_SECONDS", "10.0"),
                ),
            ),
            task_retention_days=int(os.getenv("AGENT_TASKS_TASK_RETENTION_DAYS", "30")),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if not self.agent.command.strip():
            raise ValueError("AGENT_TASKS_AGENT_COMMAND must not be empty.")
        if self.engine.default_max_retries < 1:
            raise ValueError("AGENT_TASKS_DEFAULT_MAX_RETRIES must be >= 1.")
        if self.engine.max_parallel < 1:
            raise ValueError("AGENT_TASKS_MAX_PARALLEL must be >= 1.")
        if self.engine.task_timeout_minutes <= 0:
            raise ValueError("AGENT_TASKS_TASK_TIMEOUT_MINUTES must be > 0.")
        if self.engine.poll_interval_seconds < 0:
            raise ValueError("AGENT_TASKS_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.engine.cooldown_seconds < 0:
            raise ValueError("AGENT_TASKS_COOLDOWN_SECONDS must be >= 0.")
        if self.task_retention_days < 0:
            raise ValueError("AGENT_TASKS_TASK_RETENTION_DAYS must be >= 0.")
        if self.notifications.timeout_seconds <= 0:
            raise ValueError("AGENT_TASKS_WEBHOOK_TIMEOUT_SECONDS must be > 0.")
        if self.notifications.webhook_url is not None:
            _validate_webhook_url(self.notifications.webhook_url)


def _agent_settings_from_env() -> AgentSettings:
    raw_command = os.getenv("AGENT_TASKS_AGENT_COMMAND", "").strip()
    raw_args = os.getenv("AGENT_TASKS_AGENT_ARGS")
    command_tokens = shlex.split(raw_command) if raw_command else [_default_agent_command()]
    if raw_args is None:
        extra_args: tuple[str, ...] = DEFAULT_AGENT_ARGS
    else:
        extra_args = tuple(shlex.split(raw_args))
    return AgentSettings(
        command=command_tokens[0],
        args=(*command_tokens[1:], *extra_args),
    )


def _validate_webhook_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid AGENT_TASKS_WEBHOOK_URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
