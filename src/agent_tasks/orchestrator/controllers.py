"""Controllers for task queue CLI commands."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from agent_tasks.config import Settings
from agent_tasks.orchestrator.backend import CliAgentBackend
from agent_tasks.orchestrator.models import Priority, Task, TaskStatus, TerminalTaskRecord
from agent_tasks.orchestrator.notifications import WebhookNotifier, build_notifier
from agent_tasks.orchestrator.repository import open_repository
from agent_tasks.orchestrator.worker import TaskEngine

LIST_STATUSES = ("pending", "completed", "failed", "all")
_REQUIREMENT_PREVIEW_CHARS = 60


@dataclass(slots=True)
class AddTaskCommand:
    """CLI input for task creation."""

    data_dir: Path | None
    requirement: str
    completion_criteria: str | None
    max_retries: int | None
    priority: str
    working_directory: Path | None


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    data_dir: Path | None
    status: str = "pending"


@dataclass(slots=True)
class RunEngineCommand:
    """CLI input for engine execution."""

    data_dir: Path | None
    once: bool
    parallel: bool | None = None
    max_parallel: int | None = None
    max_tasks: int | None = None
    exit_when_idle: bool = False
    quiet: bool = False


@dataclass(slots=True)
class TaskIdCommand:
    """CLI input for single-task operations."""

    data_dir: Path | None
    task_id: str


@dataclass(slots=True)
class DataDirCommand:
    """CLI input for store-wide maintenance."""

    data_dir: Path | None


@dataclass(slots=True)
class PruneCommand:
    """CLI input for retention pruning."""

    data_dir: Path | None
    days: int | None


class EchoOutputSink:
    """Prefixes each live agent line with its task id."""

    def __init__(self, echo: Callable[[str], None]) -> None:
        self._echo = echo

    def on_output_line(self, task_id: str, line: str) -> None:
        self._echo(f"[{task_id}] {line}")


class TaskCliController:
    """Coordinates queue, engine, and maintenance CLI operations."""

    def add_task(self, command: AddTaskCommand) -> list[str]:
        settings = Settings.from_env(data_dir=command.data_dir)
        max_retries = command.max_retries or settings.engine.default_max_retries
        working_directory = (command.working_directory or Path.cwd()).resolve()
        if not working_directory.is_dir():
            raise ValueError(f"Working directory does not exist: {working_directory}")
        with open_repository(settings.data_dir) as repository:
            task = repository.create_task(
                requirement=command.requirement,
                completion_criteria=command.completion_criteria,
                max_retries=max_retries,
                working_directory=working_directory,
                priority=Priority.parse(command.priority),
            )
        return [
            "Task created: "
            f"task_id={task.id} priority={task.priority.name.lower()} "
            f"max_retries={task.max_retries}",
            f"Working directory: {task.working_directory}",
        ]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        status = command.status.strip().lower()
        if status not in LIST_STATUSES:
            raise ValueError(f"Unknown status filter: {command.status!r}")
        settings = Settings.from_env(data_dir=command.data_dir)
        lines: list[str] = []
        with open_repository(settings.data_dir) as repository:
            if status in {"pending", "all"}:
                pending = repository.get_all_pending_tasks()
                lines.append(f"Pending tasks: {len(pending)}")
                lines.extend(_pending_line(task) for task in pending)
            if status in {"completed", "all"}:
                completed = repository.get_completed_tasks()
                lines.append(f"Completed tasks: {len(completed)}")
                lines.extend(_terminal_line(record) for record in completed)
            if status in {"failed", "all"}:
                failed = repository.get_failed_tasks()
                lines.append(f"Failed tasks: {len(failed)}")
                lines.extend(_terminal_line(record) for record in failed)
        return lines

    def run_engine(
        self,
        command: RunEngineCommand,
        *,
        echo: Callable[[str], None] | None = None,
    ) -> list[str]:
        """Recover orphans, prune old records, then drain the queue."""

        settings = Settings.from_env(data_dir=command.data_dir)
        if command.parallel is not None:
            settings.engine.parallel_execution = command.parallel
        if command.max_parallel is not None:
            settings.engine.max_parallel = command.max_parallel
        settings.validate()

        lines: list[str] = []
        notifier = build_notifier(settings)
        output_sink = None if command.quiet or echo is None else EchoOutputSink(echo)
        try:
            with open_repository(settings.data_dir) as repository:
                recovered = repository.cleanup_orphan_tasks()
                if recovered:
                    lines.append(f"Recovered orphan tasks: {recovered}")
                if settings.task_retention_days > 0:
                    pruned = repository.prune_terminal_tasks(
                        retention_days=settings.task_retention_days,
                    )
                    if pruned.completed or pruned.failed:
                        lines.append(
                            "Pruned terminal tasks: "
                            f"completed={pruned.completed} failed={pruned.failed}",
                        )

                engine = TaskEngine(
                    repository=repository,
                    backend=CliAgentBackend(),
                    settings=settings,
                    notifier=notifier,
                    output_sink=output_sink,
                )
                summary = (
                    engine.run_once()
                    if command.once
                    else engine.run(
                        max_tasks=command.max_tasks,
                        max_idle_polls=1 if command.exit_when_idle else None,
                    )
                )
        finally:
            if isinstance(notifier, WebhookNotifier):
                notifier.close()

        mode = "parallel" if settings.engine.parallel_execution and not command.once else "sequential"
        lines.append(
            f"Engine summary ({mode}): "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"timeouts={summary.timeouts} idle_polls={summary.idle_polls}",
        )
        return lines

    def cancel_task(self, command: TaskIdCommand) -> list[str]:
        """Cancel a pending task; running tasks belong to their engine process."""

        settings = Settings.from_env(data_dir=command.data_dir)
        with open_repository(settings.data_dir) as repository:
            task = repository.load_task(command.task_id)
            if task.status == TaskStatus.IN_PROGRESS:
                raise ValueError(
                    f"Task {task.id} is in progress; stop it from the engine running it "
                    "or run `cleanup` after that engine has exited.",
                )
            repository.cancel_task(task.id)
        return [f"Task cancelled: {command.task_id}"]

    def cleanup(self, command: DataDirCommand) -> list[str]:
        settings = Settings.from_env(data_dir=command.data_dir)
        with open_repository(settings.data_dir) as repository:
            recovered = repository.cleanup_orphan_tasks()
        return [f"Orphan tasks reset to ready: {recovered}"]

    def prune(self, command: PruneCommand) -> list[str]:
        settings = Settings.from_env(data_dir=command.data_dir)
        days = settings.task_retention_days if command.days is None else command.days
        if days < 0:
            raise ValueError("Retention days must be >= 0.")
        with open_repository(settings.data_dir) as repository:
            result = repository.prune_terminal_tasks(retention_days=days)
        lines = [
            f"Pruned terminal tasks older than {days} day(s): "
            f"completed={result.completed} failed={result.failed}",
        ]
        lines.extend(f"  kept unreadable record: {error}" for error in result.errors)
        return lines

    def reset(self, command: DataDirCommand) -> list[str]:
        settings = Settings.from_env(data_dir=command.data_dir)
        with open_repository(settings.data_dir) as repository:
            repository.reset_all_data()
        return [f"All task data removed from {settings.data_dir}"]


def _preview(text: str) -> str:
    flat = " ".join(text.split())
    if len(flat) <= _REQUIREMENT_PREVIEW_CHARS:
        return flat
    return f"{flat[: _REQUIREMENT_PREVIEW_CHARS - 3]}..."


def _pending_line(task: Task) -> str:
    return (
        f"  {task.id} status={task.status.value} priority={task.priority.name.lower()} "
        f"retry={task.current_retry}/{task.max_retries} "
        f"created={task.created_at.isoformat()} requirement={_preview(task.requirement)}"
    )


def _terminal_line(record: TerminalTaskRecord) -> str:
    return (
        f"  {record.id} retries={record.total_retries}/{record.max_retries} "
        f"{record.finished_key}={record.finished_at.isoformat()} "
        f"requirement={_preview(record.requirement)}"
    )
