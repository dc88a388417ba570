"""CLI entrypoint for agent-tasks."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from agent_tasks import __version__
from agent_tasks.orchestrator.controllers import (
    LIST_STATUSES,
    AddTaskCommand,
    DataDirCommand,
    ListTasksCommand,
    PruneCommand,
    RunEngineCommand,
    TaskCliController,
    TaskIdCommand,
)
from agent_tasks.orchestrator.models import Priority
from agent_tasks.orchestrator.repository import TaskNotFoundError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TaskCliController()
PRIORITY_CHOICES = [priority.name.lower() for priority in Priority]
DATA_DIR_HELP = "Task store directory (defaults to AGENT_TASKS_DATA_DIR or ./.agent-tasks)."


@click.group()
@click.version_option(version=__version__, prog_name="agent-tasks")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def agent_tasks(verbose: bool) -> None:
    """Priority task queue for a CLI coding agent."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_tasks.command("add")
@click.argument("requirement")
@click.option("--data-dir", type=click.Path(path_type=Path), default=None, help=DATA_DIR_HELP)
@click.option("--criteria", default=None, help="Completion criteria the agent must verify.")
@click.option(
    "--max-retries",
    type=click.IntRange(min=1),
    default=None,
    help="Total attempts allowed (defaults to AGENT_TASKS_DEFAULT_MAX_RETRIES).",
)
@click.option(
    "--priority",
    type=click.Choice(PRIORITY_CHOICES, case_sensitive=False),
    default="normal",
    show_default=True,
    help="Higher priority tasks run first.",
)
@click.option(
    "--workdir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory the agent runs in (defaults to the current directory).",
)
def add_task(  # noqa: PLR0913
    requirement: str,
    data_dir: Path | None,
    criteria: str | None,
    max_retries: int | None,
    priority: str,
    workdir: Path | None,
) -> None:
    """Queue a new task for the agent."""

    with _domain_errors():
        lines = CONTROLLER.add_task(
            AddTaskCommand(
                data_dir=data_dir,
                requirement=requirement,
                completion_criteria=criteria,
                max_retries=max_retries,
                priority=priority,
                working_directory=workdir,
            ),
        )
    _emit_lines(lines)


@agent_tasks.command("list")
@click.option("--data-dir", type=click.Path(path_type=Path), default=None, help=DATA_DIR_HELP)
@click.option(
    "--status",
    type=click.Choice(LIST_STATUSES, case_sensitive=False),
    default="pending",
    show_default=True,
    help="Which store to list.",
)
def list_tasks(data_dir: Path | None, status: str) -> None:
    """List pending, completed or failed tasks."""

    with _domain_errors():
        lines = CONTROLLER.list_tasks(ListTasksCommand(data_dir=data_dir, status=status))
    _emit_lines(lines)


@agent_tasks.command("run")
@click.option("--data-dir", type=click.Path(path_type=Path), default=None, help=DATA_DIR_HELP)
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run a single task attempt or keep polling the queue.",
)
@click.option(
    "--parallel/--sequential",
    default=None,
    help="Override AGENT_TASKS_PARALLEL_EXECUTION.",
)
@click.option(
    "--max-parallel",
    type=click.IntRange(min=1),
    default=None,
    help="Override AGENT_TASKS_MAX_PARALLEL.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed tasks in loop mode.",
)
@click.option(
    "--exit-when-idle",
    is_flag=True,
    default=False,
    help="Exit once the queue is empty instead of polling.",
)
@click.option("--quiet", "-q", is_flag=True, default=False, help="Do not echo agent output.")
def run_engine(  # noqa: PLR0913
    data_dir: Path | None,
    once: bool,
    parallel: bool | None,
    max_parallel: int | None,
    max_tasks: int | None,
    exit_when_idle: bool,
    quiet: bool,
) -> None:
    """Run the execution engine over the queue."""

    with _domain_errors():
        lines = CONTROLLER.run_engine(
            RunEngineCommand(
                data_dir=data_dir,
                once=once,
                parallel=parallel,
                max_parallel=max_parallel,
                max_tasks=max_tasks,
                exit_when_idle=exit_when_idle,
                quiet=quiet,
            ),
            echo=click.echo,
        )
    _emit_lines(lines)


@agent_tasks.command("cancel")
@click.argument("task_id")
@click.option("--data-dir", type=click.Path(path_type=Path), default=None, help=DATA_DIR_HELP)
def cancel_task(task_id: str, data_dir: Path | None) -> None:
    """Cancel a pending task."""

    with _domain_errors():
        lines = CONTROLLER.cancel_task(TaskIdCommand(data_dir=data_dir, task_id=task_id))
    _emit_lines(lines)


@agent_tasks.command("cleanup")
@click.option("--data-dir", type=click.Path(path_type=Path), default=None, help=DATA_DIR_HELP)
def cleanup(data_dir: Path | None) -> None:
    """Reset tasks left in progress by a crashed engine."""

    with _domain_errors():
        lines = CONTROLLER.cleanup(DataDirCommand(data_dir=data_dir))
    _emit_lines(lines)


@agent_tasks.command("prune")
@click.option("--data-dir", type=click.Path(path_type=Path), default=None, help=DATA_DIR_HELP)
@click.option(
    "--days",
    type=click.IntRange(min=0),
    default=None,
    help="Retention window (defaults to AGENT_TASKS_TASK_RETENTION_DAYS).",
)
def prune(data_dir: Path | None, days: int | None) -> None:
    """Delete completed and failed records older than the retention window."""

    with _domain_errors():
        lines = CONTROLLER.prune(PruneCommand(data_dir=data_dir, days=days))
    _emit_lines(lines)


@agent_tasks.command("reset")
@click.option("--data-dir", type=click.Path(path_type=Path), default=None, help=DATA_DIR_HELP)
@click.option("--yes", is_flag=True, default=False, help="Do not ask for confirmation.")
def reset(data_dir: Path | None, yes: bool) -> None:
    """Delete every pending, completed and failed task."""

    if not yes:
        click.confirm("This deletes all task data. Continue?", abort=True)
    with _domain_errors():
        lines = CONTROLLER.reset(DataDirCommand(data_dir=data_dir))
    _emit_lines(lines)


@contextmanager
def _domain_errors() -> Iterator[None]:
    try:
        yield
    except TaskNotFoundError as error:
        raise click.ClickException(str(error)) from error
    except ValueError as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_tasks()
