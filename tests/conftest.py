"""Shared test fixtures."""

from __future__ import annotations

import itertools
import os
import sys
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from agent_tasks.config import AgentSettings, EngineSettings, Settings
from agent_tasks.orchestrator.repository import TaskRepository

SRC_DIR = Path(__file__).resolve().parents[1] / "src"
ECHO_AGENT_MODULE = "agent_tasks.orchestrator.backend.echo_agent"


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Drop ambient AGENT_TASKS_* variables; let agent subprocesses import the package."""

    for name in list(os.environ):
        if name.startswith("AGENT_TASKS_"):
            monkeypatch.delenv(name)
    existing = os.environ.get("PYTHONPATH")
    monkeypatch.setenv(
        "PYTHONPATH",
        os.pathsep.join(part for part in (str(SRC_DIR), existing) if part),
    )


@pytest.fixture()
def repository(tmp_path) -> TaskRepository:
    repository = TaskRepository(tmp_path / "store")
    repository.init_store()
    return repository


@pytest.fixture()
def clock(monkeypatch) -> datetime:
    """Repository timestamps advance one second per call, starting at the returned value."""

    start = datetime(2026, 1, 15, 9, 30, tzinfo=UTC)
    ticks = itertools.count()
    monkeypatch.setattr(
        "agent_tasks.orchestrator.repository.utc_now",
        lambda: start + timedelta(seconds=next(ticks)),
    )
    return start


@pytest.fixture()
def echo_agent_args() -> Callable[..., tuple[str, ...]]:
    def _args(*extra: str) -> tuple[str, ...]:
        return ("-m", ECHO_AGENT_MODULE, *extra)

    return _args


@pytest.fixture()
def make_settings(tmp_path) -> Callable[..., Settings]:
    """Settings pointing at the temp store with zero poll and cooldown delays."""

    def _make(
        *,
        agent_args: tuple[str, ...] = (),
        parallel: bool = False,
        max_parallel: int = 2,
        poll_interval_seconds: float = 0.0,
    ) -> Settings:
        return Settings(
            data_dir=tmp_path / "store",
            agent=AgentSettings(command=sys.executable, args=agent_args),
            engine=EngineSettings(
                parallel_execution=parallel,
                max_parallel=max_parallel,
                task_timeout_minutes=1,
                poll_interval_seconds=poll_interval_seconds,
                cooldown_seconds=0.0,
            ),
        )

    return _make
