"""Domain models for the task queue and execution engine."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum, IntEnum
from typing import Any


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def to_iso(value: datetime | None) -> str | None:
    """Serialize timestamp for JSON documents."""

    if value is None:
        return None
    return value.isoformat()


def from_iso(value: str) -> datetime:
    """Parse ISO datetime and ensure timezone-aware UTC fallback."""

    text = value.strip()
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


class TaskStatus(str, Enum):
    """States of a task while it lives in the pending store."""

    READY = "ready"
    IN_PROGRESS = "inProgress"


class Priority(IntEnum):
    """Task priority; higher value is picked first."""

    LOW = 1
    NORMAL = 2
    HIGH = 3
    URGENT = 4

    @classmethod
    def parse(cls, value: str | int) -> Priority:
        """Accept either the numeric value or the lowercase name."""

        if isinstance(value, int):
            return cls(value)
        text = value.strip()
        if text.isdigit():
            return cls(int(text))
        try:
            return cls[text.upper()]
        except KeyError as error:
            raise ValueError(f"Unknown priority: {value!r}") from error


class TaskOutcome(str, Enum):
    """Result of one pass through the per-task pipeline."""

    COMPLETED = "completed"
    RETRYING = "retrying"
    FAILED = "failed"


@dataclass(slots=True)
class Task:
    """One queued unit of work."""

    id: str
    requirement: str
    completion_criteria: str | None
    max_retries: int
    current_retry: int
    status: TaskStatus
    priority: Priority
    created_at: datetime
    started_at: datetime | None
    working_directory: str

    @property
    def strict_mode(self) -> bool:
        """Retryable tasks must signal completion explicitly."""

        return self.max_retries > 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "requirement": self.requirement,
            "completionCriteria": self.completion_criteria,
            "maxRetries": self.max_retries,
            "currentRetry": self.current_retry,
            "status": self.status.value,
            "priority": int(self.priority),
            "createdAt": to_iso(self.created_at),
            "startedAt": to_iso(self.started_at),
            "workingDirectory": self.working_directory,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Task:
        """Deserialize and validate a task record."""

        task_id = raw.get("id")
        requirement = raw.get("requirement")
        criteria = raw.get("completionCriteria")
        max_retries = raw.get("maxRetries")
        current_retry = raw.get("currentRetry", 0)
        created_at = raw.get("createdAt")
        started_at = raw.get("startedAt")
        working_directory = raw.get("workingDirectory", "")
        if not isinstance(task_id, str) or not task_id.strip():
            raise ValueError("task.id must be a non-empty string")
        if not isinstance(requirement, str):
            raise TypeError("task.requirement must be a string")
        if criteria is not None and not isinstance(criteria, str):
            raise TypeError("task.completionCriteria must be a string when provided")
        if not isinstance(max_retries, int) or max_retries < 1:
            raise ValueError("task.maxRetries must be an integer >= 1")
        if not isinstance(current_retry, int) or not 0 <= current_retry <= max_retries:
            raise ValueError("task.currentRetry must be an integer in [0, maxRetries]")
        if not isinstance(created_at, str):
            raise TypeError("task.createdAt must be a string")
        if started_at is not None and not isinstance(started_at, str):
            raise TypeError("task.startedAt must be a string when provided")
        if not isinstance(working_directory, str):
            raise TypeError("task.workingDirectory must be a string")

        return cls(
            id=task_id,
            requirement=requirement,
            completion_criteria=criteria or None,
            max_retries=max_retries,
            current_retry=current_retry,
            status=TaskStatus(raw.get("status", TaskStatus.READY.value)),
            priority=Priority(int(raw.get("priority", Priority.NORMAL))),
            created_at=from_iso(created_at),
            started_at=from_iso(started_at) if started_at else None,
            working_directory=working_directory,
        )


@dataclass(slots=True)
class TerminalTaskRecord:
    """Immutable snapshot written once a task completes or fails."""

    id: str
    requirement: str
    completion_criteria: str | None
    max_retries: int
    total_retries: int
    created_at: datetime
    started_at: datetime | None
    finished_at: datetime
    summary: str
    succeeded: bool

    @property
    def finished_key(self) -> str:
        return "completedAt" if self.succeeded else "failedAt"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "requirement": self.requirement,
            "completionCriteria": self.completion_criteria,
            "maxRetries": self.max_retries,
            "totalRetries": self.total_retries,
            "createdAt": to_iso(self.created_at),
            "startedAt": to_iso(self.started_at),
            self.finished_key: to_iso(self.finished_at),
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any], *, succeeded: bool) -> TerminalTaskRecord:
        finished_key = "completedAt" if succeeded else "failedAt"
        finished_at = raw.get(finished_key)
        created_at = raw.get("createdAt")
        started_at = raw.get("startedAt")
        if not isinstance(finished_at, str):
            raise TypeError(f"record.{finished_key} must be a string")
        if not isinstance(created_at, str):
            raise TypeError("record.createdAt must be a string")
        return cls(
            id=str(raw["id"]),
            requirement=str(raw.get("requirement", "")),
            completion_criteria=raw.get("completionCriteria") or None,
            max_retries=int(raw.get("maxRetries", 1)),
            total_retries=int(raw.get("totalRetries", 0)),
            created_at=from_iso(created_at),
            started_at=from_iso(started_at) if isinstance(started_at, str) else None,
            finished_at=from_iso(finished_at),
            summary=str(raw.get("summary", "")),
            succeeded=succeeded,
        )


@dataclass(slots=True)
class IndexEntry:
    """Lightweight projection kept in the pending index."""

    id: str
    file: str
    status: TaskStatus
    priority: Priority
    created_at: datetime

    def sort_key(self) -> tuple[int, datetime, str]:
        """Higher priority first, then older, then id."""

        return (-int(self.priority), self.created_at, self.id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "file": self.file,
            "status": self.status.value,
            "priority": int(self.priority),
            "createdAt": to_iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> IndexEntry:
        task_id = raw.get("id")
        created_at = raw.get("createdAt")
        if not isinstance(task_id, str) or not task_id:
            raise ValueError("index entry id must be a non-empty string")
        if not isinstance(created_at, str):
            raise TypeError("index entry createdAt must be a string")
        return cls(
            id=task_id,
            file=str(raw.get("file", f"tasks/{task_id}.json")),
            status=TaskStatus(raw.get("status", TaskStatus.READY.value)),
            priority=Priority(int(raw.get("priority") or Priority.NORMAL)),
            created_at=from_iso(created_at),
        )


@dataclass(slots=True)
class RetryDecision:
    """Outcome of incrementing a task's retry counter."""

    task: Task
    can_retry: bool


@dataclass(slots=True)
class PruneResult:
    """Counters for retention pruning of terminal stores."""

    completed: int = 0
    failed: int = 0
    errors: tuple[str, ...] = ()
