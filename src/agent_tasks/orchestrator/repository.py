"""Persistent file-backed task store with pending/completed/failed indexes."""

from __future__ import annotations

import logging
import random
import re
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from agent_tasks.orchestrator.atomic import load_json, write_json_atomic
from agent_tasks.orchestrator.models import (
    IndexEntry,
    Priority,
    PruneResult,
    RetryDecision,
    Task,
    TaskStatus,
    TerminalTaskRecord,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)

SUMMARY_MAX_CHARS = 2000
CANCELLED_REASON = "Cancelled by user"

_PENDING_INDEX = "tasks.json"
_COMPLETED_INDEX = "completed.json"
_FAILED_INDEX = "failed.json"
_TASKS_DIR = "tasks"
_COMPLETED_DIR = "completed"
_FAILED_DIR = "failed"
_ID_ATTEMPTS = 20
TASK_ID_PATTERN = re.compile(r"^\d{8}-\d{6}-\d{3}-\d{3}$")


class TaskNotFoundError(LookupError):
    """Raised when a task record does not exist in the pending store."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class CorruptTaskError(ValueError):
    """Raised when a pending task file cannot be parsed or fails validation."""

    def __init__(self, task_id: str, reason: Exception) -> None:
        super().__init__(f"Unreadable task record {task_id}: {reason}")
        self.task_id = task_id
        self.reason = reason


class TaskRepository:
    """Queue persistence facade over a directory of JSON documents.

    The repository is the only component that touches the store. Every write
    goes through :func:`write_json_atomic`; index read-modify-write cycles are
    serialized with one lock per index document.
    """

    def __init__(self, data_dir: Path) -> None:
        self.data_dir = data_dir
        self._pending_lock = threading.RLock()
        self._completed_lock = threading.RLock()
        self._failed_lock = threading.RLock()
        self._random = random.Random()  # noqa: S311

    def init_store(self) -> None:
        """Create directories and empty indexes when missing."""

        for name in (_TASKS_DIR, _COMPLETED_DIR, _FAILED_DIR):
            (self.data_dir / name).mkdir(parents=True, exist_ok=True)
        with self._pending_lock:
            if not self._path(_PENDING_INDEX).exists():
                self._save_pending_index([])
        for index_name, lock in (
            (_COMPLETED_INDEX, self._completed_lock),
            (_FAILED_INDEX, self._failed_lock),
        ):
            with lock:
                if not self._path(index_name).exists():
                    write_json_atomic(self._path(index_name), {"tasks": []})

    def create_task(  # noqa: PLR0913
        self,
        *,
        requirement: str,
        completion_criteria: str | None,
        max_retries: int,
        working_directory: str | Path,
        priority: Priority = Priority.NORMAL,
    ) -> Task:
        """Create a ready task and append it to the pending index."""

        if not requirement.strip():
            raise ValueError("Task requirement must be a non-empty string.")
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1.")

        with self._pending_lock:
            now = utc_now()
            task = Task(
                id=self._generate_task_id(now),
                requirement=requirement,
                completion_criteria=(completion_criteria or "").strip() or None,
                max_retries=max_retries,
                current_retry=0,
                status=TaskStatus.READY,
                priority=Priority(priority),
                created_at=now,
                started_at=None,
                working_directory=str(working_directory),
            )
            self._save_task(task)
            entries = self._load_pending_index()
            entries.append(
                IndexEntry(
                    id=task.id,
                    file=f"{_TASKS_DIR}/{task.id}.json",
                    status=TaskStatus.READY,
                    priority=task.priority,
                    created_at=now,
                ),
            )
            self._save_pending_index(entries)
        logger.info("Task created: %s priority=%s", task.id, task.priority.name.lower())
        return task

    def load_task(self, task_id: str) -> Task:
        """Load one pending task record.

        Raises:
            TaskNotFoundError: No task file exists for ``task_id``.
            CorruptTaskError: The file is not valid JSON or not a valid task.
            ValueError: ``task_id`` is not a well-formed task id.
        """

        path = self._task_path(task_id)
        try:
            return Task.from_dict(load_json(path))
        except FileNotFoundError as error:
            raise TaskNotFoundError(task_id) from error
        except (OSError, TypeError, ValueError, KeyError) as error:
            raise CorruptTaskError(task_id, error) from error

    def get_next_task(self) -> Task | None:
        """Return the task that would run next, without claiming it."""

        tasks = self.get_next_tasks(1)
        return tasks[0] if tasks else None

    def get_next_tasks(self, limit: int = 1) -> list[Task]:
        """Return up to ``limit`` ready tasks in selection order."""

        if limit <= 0:
            return []
        with self._pending_lock:
            entries = self._load_pending_index()
        ready = sorted(
            (entry for entry in entries if entry.status == TaskStatus.READY),
            key=IndexEntry.sort_key,
        )

        selected: list[Task] = []
        seen: set[str] = set()
        for entry in ready:
            if entry.id in seen:
                continue
            seen.add(entry.id)
            if not TASK_ID_PATTERN.match(entry.id):
                logger.warning("Store inconsistency: malformed task id in index: %r", entry.id)
                continue
            try:
                selected.append(self.load_task(entry.id))
            except TaskNotFoundError:
                logger.warning("Store inconsistency: task file missing for %s", entry.id)
                continue
            except CorruptTaskError as error:
                self._quarantine(entry, error)
                self._remove_from_pending(entry.id)
                continue
            if len(selected) >= limit:
                break
        return selected

    def start_task(self, task_id: str) -> Task:
        """Mark task in progress; task file first, then the index entry."""

        with self._pending_lock:
            task = self.load_task(task_id)
            task.status = TaskStatus.IN_PROGRESS
            task.started_at = utc_now()
            self._save_task(task)
            self._set_index_status(task_id, TaskStatus.IN_PROGRESS)
        return task

    def increment_retry(self, task_id: str) -> RetryDecision:
        """Count one failed attempt and re-queue the task if attempts remain."""

        with self._pending_lock:
            task = self.load_task(task_id)
            task.current_retry = min(task.current_retry + 1, task.max_retries)
            can_retry = task.current_retry < task.max_retries
            if can_retry:
                task.status = TaskStatus.READY
                task.started_at = None
                self._save_task(task)
                self._set_index_status(task_id, TaskStatus.READY)
            else:
                self._save_task(task)
        return RetryDecision(task=task, can_retry=can_retry)

    def complete_task(self, task_id: str, summary: str) -> TerminalTaskRecord:
        """Move task into the completed store."""

        return self._finalize(task_id, summary=summary, succeeded=True)

    def fail_task(self, task_id: str, summary: str) -> TerminalTaskRecord:
        """Move task into the failed store."""

        return self._finalize(task_id, summary=summary, succeeded=False)

    def cancel_task(self, task_id: str) -> TerminalTaskRecord:
        """Fail a pending task on operator request."""

        return self.fail_task(task_id, CANCELLED_REASON)

    def get_all_pending_tasks(self) -> list[Task]:
        """Materialize every pending task; missing or unreadable files are skipped."""

        with self._pending_lock:
            entries = self._load_pending_index()
        tasks: list[Task] = []
        for entry in entries:
            try:
                tasks.append(self.load_task(entry.id))
            except TaskNotFoundError:
                logger.warning("Store inconsistency: task file missing for %s", entry.id)
            except CorruptTaskError as error:
                logger.warning("Store inconsistency: %s", error)
        return tasks

    def get_completed_tasks(self) -> list[TerminalTaskRecord]:
        return self._load_terminal_records(succeeded=True)

    def get_failed_tasks(self) -> list[TerminalTaskRecord]:
        return self._load_terminal_records(succeeded=False)

    def cleanup_orphan_tasks(self) -> int:
        """Reset tasks left in progress by an unclean shutdown."""

        cleaned = 0
        quarantined: set[str] = set()
        with self._pending_lock:
            entries = self._load_pending_index()
            for entry in entries:
                if entry.status != TaskStatus.IN_PROGRESS:
                    continue
                try:
                    task = self.load_task(entry.id)
                except TaskNotFoundError:
                    logger.warning("Orphan task file missing: %s", entry.id)
                    continue
                except CorruptTaskError as error:
                    self._quarantine(entry, error)
                    quarantined.add(entry.id)
                    continue
                task.status = TaskStatus.READY
                task.started_at = None
                self._save_task(task)
                entry.status = TaskStatus.READY
                cleaned += 1
            if quarantined:
                entries = [entry for entry in entries if entry.id not in quarantined]
                for task_id in quarantined:
                    self._task_path(task_id).unlink(missing_ok=True)
            if cleaned or quarantined:
                self._save_pending_index(entries)
        if cleaned:
            logger.info("Recovered %d orphan task(s)", cleaned)
        return cleaned

    def reset_all_data(self) -> None:
        """Wipe all three stores back to empty indexes."""

        with self._pending_lock, self._completed_lock, self._failed_lock:
            for name in (_TASKS_DIR, _COMPLETED_DIR, _FAILED_DIR):
                directory = self.data_dir / name
                if not directory.is_dir():
                    continue
                for path in directory.glob("*.json"):
                    path.unlink(missing_ok=True)
            self._save_pending_index([])
            write_json_atomic(self._path(_COMPLETED_INDEX), {"tasks": []})
            write_json_atomic(self._path(_FAILED_INDEX), {"tasks": []})
        logger.warning("All task data reset in %s", self.data_dir)

    def prune_terminal_tasks(
        self,
        *,
        retention_days: int,
        now: datetime | None = None,
    ) -> PruneResult:
        """Delete completed/failed records finished before the retention window."""

        cutoff = (now or utc_now()) - timedelta(days=retention_days)
        completed, completed_errors = self._prune_store(succeeded=True, cutoff=cutoff)
        failed, failed_errors = self._prune_store(succeeded=False, cutoff=cutoff)
        return PruneResult(
            completed=completed,
            failed=failed,
            errors=(*completed_errors, *failed_errors),
        )

    # -- internals -------------------------------------------------------------

    def _finalize(self, task_id: str, *, summary: str, succeeded: bool) -> TerminalTaskRecord:
        task = self.load_task(task_id)
        record = TerminalTaskRecord(
            id=task.id,
            requirement=task.requirement,
            completion_criteria=task.completion_criteria,
            max_retries=task.max_retries,
            total_retries=task.current_retry,
            created_at=task.created_at,
            started_at=task.started_at,
            finished_at=utc_now(),
            summary=summary[:SUMMARY_MAX_CHARS],
            succeeded=succeeded,
        )
        directory = _COMPLETED_DIR if succeeded else _FAILED_DIR
        relative_file = f"{directory}/{task_id}.json"
        write_json_atomic(self.data_dir / relative_file, record.to_dict())

        index_name, lock = self._terminal_index(succeeded=succeeded)
        with lock:
            index = self._load_terminal_index(index_name)
            index.append({"id": task_id, "file": relative_file})
            write_json_atomic(self._path(index_name), {"tasks": index})

        self._remove_from_pending(task_id)
        logger.info("Task %s: %s", "completed" if succeeded else "failed", task_id)
        return record

    def _quarantine(self, entry: IndexEntry, error: CorruptTaskError) -> None:
        """Record an unreadable task as failed using what the index knows about it.

        The caller removes the entry from the pending index.
        """

        logger.error("Store inconsistency: %s; moving it to the failed store", error)
        record = TerminalTaskRecord(
            id=entry.id,
            requirement="",
            completion_criteria=None,
            max_retries=1,
            total_retries=0,
            created_at=entry.created_at,
            started_at=None,
            finished_at=utc_now(),
            summary=str(error)[:SUMMARY_MAX_CHARS],
            succeeded=False,
        )
        relative_file = f"{_FAILED_DIR}/{entry.id}.json"
        write_json_atomic(self.data_dir / relative_file, record.to_dict())
        with self._failed_lock:
            index = self._load_terminal_index(_FAILED_INDEX)
            index.append({"id": entry.id, "file": relative_file})
            write_json_atomic(self._path(_FAILED_INDEX), {"tasks": index})

    def _remove_from_pending(self, task_id: str) -> None:
        with self._pending_lock:
            entries = [entry for entry in self._load_pending_index() if entry.id != task_id]
            self._save_pending_index(entries)
            self._task_path(task_id).unlink(missing_ok=True)

    def _set_index_status(self, task_id: str, status: TaskStatus) -> None:
        entries = self._load_pending_index()
        for entry in entries:
            if entry.id == task_id:
                entry.status = status
        self._save_pending_index(entries)

    def _load_terminal_records(self, *, succeeded: bool) -> list[TerminalTaskRecord]:
        index_name, lock = self._terminal_index(succeeded=succeeded)
        with lock:
            index = self._load_terminal_index(index_name)
        records: list[TerminalTaskRecord] = []
        for item in index:
            path = self.data_dir / str(item.get("file", ""))
            try:
                raw = load_json(path)
            except FileNotFoundError:
                logger.warning("Store inconsistency: record file missing: %s", path)
                continue
            records.append(TerminalTaskRecord.from_dict(raw, succeeded=succeeded))
        return records

    def _prune_store(self, *, succeeded: bool, cutoff: datetime) -> tuple[int, list[str]]:
        index_name, lock = self._terminal_index(succeeded=succeeded)
        deleted = 0
        errors: list[str] = []
        with lock:
            index = self._load_terminal_index(index_name)
            kept: list[dict[str, Any]] = []
            for item in index:
                path = self.data_dir / str(item.get("file", ""))
                try:
                    record = TerminalTaskRecord.from_dict(load_json(path), succeeded=succeeded)
                except FileNotFoundError:
                    continue
                except (OSError, TypeError, ValueError, KeyError) as error:
                    errors.append(f"{item.get('id')}: {error}")
                    kept.append(item)
                    continue
                if record.finished_at < cutoff:
                    path.unlink(missing_ok=True)
                    deleted += 1
                else:
                    kept.append(item)
            if len(kept) != len(index):
                write_json_atomic(self._path(index_name), {"tasks": kept})
        return deleted, errors

    def _terminal_index(self, *, succeeded: bool) -> tuple[str, threading.RLock]:
        if succeeded:
            return _COMPLETED_INDEX, self._completed_lock
        return _FAILED_INDEX, self._failed_lock

    def _load_terminal_index(self, index_name: str) -> list[dict[str, Any]]:
        path = self._path(index_name)
        if not path.exists():
            return []
        raw_tasks = load_json(path).get("tasks", [])
        if not isinstance(raw_tasks, list):
            raise TypeError(f"{index_name}.tasks must be an array")
        return [item for item in raw_tasks if isinstance(item, dict)]

    def _load_pending_index(self) -> list[IndexEntry]:
        path = self._path(_PENDING_INDEX)
        if not path.exists():
            return []
        raw_tasks = load_json(path).get("tasks", [])
        if not isinstance(raw_tasks, list):
            raise TypeError(f"{_PENDING_INDEX}.tasks must be an array")
        return [IndexEntry.from_dict(item) for item in raw_tasks]

    def _save_pending_index(self, entries: list[IndexEntry]) -> None:
        write_json_atomic(
            self._path(_PENDING_INDEX),
            {
                "lastUpdated": to_iso(utc_now()),
                "tasks": [entry.to_dict() for entry in entries],
            },
        )

    def _save_task(self, task: Task) -> None:
        write_json_atomic(self._task_path(task.id), task.to_dict())

    def _generate_task_id(self, now: datetime) -> str:
        stamp = f"{now:%Y%m%d-%H%M%S}-{now.microsecond // 1000:03d}"
        for _ in range(_ID_ATTEMPTS):
            candidate = f"{stamp}-{self._random.randrange(1000):03d}"
            if not self._task_path(candidate).exists():
                return candidate
        raise RuntimeError(f"Could not allocate a unique task id for {stamp}")

    def _task_path(self, task_id: str) -> Path:
        if not TASK_ID_PATTERN.match(task_id):
            raise ValueError(f"Invalid task id: {task_id!r}")
        return self.data_dir / _TASKS_DIR / f"{task_id}.json"

    def _path(self, name: str) -> Path:
        return self.data_dir / name


@contextmanager
def open_repository(data_dir: Path) -> Iterator[TaskRepository]:
    """Yield an initialized repository for one CLI operation."""

    repository = TaskRepository(data_dir)
    repository.init_store()
    yield repository
