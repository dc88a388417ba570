"""Queue engine that executes tasks through the CLI agent backend."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import NamedTuple

from agent_tasks.config import Settings
from agent_tasks.orchestrator.backend import (
    AgentBackend,
    AgentRunRequest,
    BackendRunError,
    ProcessCancelledError,
    ProcessTimeoutError,
    describe_exit_code,
)
from agent_tasks.orchestrator.classifier import classify_output
from agent_tasks.orchestrator.models import Task, TaskOutcome
from agent_tasks.orchestrator.notifications import (
    LoggingNotifier,
    NotificationSink,
    OutputSink,
    TaskEvent,
    build_payload,
)
from agent_tasks.orchestrator.prompts import (
    build_task_prompt,
    summarize_failure,
    summarize_success,
)
from agent_tasks.orchestrator.repository import (
    CANCELLED_REASON,
    TaskNotFoundError,
    TaskRepository,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EngineRunSummary:
    """Aggregate engine counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    timeouts: int = 0
    idle_polls: int = 0

    def record(self, outcome: TaskOutcome, *, timed_out: bool = False) -> None:
        self.processed += 1
        if outcome == TaskOutcome.COMPLETED:
            self.succeeded += 1
        elif outcome == TaskOutcome.RETRYING:
            self.retried += 1
        else:
            self.failed += 1
        if timed_out:
            self.timeouts += 1

    def merge(self, other: EngineRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.timeouts += other.timeouts
        self.idle_polls += other.idle_polls


class AttemptReport(NamedTuple):
    outcome: TaskOutcome
    timed_out: bool


class TaskEngine:
    """Consumes ready tasks and drives each through one agent attempt."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        backend: AgentBackend,
        settings: Settings,
        notifier: NotificationSink | None = None,
        output_sink: OutputSink | None = None,
    ) -> None:
        self.repository = repository
        self.backend = backend
        self.settings = settings
        self.notifier = notifier or LoggingNotifier()
        self.output_sink = output_sink
        self._stop_event = threading.Event()
        self._slot_freed = threading.Event()
        self._state_lock = threading.Lock()
        self._active: set[str] = set()
        self._cancel_requested: set[str] = set()
        self._in_flight: dict[str, threading.Thread] = {}
        self._summary_lock = threading.Lock()

    # -- pipeline --------------------------------------------------------------

    def process_one_task(self, task: Task) -> TaskOutcome:
        """Run one attempt of ``task`` and persist its outcome; never raises."""

        return self._process(task).outcome

    def _process(self, task: Task) -> AttemptReport:
        with self._state_lock:
            self._active.add(task.id)
        try:
            return self._run_pipeline(task)
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected error while processing task %s", task.id)
            self._fail_after_crash(task, error)
            return AttemptReport(TaskOutcome.FAILED, timed_out=False)
        finally:
            with self._state_lock:
                self._active.discard(task.id)
                self._cancel_requested.discard(task.id)

    def _run_pipeline(self, task: Task) -> AttemptReport:
        try:
            task = self.repository.start_task(task.id)
        except TaskNotFoundError:
            logger.warning("Task %s disappeared before it could start", task.id)
            return AttemptReport(TaskOutcome.FAILED, timed_out=False)

        logger.info(
            "Task %s started (attempt %d/%d, %s mode)",
            task.id,
            task.current_retry + 1,
            task.max_retries,
            "strict" if task.strict_mode else "permissive",
        )
        self._notify(TaskEvent.STARTED, task)
        if self._is_cancel_requested(task.id):
            return self._finish_cancelled(task, output="")

        try:
            execution = self.backend.run(self._build_request(task))
        except ProcessCancelledError as error:
            return self._finish_cancelled(task, output=error.output)
        except BackendRunError as error:
            if self._is_cancel_requested(task.id):
                return self._finish_cancelled(task, output=error.output)
            logger.warning("Agent run for task %s failed: %s", task.id, error)
            return self._handle_failure(
                task,
                reason=str(error),
                output=error.output,
                timed_out=isinstance(error, ProcessTimeoutError),
            )

        if self._is_cancel_requested(task.id):
            return self._finish_cancelled(task, output=execution.output)

        logger.debug(
            "Task %s agent exited with %d after %.1fs",
            task.id,
            execution.exit_code,
            execution.duration_seconds,
        )
        if execution.exit_code != 0:
            return self._handle_failure(
                task,
                reason=describe_exit_code(execution.exit_code),
                output=execution.output,
            )

        classification = classify_output(execution.output, strict_mode=task.strict_mode)
        logger.debug("Task %s classified: %s", task.id, classification.to_event_details())
        if not classification.success:
            return self._handle_failure(
                task,
                reason=classification.reason,
                output=execution.output,
            )

        self.repository.complete_task(task.id, summarize_success(execution.output))
        self._notify(TaskEvent.COMPLETED, task, output=execution.output)
        return AttemptReport(TaskOutcome.COMPLETED, timed_out=False)

    def _build_request(self, task: Task) -> AgentRunRequest:
        on_output: Callable[[str], None] | None = None
        sink = self.output_sink
        if sink is not None:

            def on_output(line: str) -> None:
                sink.on_output_line(task.id, line)

        return AgentRunRequest(
            run_id=task.id,
            command=self.settings.agent.command,
            args=tuple(self.settings.agent.args),
            cwd=Path(task.working_directory),
            stdin_payload=build_task_prompt(task),
            timeout_seconds=self.settings.engine.task_timeout_seconds,
            on_output=on_output,
            cancel_requested=lambda: self._is_cancel_requested(task.id),
        )

    def _handle_failure(
        self,
        task: Task,
        *,
        reason: str | None,
        output: str,
        timed_out: bool = False,
    ) -> AttemptReport:
        decision = self.repository.increment_retry(task.id)
        updated = decision.task
        if decision.can_retry:
            logger.info(
                "Task %s attempt %d/%d failed, re-queued: %s",
                task.id,
                updated.current_retry,
                updated.max_retries,
                reason,
            )
            self._notify(TaskEvent.RETRY, updated, reason=reason, output=output)
            return AttemptReport(TaskOutcome.RETRYING, timed_out=timed_out)

        logger.warning(
            "Task %s failed after %d attempt(s): %s",
            task.id,
            updated.current_retry,
            reason,
        )
        self.repository.fail_task(task.id, summarize_failure(reason, output))
        self._notify(TaskEvent.FAILED, updated, reason=reason, output=output)
        return AttemptReport(TaskOutcome.FAILED, timed_out=timed_out)

    def _finish_cancelled(self, task: Task, *, output: str) -> AttemptReport:
        logger.info("Task %s cancelled by user", task.id)
        self.repository.fail_task(task.id, CANCELLED_REASON)
        self._notify(TaskEvent.FAILED, task, reason=CANCELLED_REASON, output=output or None)
        return AttemptReport(TaskOutcome.FAILED, timed_out=False)

    def _fail_after_crash(self, task: Task, error: Exception) -> None:
        reason = f"Internal error: {error}"
        try:
            self.repository.fail_task(task.id, reason)
        except Exception:  # noqa: BLE001
            logger.exception("Could not record failure for task %s", task.id)
            return
        self._notify(TaskEvent.FAILED, task, reason=reason)

    def _notify(
        self,
        event: TaskEvent,
        task: Task,
        *,
        reason: str | None = None,
        output: str | None = None,
    ) -> None:
        payload = build_payload(
            task_id=task.id,
            requirement=task.requirement,
            current_retry=task.current_retry,
            max_retries=task.max_retries,
            reason=reason,
            output=output,
        )
        try:
            self.notifier.notify(event, payload)
        except Exception:  # noqa: BLE001
            logger.warning(
                "Notification %s for task %s failed",
                event.value,
                task.id,
                exc_info=True,
            )

    # -- cancellation ----------------------------------------------------------

    def cancel_task(self, task_id: str) -> bool:
        """Cancel a task; True when a running attempt was asked to stop.

        A running task is killed and recorded as failed by its own pipeline.
        A pending task is moved to the failed store immediately.
        """

        with self._state_lock:
            running = task_id in self._active
            if running:
                self._cancel_requested.add(task_id)
            else:
                self.repository.cancel_task(task_id)
        if running:
            self.backend.cancel(task_id)
        return running

    def running_task_ids(self) -> list[str]:
        with self._state_lock:
            return sorted(self._active)

    def _is_cancel_requested(self, task_id: str) -> bool:
        with self._state_lock:
            return task_id in self._cancel_requested

    # -- drivers ---------------------------------------------------------------

    def run(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = None,
    ) -> EngineRunSummary:
        """Run the driver selected by ``settings.engine.parallel_execution``."""

        if self.settings.engine.parallel_execution:
            return self.run_parallel_loop(max_tasks=max_tasks, max_idle_polls=max_idle_polls)
        return self.run_loop(max_tasks=max_tasks, max_idle_polls=max_idle_polls)

    def stop(self) -> None:
        """Stop picking up new tasks; in-flight attempts run to completion."""

        self._stop_event.set()
        self._slot_freed.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def run_once(self) -> EngineRunSummary:
        """Process at most one task from the queue."""

        summary = EngineRunSummary()
        if self.stop_requested:
            summary.idle_polls = 1
            return summary

        task = self.repository.get_next_task()
        if task is None:
            summary.idle_polls = 1
            return summary

        report = self._process(task)
        summary.record(report.outcome, timed_out=report.timed_out)
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = None,
    ) -> EngineRunSummary:
        """Run tasks one at a time until stopped, idle or max_tasks reached.

        Args:
            max_tasks: Stop after processing this many tasks (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting
                (None = keep polling until stopped).
        """

        aggregate = EngineRunSummary()
        consecutive_idle = 0
        engine = self.settings.engine
        with self._signal_handlers():
            while True:
                if self.stop_requested:
                    return aggregate
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    return aggregate

                try:
                    summary = self.run_once()
                except Exception:  # noqa: BLE001
                    logger.exception("Engine iteration failed, backing off")
                    summary = EngineRunSummary(idle_polls=1)
                aggregate.merge(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(engine.poll_interval_seconds)
                    continue

                consecutive_idle = 0
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    return aggregate
                self._sleep_with_stop(engine.cooldown_seconds)

    def run_parallel_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = None,
    ) -> EngineRunSummary:
        """Keep up to ``max_parallel`` tasks in flight on worker threads.

        ``max_tasks`` bounds the number of dispatched attempts. The loop never
        kills in-flight workers; it waits for them before returning.
        """

        aggregate = EngineRunSummary()
        dispatched = 0
        consecutive_idle = 0
        engine = self.settings.engine
        with self._signal_handlers():
            try:
                while not self.stop_requested:
                    if max_tasks is not None and dispatched >= max_tasks:
                        break
                    available = engine.max_parallel - self._in_flight_count()
                    if max_tasks is not None:
                        available = min(available, max_tasks - dispatched)
                    if available <= 0:
                        self._wait_for_slot(engine.poll_interval_seconds)
                        continue

                    try:
                        candidates = self._claimable_tasks(available)
                    except Exception:  # noqa: BLE001
                        logger.exception("Engine iteration failed, backing off")
                        candidates = []
                    if not candidates:
                        if self._in_flight_count() == 0:
                            aggregate.idle_polls += 1
                            consecutive_idle += 1
                            if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                                break
                        self._wait_for_slot(engine.poll_interval_seconds)
                        continue

                    consecutive_idle = 0
                    for task in candidates:
                        self._dispatch(task, aggregate)
                        dispatched += 1
                    self._sleep_with_stop(engine.cooldown_seconds)
            finally:
                self._join_in_flight()
        return aggregate

    def _claimable_tasks(self, limit: int) -> list[Task]:
        with self._state_lock:
            busy = set(self._in_flight)
        candidates = self.repository.get_next_tasks(limit + len(busy))
        return [task for task in candidates if task.id not in busy][:limit]

    def _dispatch(self, task: Task, aggregate: EngineRunSummary) -> None:
        worker = threading.Thread(
            target=self._parallel_worker,
            args=(task, aggregate),
            name=f"task-{task.id}",
            daemon=True,
        )
        with self._state_lock:
            self._in_flight[task.id] = worker
        worker.start()

    def _parallel_worker(self, task: Task, aggregate: EngineRunSummary) -> None:
        try:
            report = self._process(task)
            with self._summary_lock:
                aggregate.record(report.outcome, timed_out=report.timed_out)
        finally:
            with self._state_lock:
                self._in_flight.pop(task.id, None)
            self._slot_freed.set()

    def _in_flight_count(self) -> int:
        with self._state_lock:
            return len(self._in_flight)

    def _join_in_flight(self) -> None:
        while True:
            with self._state_lock:
                workers = list(self._in_flight.values())
            if not workers:
                return
            for worker in workers:
                worker.join()

    def _wait_for_slot(self, seconds: float) -> None:
        if self._slot_freed.wait(seconds):
            self._slot_freed.clear()

    def _sleep_with_stop(self, seconds: float) -> None:
        if seconds > 0:
            self._stop_event.wait(seconds)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._request_stop(signal_name=name)

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

    def _request_stop(self, *, signal_name: str) -> None:
        running = self.running_task_ids()
        logger.warning(
            "%s received, stopping after %d running task(s) finish",
            signal_name,
            len(running),
        )
        self.stop()
