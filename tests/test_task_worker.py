from __future__ import annotations

import sys
import threading
import time
from pathlib import Path

import allure
import pytest

from agent_tasks.orchestrator.backend import (
    AgentRunRequest,
    AgentRunResult,
    CliAgentBackend,
    ProcessCancelledError,
    ProcessSpawnError,
    ProcessTimeoutError,
    cli_backend,
)
from agent_tasks.orchestrator.classifier import (
    COMPLETION_MARKER,
    FAILURE_MARKER,
    NO_SIGNAL_REASON,
)
from agent_tasks.orchestrator.models import Priority, TaskOutcome, TaskStatus
from agent_tasks.orchestrator.notifications import TaskEvent
from agent_tasks.orchestrator.repository import (
    CANCELLED_REASON,
    TaskNotFoundError,
    TaskRepository,
)
from agent_tasks.orchestrator.worker import EngineRunSummary, TaskEngine

pytestmark = [
    allure.epic("Execution Engine"),
    allure.feature("Task Engine"),
]


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[tuple[TaskEvent, dict[str, object]]] = []
        self._lock = threading.Lock()

    def notify(self, event: TaskEvent, payload: dict[str, object]) -> None:
        with self._lock:
            self.events.append((event, payload))

    @property
    def names(self) -> list[TaskEvent]:
        return [event for event, _ in self.events]


class BrokenNotifier:
    def notify(self, event: TaskEvent, payload: dict[str, object]) -> None:
        raise RuntimeError("chat bridge down")


class RecordingOutputSink:
    def __init__(self) -> None:
        self.lines: list[tuple[str, str]] = []

    def on_output_line(self, task_id: str, line: str) -> None:
        self.lines.append((task_id, line))


class ScriptedBackend:
    """Returns queued results or raises queued errors, in order."""

    def __init__(self, *outcomes: AgentRunResult | BaseException) -> None:
        self.outcomes = list(outcomes)
        self.requests: list[AgentRunRequest] = []

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        self.requests.append(request)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def cancel(self, run_id: str) -> bool:
        return False


class BlockingBackend:
    """Blocks every run until cancelled."""

    def __init__(self) -> None:
        self.started = threading.Event()
        self.released = threading.Event()

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        self.started.set()
        if not self.released.wait(10):
            raise AssertionError("run was never cancelled")
        raise ProcessCancelledError(request.run_id)

    def cancel(self, run_id: str) -> bool:
        self.released.set()
        return True


class ConcurrencyBackend:
    """Succeeds after overlapping with another run; tracks peak concurrency."""

    def __init__(self, output: str = COMPLETION_MARKER) -> None:
        self.output = output
        self.active = 0
        self.peak = 0
        self.run_ids: list[str] = []
        self.overlapped = threading.Event()
        self._lock = threading.Lock()

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
            self.run_ids.append(request.run_id)
            if self.active >= 2:
                self.overlapped.set()
        try:
            self.overlapped.wait(2)
            time.sleep(0.05)
            return AgentRunResult(exit_code=0, output=self.output, duration_seconds=0.05)
        finally:
            with self._lock:
                self.active -= 1

    def cancel(self, run_id: str) -> bool:
        return False


def _ok(output: str = COMPLETION_MARKER) -> AgentRunResult:
    return AgentRunResult(exit_code=0, output=output, duration_seconds=0.1)


def _create(repository: TaskRepository, tmp_path: Path, **kwargs):
    kwargs.setdefault("requirement", "Implement feature")
    kwargs.setdefault("completion_criteria", "tests pass")
    kwargs.setdefault("max_retries", 3)
    return repository.create_task(working_directory=tmp_path, **kwargs)


def _engine(repository, settings, backend, **kwargs) -> TaskEngine:
    return TaskEngine(repository=repository, backend=backend, settings=settings, **kwargs)


def test_urgent_task_with_failing_agent_exhausts_retries(
    repository,
    tmp_path,
    make_settings,
    echo_agent_args,
) -> None:
    settings = make_settings(agent_args=echo_agent_args("--mode", "fail"))
    notifier = RecordingNotifier()
    task = _create(repository, tmp_path, max_retries=2, priority=Priority.URGENT)
    engine = _engine(repository, settings, CliAgentBackend(), notifier=notifier)

    summary = engine.run_loop(max_idle_polls=1)

    assert (summary.processed, summary.retried, summary.failed, summary.succeeded) == (2, 1, 1, 0)
    assert summary.idle_polls == 1
    assert repository.get_all_pending_tasks() == []
    [record] = repository.get_failed_tasks()
    assert record.id == task.id
    assert record.total_retries == 2
    assert record.summary.startswith("Reason: criteria not met")
    assert notifier.names == [
        TaskEvent.STARTED,
        TaskEvent.RETRY,
        TaskEvent.STARTED,
        TaskEvent.FAILED,
    ]
    retry_payload = notifier.events[1][1]
    assert retry_payload["current_retry"] == 1
    assert retry_payload["reason"] == "criteria not met"
    failed_payload = notifier.events[3][1]
    assert failed_payload["current_retry"] == 2
    assert failed_payload["max_retries"] == 2
    assert FAILURE_MARKER in str(failed_payload["output"])


def test_completing_agent_records_success_and_streams_output(
    repository,
    tmp_path,
    make_settings,
    echo_agent_args,
) -> None:
    settings = make_settings(agent_args=echo_agent_args("--mode", "complete"))
    sink = RecordingOutputSink()
    notifier = RecordingNotifier()
    task = _create(repository, tmp_path)
    engine = _engine(repository, settings, CliAgentBackend(), notifier=notifier, output_sink=sink)

    assert engine.process_one_task(task) == TaskOutcome.COMPLETED

    [record] = repository.get_completed_tasks()
    assert record.id == task.id
    assert record.total_retries == 0
    assert COMPLETION_MARKER in record.summary
    assert (task.id, "Working on the requirement...") in sink.lines
    assert (task.id, COMPLETION_MARKER) in sink.lines
    assert notifier.names == [TaskEvent.STARTED, TaskEvent.COMPLETED]


def test_nonzero_exit_skips_classifier_and_uses_exit_reason(
    repository,
    tmp_path,
    make_settings,
    echo_agent_args,
) -> None:
    settings = make_settings(
        agent_args=echo_agent_args("--mode", "complete", "--exit-code", "127"),
    )
    task = _create(repository, tmp_path, max_retries=1)

    outcome = _engine(repository, settings, CliAgentBackend()).process_one_task(task)

    assert outcome == TaskOutcome.FAILED
    [record] = repository.get_failed_tasks()
    assert record.summary.startswith("Reason: command not found (exit code 127)")
    assert record.total_retries == 1


def test_agent_error_output_fails_single_attempt_task(
    repository,
    tmp_path,
    make_settings,
    echo_agent_args,
) -> None:
    settings = make_settings(agent_args=echo_agent_args("--mode", "error", "--reason", "boom"))
    task = _create(repository, tmp_path, max_retries=1)

    outcome = _engine(repository, settings, CliAgentBackend()).process_one_task(task)

    assert outcome == TaskOutcome.FAILED
    assert repository.get_failed_tasks()[0].summary.startswith("Reason: boom")


def test_silent_agent_completes_in_permissive_mode(repository, tmp_path, make_settings) -> None:
    task = _create(repository, tmp_path, max_retries=1)
    engine = _engine(repository, make_settings(), ScriptedBackend(_ok("edited two files")))

    assert engine.process_one_task(task) == TaskOutcome.COMPLETED
    assert repository.get_completed_tasks()[0].summary == "edited two files"


def test_silent_agent_is_retried_in_strict_mode(repository, tmp_path, make_settings) -> None:
    notifier = RecordingNotifier()
    task = _create(repository, tmp_path, max_retries=2)
    engine = _engine(
        repository,
        make_settings(),
        ScriptedBackend(_ok("edited two files")),
        notifier=notifier,
    )

    assert engine.process_one_task(task) == TaskOutcome.RETRYING

    reloaded = repository.load_task(task.id)
    assert reloaded.status == TaskStatus.READY
    assert reloaded.current_retry == 1
    assert notifier.events[-1][0] == TaskEvent.RETRY
    assert notifier.events[-1][1]["reason"] == NO_SIGNAL_REASON


def test_request_is_built_from_task_and_settings(repository, tmp_path, make_settings) -> None:
    settings = make_settings(agent_args=("--flag",))
    backend = ScriptedBackend(_ok())
    task = _create(repository, tmp_path, requirement="Refactor the parser")

    _engine(repository, settings, backend).process_one_task(task)

    [request] = backend.requests
    assert request.run_id == task.id
    assert request.command == sys.executable
    assert request.args == ("--flag",)
    assert request.cwd == Path(task.working_directory)
    assert request.timeout_seconds == 60
    assert "Refactor the parser" in request.stdin_payload
    assert request.on_output is None


def test_timeout_is_retryable_and_counted(repository, tmp_path, make_settings) -> None:
    notifier = RecordingNotifier()
    _create(repository, tmp_path, max_retries=2)
    engine = _engine(
        repository,
        make_settings(),
        ScriptedBackend(ProcessTimeoutError(60)),
        notifier=notifier,
    )

    summary = engine.run_once()

    assert (summary.processed, summary.retried, summary.timeouts) == (1, 1, 1)
    assert notifier.events[-1][1]["reason"] == "Agent run timed out after 1 minute"


def test_spawn_failure_on_last_attempt_fails_task(repository, tmp_path, make_settings) -> None:
    task = _create(repository, tmp_path, max_retries=1)
    engine = _engine(
        repository,
        make_settings(),
        ScriptedBackend(ProcessSpawnError("Agent command not found: claude")),
    )

    assert engine.process_one_task(task) == TaskOutcome.FAILED
    assert repository.get_failed_tasks()[0].summary == (
        "Reason: Agent command not found: claude"
    )


def test_unexpected_backend_error_is_recorded_as_failure(repository, tmp_path, make_settings) -> None:
    notifier = RecordingNotifier()
    task = _create(repository, tmp_path)
    engine = _engine(
        repository,
        make_settings(),
        ScriptedBackend(RuntimeError("boom")),
        notifier=notifier,
    )

    assert engine.process_one_task(task) == TaskOutcome.FAILED

    [record] = repository.get_failed_tasks()
    assert record.summary == "Internal error: boom"
    assert notifier.names[-1] == TaskEvent.FAILED
    assert engine.running_task_ids() == []


def test_engine_never_raises_even_when_store_is_broken(
    repository,
    tmp_path,
    make_settings,
    monkeypatch,
) -> None:
    task = _create(repository, tmp_path)

    def _broken(*args, **kwargs):
        raise OSError("read-only file system")

    monkeypatch.setattr(repository, "complete_task", _broken)
    monkeypatch.setattr(repository, "fail_task", _broken)
    engine = _engine(repository, make_settings(), ScriptedBackend(_ok()))

    assert engine.process_one_task(task) == TaskOutcome.FAILED


def test_notifier_errors_do_not_affect_outcome(repository, tmp_path, make_settings) -> None:
    task = _create(repository, tmp_path)
    engine = _engine(
        repository,
        make_settings(),
        ScriptedBackend(_ok()),
        notifier=BrokenNotifier(),
    )

    assert engine.process_one_task(task) == TaskOutcome.COMPLETED
    assert [record.id for record in repository.get_completed_tasks()] == [task.id]


def test_cancel_running_task_fails_it_without_retry(repository, tmp_path, make_settings) -> None:
    backend = BlockingBackend()
    task = _create(repository, tmp_path, max_retries=5)
    engine = _engine(repository, make_settings(), backend)
    outcomes: list[TaskOutcome] = []
    runner = threading.Thread(target=lambda: outcomes.append(engine.process_one_task(task)))
    runner.start()
    assert backend.started.wait(10)

    assert engine.running_task_ids() == [task.id]
    assert engine.cancel_task(task.id) is True
    runner.join(timeout=10)

    assert outcomes == [TaskOutcome.FAILED]
    [record] = repository.get_failed_tasks()
    assert record.summary == CANCELLED_REASON
    assert record.total_retries == 0
    assert repository.get_all_pending_tasks() == []
    assert engine.running_task_ids() == []


def test_cancel_pending_task_moves_it_to_failed(repository, tmp_path, make_settings) -> None:
    task = _create(repository, tmp_path)
    engine = _engine(repository, make_settings(), ScriptedBackend())

    assert engine.cancel_task(task.id) is False

    assert repository.get_failed_tasks()[0].summary == CANCELLED_REASON
    with pytest.raises(TaskNotFoundError):
        engine.cancel_task(task.id)


def test_run_loop_respects_max_tasks_and_priority(repository, tmp_path, make_settings) -> None:
    low = _create(repository, tmp_path, requirement="low", priority=Priority.LOW)
    high = _create(repository, tmp_path, requirement="high", priority=Priority.HIGH)
    backend = ScriptedBackend(_ok(), _ok())
    engine = _engine(repository, make_settings(), backend)

    summary = engine.run_loop(max_tasks=1)

    assert summary.processed == 1
    assert [request.run_id for request in backend.requests] == [high.id]
    assert [task.id for task in repository.get_all_pending_tasks()] == [low.id]


def test_stop_prevents_new_pickups(repository, tmp_path, make_settings) -> None:
    _create(repository, tmp_path)
    backend = ScriptedBackend()
    engine = _engine(repository, make_settings(), backend)

    engine.stop()

    assert engine.run_loop(max_idle_polls=1).processed == 0
    assert engine.run_parallel_loop(max_idle_polls=1).processed == 0
    assert engine.run_once().idle_polls == 1
    assert backend.requests == []


def test_parallel_run_bounds_concurrency_and_never_duplicates(
    repository,
    tmp_path,
    make_settings,
) -> None:
    settings = make_settings(parallel=True, max_parallel=2, poll_interval_seconds=0.02)
    task_ids = {_create(repository, tmp_path, requirement=f"task {n}").id for n in range(5)}
    backend = ConcurrencyBackend()
    engine = _engine(repository, settings, backend)

    summary = engine.run(max_idle_polls=1)

    assert (summary.processed, summary.succeeded) == (5, 5)
    assert sorted(backend.run_ids) == sorted(task_ids)
    assert backend.overlapped.is_set()
    assert backend.peak <= 2
    assert {record.id for record in repository.get_completed_tasks()} == task_ids
    assert engine.running_task_ids() == []


def test_parallel_run_redispatches_retried_tasks(repository, tmp_path, make_settings) -> None:
    settings = make_settings(parallel=True, max_parallel=3, poll_interval_seconds=0.02)
    task = _create(repository, tmp_path, max_retries=2)
    backend = ConcurrencyBackend(output=f"{FAILURE_MARKER}\nReason: flaky")
    backend.overlapped.set()
    engine = _engine(repository, settings, backend)

    summary = engine.run_parallel_loop(max_idle_polls=1)

    assert (summary.processed, summary.retried, summary.failed) == (2, 1, 1)
    assert backend.run_ids == [task.id, task.id]
    assert repository.get_failed_tasks()[0].total_retries == 2


def test_parallel_run_respects_max_tasks(repository, tmp_path, make_settings) -> None:
    settings = make_settings(parallel=True, max_parallel=2, poll_interval_seconds=0.02)
    for n in range(5):
        _create(repository, tmp_path, requirement=f"task {n}")
    backend = ConcurrencyBackend()
    engine = _engine(repository, settings, backend)

    summary = engine.run_parallel_loop(max_tasks=3)

    assert summary.processed == 3
    assert len(repository.get_completed_tasks()) == 3
    assert len(repository.get_all_pending_tasks()) == 2


def test_summary_merge_adds_counters() -> None:
    total = EngineRunSummary(processed=1, succeeded=1)
    total.merge(EngineRunSummary(processed=2, failed=1, retried=1, timeouts=1, idle_polls=3))

    assert total == EngineRunSummary(
        processed=3,
        succeeded=1,
        failed=1,
        retried=1,
        timeouts=1,
        idle_polls=3,
    )


def test_cancel_before_agent_spawns_still_stops_it(
    repository,
    tmp_path,
    make_settings,
    echo_agent_args,
    monkeypatch,
) -> None:
    settings = make_settings(agent_args=echo_agent_args("--mode", "sleep", "--sleep-seconds", "30"))
    task = _create(repository, tmp_path, max_retries=3)
    engine = _engine(
        repository,
        settings,
        CliAgentBackend(poll_interval_seconds=0.05, terminate_grace_seconds=2.0),
    )
    spawning = threading.Event()
    cancelled = threading.Event()
    real_spawn = cli_backend._spawn

    def _delayed_spawn(**kwargs):
        spawning.set()
        cancelled.wait(10)
        return real_spawn(**kwargs)

    monkeypatch.setattr(cli_backend, "_spawn", _delayed_spawn)
    outcomes: list[TaskOutcome] = []
    runner = threading.Thread(target=lambda: outcomes.append(engine.process_one_task(task)))
    runner.start()
    assert spawning.wait(10)

    assert engine.cancel_task(task.id) is True
    cancelled.set()
    released = time.monotonic()
    runner.join(timeout=25)

    assert not runner.is_alive()
    assert time.monotonic() - released < 10
    assert outcomes == [TaskOutcome.FAILED]
    [record] = repository.get_failed_tasks()
    assert record.summary == CANCELLED_REASON
    assert record.total_retries == 0


def test_unreadable_task_file_does_not_stop_the_loop(repository, tmp_path, make_settings) -> None:
    broken = _create(repository, tmp_path, priority=Priority.URGENT)
    healthy = _create(repository, tmp_path)
    (repository.data_dir / "tasks" / f"{broken.id}.json").write_text('{"id": "x"', "utf-8")
    backend = ScriptedBackend(_ok())
    engine = _engine(repository, make_settings(), backend)

    summary = engine.run_loop(max_idle_polls=1)

    assert (summary.processed, summary.succeeded) == (1, 1)
    assert [request.run_id for request in backend.requests] == [healthy.id]
    assert [record.id for record in repository.get_completed_tasks()] == [healthy.id]
    assert [record.id for record in repository.get_failed_tasks()] == [broken.id]
    assert repository.get_all_pending_tasks() == []


@pytest.mark.parametrize("parallel", [False, True])
def test_broken_pending_index_is_logged_and_retried(
    repository,
    tmp_path,
    make_settings,
    caplog,
    parallel: bool,
) -> None:
    (repository.data_dir / "tasks.json").write_text("not json", "utf-8")
    settings = make_settings(parallel=parallel, poll_interval_seconds=0.01)
    engine = _engine(repository, settings, ScriptedBackend())

    summary = engine.run(max_idle_polls=2)

    assert summary.processed == 0
    assert summary.idle_polls == 2
    assert caplog.text.count("Engine iteration failed") == 2


def test_timeout_keeps_agent_transcript_in_failed_record(
    repository,
    tmp_path,
    make_settings,
) -> None:
    notifier = RecordingNotifier()
    task = _create(repository, tmp_path, max_retries=1)
    timeout = ProcessTimeoutError(60)
    timeout.output = "step 1 done\nstep 2 hanging\n"
    engine = _engine(repository, make_settings(), ScriptedBackend(timeout), notifier=notifier)

    assert engine.process_one_task(task) == TaskOutcome.FAILED

    [record] = repository.get_failed_tasks()
    assert record.summary == (
        "Reason: Agent run timed out after 1 minute\nstep 1 done\nstep 2 hanging"
    )
    event, payload = notifier.events[-1]
    assert event == TaskEvent.FAILED
    assert "step 2 hanging" in payload["output"]
