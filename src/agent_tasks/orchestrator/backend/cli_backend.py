"""Subprocess-based backend runner for CLI agents."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import IO, Any

from agent_tasks.orchestrator.backend.base import AgentRunRequest, AgentRunResult

logger = logging.getLogger(__name__)

EXIT_CODE_REASONS: dict[int, str] = {
    126: "permission denied",
    127: "command not found",
    130: "interrupted",
    137: "killed",
    143: "terminated",
}

_READER_JOIN_SECONDS = 5.0


class BackendRunError(RuntimeError):
    """Backend execution error with retryability hint.

    ``output`` holds whatever the agent printed before the run was stopped.
    """

    def __init__(self, message: str, *, transient: bool, output: str = "") -> None:
        super().__init__(message)
        self.transient = transient
        self.output = output


class ProcessSpawnError(BackendRunError):
    """Agent process could not be started."""

    def __init__(self, message: str) -> None:
        super().__init__(message, transient=True)


class ProcessTimeoutError(BackendRunError):
    """Agent process exceeded its configured run time and was terminated."""

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(
            f"Agent run timed out after {_format_duration(timeout_seconds)}",
            transient=True,
        )
        self.timeout_seconds = timeout_seconds


class ProcessCancelledError(BackendRunError):
    """Agent process was terminated on request before it finished."""

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Agent run cancelled: {run_id}", transient=False)
        self.run_id = run_id


def describe_exit_code(exit_code: int) -> str:
    """Human-readable, advisory reason for a non-zero exit code."""

    reason = EXIT_CODE_REASONS.get(exit_code)
    if reason is None:
        return f"exit code {exit_code}"
    return f"{reason} (exit code {exit_code})"


@dataclass(slots=True)
class _RunHandle:
    process: subprocess.Popen[bytes]
    cancel_requested: threading.Event = field(default_factory=threading.Event)


class _OutputCollector:
    """Accumulates lines from both pipes; each stream keeps its own order."""

    def __init__(self, on_output: Callable[[str], None] | None) -> None:
        self._on_output = on_output
        self._chunks: list[str] = []
        self._lock = threading.Lock()

    def start_reader(self, stream: IO[bytes], name: str) -> threading.Thread:
        reader = threading.Thread(
            target=self._drain,
            args=(stream,),
            daemon=True,
            name=f"agent-{name}-reader",
        )
        reader.start()
        return reader

    def text(self) -> str:
        with self._lock:
            return "".join(self._chunks)

    def _drain(self, stream: IO[bytes]) -> None:
        with stream:
            for raw in iter(stream.readline, b""):
                line = raw.decode("utf-8", errors="replace")
                with self._lock:
                    self._chunks.append(line)
                self._forward(line.rstrip("\r\n"))

    def _forward(self, line: str) -> None:
        if self._on_output is None or not line.strip():
            return
        try:
            self._on_output(line)
        except Exception:  # noqa: BLE001
            logger.warning("Output observer failed", exc_info=True)


class CliAgentBackend:
    """Run the agent CLI for one task attempt; supports external cancellation."""

    def __init__(
        self,
        *,
        poll_interval_seconds: float = 0.1,
        terminate_grace_seconds: float = 5.0,
    ) -> None:
        self.poll_interval_seconds = poll_interval_seconds
        self.terminate_grace_seconds = terminate_grace_seconds
        self._handles: dict[str, _RunHandle] = {}
        self._lock = threading.Lock()

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        with self._lock:
            if request.run_id in self._handles:
                raise BackendRunError(
                    f"Run already in flight: {request.run_id}",
                    transient=False,
                )

        if request.cancel_requested is not None and request.cancel_requested():
            raise ProcessCancelledError(request.run_id)

        env = os.environ.copy()
        env.update(request.env)
        started = time.monotonic()
        process = _spawn(request=request, env=env)
        handle = _RunHandle(process=process)
        with self._lock:
            self._handles[request.run_id] = handle

        collector = _OutputCollector(request.on_output)
        readers = [
            collector.start_reader(process.stdout, "stdout"),  # type: ignore[arg-type]
            collector.start_reader(process.stderr, "stderr"),  # type: ignore[arg-type]
        ]
        writer = threading.Thread(
            target=_write_stdin,
            args=(process, request.stdin_payload),
            daemon=True,
            name="agent-stdin-writer",
        )
        writer.start()

        stopped: ProcessTimeoutError | ProcessCancelledError | None = None
        try:
            exit_code = self._wait(handle=handle, request=request, started=started)
        except (ProcessTimeoutError, ProcessCancelledError) as error:
            stopped = error
        finally:
            with self._lock:
                self._handles.pop(request.run_id, None)
            for reader in readers:
                reader.join(timeout=_READER_JOIN_SECONDS)

        if stopped is not None:
            stopped.output = collector.text()
            raise stopped

        return AgentRunResult(
            exit_code=exit_code,
            output=collector.text(),
            duration_seconds=time.monotonic() - started,
        )

    def cancel(self, run_id: str) -> bool:
        """Request termination of an in-flight run."""

        with self._lock:
            handle = self._handles.get(run_id)
        if handle is None:
            return False
        logger.info("Cancelling agent run %s (pid=%s)", run_id, handle.process.pid)
        handle.cancel_requested.set()
        return True

    def running_run_ids(self) -> list[str]:
        with self._lock:
            return list(self._handles)

    def _wait(self, *, handle: _RunHandle, request: AgentRunRequest, started: float) -> int:
        process = handle.process
        while True:
            returncode = process.poll()
            if returncode is not None:
                return _normalize_exit_code(returncode)

            if handle.cancel_requested.is_set() or (
                request.cancel_requested is not None and request.cancel_requested()
            ):
                _terminate_process(process, grace_seconds=self.terminate_grace_seconds)
                raise ProcessCancelledError(request.run_id)

            if time.monotonic() - started >= request.timeout_seconds:
                logger.warning(
                    "Agent run %s exceeded %.0fs, terminating pid=%s",
                    request.run_id,
                    request.timeout_seconds,
                    process.pid,
                )
                _terminate_process(process, grace_seconds=self.terminate_grace_seconds)
                raise ProcessTimeoutError(request.timeout_seconds)

            handle.cancel_requested.wait(self.poll_interval_seconds)


def _spawn(*, request: AgentRunRequest, env: dict[str, str]) -> subprocess.Popen[bytes]:
    argv = [request.command, *request.args]
    try:
        return subprocess.Popen(  # noqa: S603
            argv,
            cwd=request.cwd,
            env=env,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            **_process_group_kwargs(),
        )
    except FileNotFoundError as error:
        if not request.cwd.is_dir():
            raise ProcessSpawnError(
                f"Working directory does not exist: {request.cwd}",
            ) from error
        raise ProcessSpawnError(f"Agent command not found: {request.command}") from error
    except PermissionError as error:
        raise ProcessSpawnError(
            f"Permission denied starting agent command: {request.command}",
        ) from error
    except OSError as error:
        raise ProcessSpawnError(f"Agent command failed to start: {error}") from error


def _process_group_kwargs() -> dict[str, Any]:
    if os.name == "nt":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}  # type: ignore[attr-defined]
    return {"start_new_session": True}


def _write_stdin(process: subprocess.Popen[bytes], payload: str) -> None:
    stdin = process.stdin
    if stdin is None:
        return
    try:
        stdin.write(payload.encode("utf-8"))
        stdin.flush()
    except (BrokenPipeError, OSError):
        logger.debug("Agent closed stdin before the prompt was fully written")
    finally:
        try:
            stdin.close()
        except OSError:
            pass


def _normalize_exit_code(returncode: int) -> int:
    if returncode < 0:
        return 128 + (-returncode)
    return returncode


def _terminate_process(process: subprocess.Popen[bytes], *, grace_seconds: float) -> None:
    if process.poll() is not None:
        return
    if os.name == "nt":
        subprocess.run(  # noqa: S603
            ["taskkill", "/PID", str(process.pid), "/T", "/F"],  # noqa: S607
            capture_output=True,
            check=False,
        )
    else:
        _signal_process_group(process, signal.SIGTERM)
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        if os.name == "nt":
            process.kill()
        else:
            _signal_process_group(process, signal.SIGKILL)
        process.wait(timeout=grace_seconds)


def _signal_process_group(process: subprocess.Popen[bytes], signum: int) -> None:
    try:
        os.killpg(os.getpgid(process.pid), signum)
    except ProcessLookupError:
        return
    except PermissionError:
        process.send_signal(signum)


def _format_duration(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        minutes = int(seconds // 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    return f"{seconds:g} seconds"
