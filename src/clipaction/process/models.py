"""Run lifecycle models for spawned command pipelines."""

from __future__ import annotations

import logging as py_logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from typing_extensions import TypedDict

logger = py_logging.getLogger(__name__)

DEFAULT_MAX_CAPTURE_BYTES = 10 * 1024 * 1024


class ProcessState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    FINISHED = "finished"
    FAILED = "failed"
    TERMINATED = "terminated"


TERMINAL_STATES = frozenset({ProcessState.FINISHED, ProcessState.FAILED, ProcessState.TERMINATED})

_ALLOWED_TRANSITIONS: dict[ProcessState, frozenset[ProcessState]] = {
    ProcessState.STARTING: frozenset(
        {ProcessState.RUNNING, ProcessState.FAILED, ProcessState.TERMINATED}
    ),
    ProcessState.RUNNING: TERMINAL_STATES,
}


class RunSummary(TypedDict):
    run_id: str
    command: str
    item_id: str
    state: str
    started_at: str
    finished_at: str
    exit_code: int | None
    message: str
    stdout_bytes: int
    stderr_bytes: int
    truncated: bool


@dataclass(frozen=True)
class RunSnapshot:
    run_id: str
    command_name: str
    state: ProcessState
    started_at: datetime
    item_id: str = ""
    source_tab: str = ""
    captures: tuple[str, ...] = ()
    finished_at: datetime | None = None
    exit_code: int | None = None
    message: str = ""
    stdout: bytes = b""
    stderr: bytes = b""
    stdout_truncated: bool = False
    stderr_truncated: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def output_text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    def to_dict(self) -> RunSummary:
        return RunSummary(
            run_id=self.run_id,
            command=self.command_name,
            item_id=self.item_id,
            state=self.state.value,
            started_at=self.started_at.isoformat(timespec="seconds"),
            finished_at=self.finished_at.isoformat(timespec="seconds") if self.finished_at else "",
            exit_code=self.exit_code,
            message=self.message,
            stdout_bytes=len(self.stdout),
            stderr_bytes=len(self.stderr),
            truncated=self.stdout_truncated or self.stderr_truncated,
        )


class RunHandle:
    """Mutable, lock-guarded record of one pipeline execution.

    State only moves forward; the first terminal transition wins and later
    ones are ignored, so a cancellation racing a natural exit is harmless.
    """

    def __init__(
        self,
        command_name: str,
        *,
        item_id: str = "",
        source_tab: str = "",
        captures: tuple[str, ...] = (),
        max_capture_bytes: int = DEFAULT_MAX_CAPTURE_BYTES,
        run_id: str | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.run_id = run_id or uuid.uuid4().hex
        self.command_name = command_name
        self.item_id = item_id
        self.source_tab = source_tab
        self.captures = captures
        self.max_capture_bytes = max_capture_bytes
        self._clock = clock
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._state = ProcessState.STARTING
        self._started_at = clock()
        self._finished_at: datetime | None = None
        self._exit_code: int | None = None
        self._message = ""
        self._stdout = bytearray()
        self._stderr = bytearray()
        self._stdout_truncated = False
        self._stderr_truncated = False
        self._cancel_hook: Callable[[], None] | None = None
        self._kill_hook: Callable[[], None] | None = None

    @property
    def state(self) -> ProcessState:
        with self._lock:
            return self._state

    @property
    def started_at(self) -> datetime:
        return self._started_at

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def bind_controls(self, *, cancel: Callable[[], None], kill: Callable[[], None]) -> None:
        with self._lock:
            self._cancel_hook = cancel
            self._kill_hook = kill

    def append_stdout(self, chunk: bytes) -> None:
        with self._lock:
            self._stdout_truncated |= _append_bounded(self._stdout, chunk, self.max_capture_bytes)

    def append_stderr(self, chunk: bytes) -> None:
        with self._lock:
            self._stderr_truncated |= _append_bounded(self._stderr, chunk, self.max_capture_bytes)

    def mark_running(self) -> bool:
        return self._transition(ProcessState.RUNNING)

    def finish(self, exit_code: int = 0) -> bool:
        return self._transition(ProcessState.FINISHED, exit_code=exit_code)

    def fail(self, message: str, *, exit_code: int | None = None) -> bool:
        return self._transition(ProcessState.FAILED, message=message, exit_code=exit_code)

    def terminate(self, message: str = "Cancelled.") -> bool:
        return self._transition(ProcessState.TERMINATED, message=message)

    def cancel(self, message: str = "Cancelled.") -> bool:
        """Move to terminated and ask the execution to stop its stages."""
        changed = self.terminate(message)
        with self._lock:
            hook = self._cancel_hook
        if changed and hook is not None:
            hook()
        return changed

    def kill(self) -> None:
        with self._lock:
            hook = self._kill_hook
        if hook is not None and not self.done:
            hook()

    def seal(self) -> None:
        """Force a terminal state once the execution has nothing left to report."""
        with self._lock:
            if self._state not in TERMINAL_STATES:
                self._state = ProcessState.FAILED
                self._message = self._message or "Run ended without a result."
            if self._finished_at is None:
                self._finished_at = self._clock()

    def mark_done(self) -> None:
        self.seal()
        self._done.set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._done.wait(timeout)

    def snapshot(self) -> RunSnapshot:
        with self._lock:
            return RunSnapshot(
                run_id=self.run_id,
                command_name=self.command_name,
                state=self._state,
                started_at=self._started_at,
                item_id=self.item_id,
                source_tab=self.source_tab,
                captures=self.captures,
                finished_at=self._finished_at,
                exit_code=self._exit_code,
                message=self._message,
                stdout=bytes(self._stdout),
                stderr=bytes(self._stderr),
                stdout_truncated=self._stdout_truncated,
                stderr_truncated=self._stderr_truncated,
            )

    def _transition(
        self,
        target: ProcessState,
        *,
        message: str = "",
        exit_code: int | None = None,
    ) -> bool:
        with self._lock:
            current = self._state
            if target not in _ALLOWED_TRANSITIONS.get(current, frozenset()):
                logger.debug(
                    "Ignored transition run=%s from=%s to=%s",
                    self.run_id,
                    current.value,
                    target.value,
                )
                return False
            self._state = target
            if message:
                self._message = message
            if exit_code is not None:
                self._exit_code = exit_code
            if target in TERMINAL_STATES:
                self._finished_at = self._clock()
        logger.info(
            "run-event run=%s command=%s step=%s message=%s",
            self.run_id,
            self.command_name,
            target.value,
            message or "-",
        )
        return True


def _append_bounded(buffer: bytearray, chunk: bytes, limit: int) -> bool:
    room = limit - len(buffer)
    if room >= len(chunk):
        buffer.extend(chunk)
        return False
    if room > 0:
        buffer.extend(chunk[:room])
    return True
