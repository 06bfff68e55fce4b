"""Process-wide registry of pipeline runs."""

from __future__ import annotations

import logging as py_logging
import threading
import time
from collections.abc import Callable

from clipaction.errors import ClipActionError, ExitCode
from clipaction.process.models import RunHandle, RunSnapshot

logger = py_logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD_SECONDS = 5.0
DEFAULT_MAX_RETAINED_RUNS = 100
_REAP_TIMEOUT_SECONDS = 2.0


class ProcessSupervisor:
    """Tracks every RunHandle from registration until it is dismissed.

    All reads return immutable snapshots, so a status view may render while
    runner threads keep appending output.
    """

    def __init__(
        self,
        *,
        grace_period_seconds: float = DEFAULT_GRACE_PERIOD_SECONDS,
        max_retained_runs: int = DEFAULT_MAX_RETAINED_RUNS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if grace_period_seconds <= 0:
            raise ClipActionError(
                f"Invalid grace period: {grace_period_seconds}",
                code=ExitCode.VALIDATION_ERROR,
                hint="Use a positive number of seconds.",
            )
        if max_retained_runs < 1:
            raise ClipActionError(
                f"Invalid retained run count: {max_retained_runs}",
                code=ExitCode.VALIDATION_ERROR,
                hint="Keep at least one finished run.",
            )
        self.grace_period_seconds = grace_period_seconds
        self.max_retained_runs = max_retained_runs
        self._clock = clock
        self._lock = threading.RLock()
        self._handles: dict[str, RunHandle] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def register(self, handle: RunHandle) -> None:
        with self._lock:
            if self._closed:
                raise ClipActionError(
                    "Supervisor is shut down.",
                    code=ExitCode.RUNTIME_ERROR,
                    hint="Commands cannot start during application shutdown.",
                )
            if handle.run_id in self._handles:
                raise ClipActionError(
                    f"Run already registered: {handle.run_id}",
                    code=ExitCode.VALIDATION_ERROR,
                )
            self._handles[handle.run_id] = handle
            self._prune()
        logger.debug("Registered run=%s command=%s", handle.run_id, handle.command_name)

    def list(self) -> list[RunSnapshot]:
        with self._lock:
            handles = list(self._handles.values())
        snapshots = [handle.snapshot() for handle in handles]
        return sorted(snapshots, key=lambda item: (item.started_at, item.run_id))

    def get(self, run_id: str) -> RunSnapshot:
        return self._must_get(run_id).snapshot()

    def handle(self, run_id: str) -> RunHandle:
        return self._must_get(run_id)

    def running(self) -> list[RunSnapshot]:
        return [snapshot for snapshot in self.list() if not snapshot.is_terminal]

    def cancel(self, run_id: str) -> bool:
        handle = self._must_get(run_id)
        cancelled = handle.cancel()
        logger.info("Cancel requested run=%s changed=%s", run_id, cancelled)
        return cancelled

    def cancel_all(self) -> list[RunSnapshot]:
        """Terminate every live run; force-kill whatever outlives the grace period."""
        with self._lock:
            live = [handle for handle in self._handles.values() if not handle.done]
        if not live:
            return []
        logger.info("Cancelling all runs count=%s grace=%ss", len(live), self.grace_period_seconds)
        for handle in live:
            handle.cancel("Cancelled on shutdown.")

        deadline = self._clock() + self.grace_period_seconds
        stragglers: list[RunHandle] = []
        for handle in live:
            if not handle.wait(max(0.0, deadline - self._clock())):
                stragglers.append(handle)
        for handle in stragglers:
            logger.warning("Force killing run=%s command=%s", handle.run_id, handle.command_name)
            handle.kill()
        for handle in stragglers:
            if not handle.wait(_REAP_TIMEOUT_SECONDS):
                logger.error("Run did not exit after kill run=%s", handle.run_id)
        return [handle.snapshot() for handle in live]

    def wait_all(self, timeout: float | None = None) -> bool:
        deadline = None if timeout is None else self._clock() + timeout
        with self._lock:
            handles = list(self._handles.values())
        for handle in handles:
            remaining = None if deadline is None else max(0.0, deadline - self._clock())
            if not handle.wait(remaining):
                return False
        return True

    def dismiss(self, run_id: str) -> bool:
        with self._lock:
            handle = self._handles.get(run_id)
            if handle is None or not handle.done:
                return False
            del self._handles[run_id]
        logger.debug("Dismissed run=%s", run_id)
        return True

    def shutdown(self) -> list[RunSnapshot]:
        with self._lock:
            self._closed = True
        return self.cancel_all()

    def _prune(self) -> None:
        finished = [handle for handle in self._handles.values() if handle.done]
        overflow = len(finished) - self.max_retained_runs
        if overflow <= 0:
            return
        finished.sort(key=lambda item: item.started_at)
        for handle in finished[:overflow]:
            del self._handles[handle.run_id]
            logger.debug("Pruned run=%s", handle.run_id)

    def _must_get(self, run_id: str) -> RunHandle:
        with self._lock:
            handle = self._handles.get(run_id)
        if handle is None:
            raise ClipActionError(
                f"Run not found: {run_id}",
                code=ExitCode.VALIDATION_ERROR,
                hint="Select an existing run.",
            )
        return handle
