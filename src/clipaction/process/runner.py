"""Asynchronous, streaming execution of command pipelines."""

from __future__ import annotations

import logging as py_logging
import os
import signal
import subprocess
import threading
from collections.abc import Callable
from contextlib import suppress
from typing import IO, TYPE_CHECKING

from clipaction.errors import ClipActionError, ExitCode, SpawnError, StageFailure
from clipaction.logging import run_logger
from clipaction.pipeline.builder import PipelineSpec
from clipaction.process.models import DEFAULT_MAX_CAPTURE_BYTES, RunHandle, RunSnapshot

if TYPE_CHECKING:
    from clipaction.process.supervisor import ProcessSupervisor

logger = py_logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

Popen = Callable[..., subprocess.Popen]
ConfirmPrompt = Callable[[PipelineSpec], bool]
CompletionCallback = Callable[[RunSnapshot], None]


def _session_options() -> dict[str, object]:
    # Own process group so termination also reaches grandchildren holding our pipes.
    if os.name == "posix":
        return {"start_new_session": True}
    return {}


def _signal_stage(process: subprocess.Popen, *, force: bool) -> None:
    # The group id is the leader's pid, so a kill still reaches children after the leader exited.
    if os.name == "posix" and force:
        with suppress(OSError):
            os.killpg(process.pid, signal.SIGKILL)
        return
    if process.poll() is not None:
        return
    with suppress(OSError):
        if os.name == "posix":
            os.killpg(process.pid, signal.SIGTERM)
        elif force:
            process.kill()
        else:
            process.terminate()


def _start_thread(target: Callable[..., None], *args: object, name: str) -> threading.Thread:
    thread = threading.Thread(target=target, args=args, name=name, daemon=True)
    thread.start()
    return thread


def _write_chunk(stream: IO[bytes], chunk: bytes) -> bool:
    try:
        stream.write(chunk)
        stream.flush()
    except (OSError, ValueError):
        return False
    return True


def _close_stream(stream: IO[bytes] | None) -> None:
    if stream is None:
        return
    with suppress(OSError, ValueError):
        stream.close()


class _PipelineExecution:
    """Drives the stages of one pipeline and records the outcome on its handle.

    Stage N+1 is spawned lazily, on the first output chunk of stage N or when
    stage N exits 0 without output, so a stage that fails before writing
    anything never causes its successor to start.
    """

    def __init__(
        self,
        spec: PipelineSpec,
        handle: RunHandle,
        *,
        popen: Popen,
        grace_period_seconds: float,
    ) -> None:
        self.spec = spec
        self.handle = handle
        self._popen = popen
        self._grace_period_seconds = grace_period_seconds
        self._log = run_logger(logger, run_id=handle.run_id, command=spec.command_name)
        self._lock = threading.Lock()
        self._processes: list[subprocess.Popen | None] = [None] * len(spec.stages)
        self._stopped = threading.Event()
        self._timers: list[threading.Timer] = []

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def spawn_first(self) -> bool:
        stdin = subprocess.PIPE if self.spec.input is not None else subprocess.DEVNULL
        if self._spawn(0, stdin=stdin) is None:
            return False
        self.handle.mark_running()
        return True

    def execute(self) -> None:
        if self._processes[0] is None and not self.spawn_first():
            return
        if self.spec.max_wait_seconds:
            self._schedule(self.spec.max_wait_seconds, self._expire)

        first = self._processes[0]
        feeder: threading.Thread | None = None
        if self.spec.input is not None and first is not None and first.stdin is not None:
            feeder = _start_thread(
                self._feed,
                first.stdin,
                self.spec.input.data,
                name=f"clipaction-stdin-{self.handle.run_id[:8]}",
            )
        try:
            self._pump(0)
        finally:
            if feeder is not None:
                feeder.join()
            self._cancel_timers()

        last = self._processes[-1]
        if last is not None and last.returncode == 0:
            self.handle.finish(0)

    def stop(self) -> None:
        """Ask every live stage to terminate; escalate to a kill after the grace period."""
        with self._lock:
            if self._stopped.is_set():
                return
            self._stopped.set()
            live = [process for process in self._processes if process is not None]
        self._log.info("step=stop live=%s grace=%ss", len(live), self._grace_period_seconds)
        for process in live:
            _signal_stage(process, force=False)
        self._schedule(self._grace_period_seconds, self.force_kill)

    def force_kill(self) -> None:
        with self._lock:
            live = [process for process in self._processes if process is not None]
        for process in live:
            if process.poll() is None:
                self._log.warning("step=force-kill pid=%s", process.pid)
            _signal_stage(process, force=True)

    def _spawn(self, index: int, *, stdin: int) -> subprocess.Popen | None:
        argv = list(self.spec.stages[index].argv)
        self._log.debug("step=spawn stage=%s argv=%s", index + 1, argv)
        try:
            process = self._popen(
                argv,
                stdin=stdin,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                **_session_options(),
            )
        except OSError as exc:
            error = SpawnError(
                f"Failed to start '{argv[0]}': {exc.strerror or exc}",
                command=self.spec.command_name,
            )
            self._log.error("step=spawn-failed stage=%s error=%s", index + 1, exc)
            self.handle.fail(error.message)
            self.stop()
            return None

        with self._lock:
            self._processes[index] = process
            stopped = self._stopped.is_set()
        if stopped:
            _signal_stage(process, force=True)
        return process

    def _start_stage(self, index: int) -> tuple[subprocess.Popen | None, threading.Thread | None]:
        process = self._spawn(index, stdin=subprocess.PIPE)
        if process is None:
            return None, None
        pump = _start_thread(self._pump, index, name=f"clipaction-stage{index + 1}-{self.handle.run_id[:8]}")
        return process, pump

    def _pump(self, index: int) -> None:
        process = self._processes[index]
        if process is None or process.stdout is None:
            return
        is_last = index == len(self.spec.stages) - 1
        stderr_reader = _start_thread(
            self._drain,
            process.stderr,
            name=f"clipaction-stderr{index + 1}-{self.handle.run_id[:8]}",
        )
        downstream: subprocess.Popen | None = None
        downstream_pump: threading.Thread | None = None
        writable = True

        while True:
            try:
                chunk = process.stdout.read1(CHUNK_SIZE)
            except (OSError, ValueError) as exc:
                self._log.error("step=read-failed stage=%s error=%s", index + 1, exc)
                if self.handle.fail(f"Failed reading output of stage {index + 1}: {exc}"):
                    self.stop()
                break
            if not chunk:
                break
            if is_last:
                self.handle.append_stdout(chunk)
                continue
            if self.stopped:
                continue
            if downstream is None:
                downstream, downstream_pump = self._start_stage(index + 1)
                if downstream is None:
                    continue
            if writable:
                writable = _write_chunk(downstream.stdin, chunk)

        returncode = process.wait()
        stderr_reader.join()
        _close_stream(process.stdout)
        _close_stream(process.stderr)
        self._log.debug("step=stage-exit stage=%s exit=%s", index + 1, returncode)

        if returncode != 0:
            self._stage_failed(index, returncode)
        elif not is_last and downstream is None and not self.stopped:
            downstream, downstream_pump = self._start_stage(index + 1)

        if downstream is not None:
            _close_stream(downstream.stdin)
        if downstream_pump is not None:
            downstream_pump.join()

    def _stage_failed(self, index: int, returncode: int) -> None:
        if self.stopped:
            return
        failure = StageFailure(
            f"Stage {index + 1} ({self.spec.stages[index].executable}) exited with code {returncode}.",
            command=self.spec.command_name,
            exit_code=returncode,
        )
        self._log.warning("step=stage-failed stage=%s exit=%s", index + 1, returncode)
        if self.handle.fail(failure.message, exit_code=returncode):
            self.stop()

    def _drain(self, stream: IO[bytes] | None) -> None:
        if stream is None:
            return
        while True:
            try:
                chunk = stream.read1(CHUNK_SIZE)
            except (OSError, ValueError):
                return
            if not chunk:
                return
            self.handle.append_stderr(chunk)

    def _feed(self, stream: IO[bytes], data: bytes) -> None:
        try:
            stream.write(data)
        except (OSError, ValueError) as exc:
            self._log.debug("step=stdin-closed error=%s", exc)
        finally:
            _close_stream(stream)

    def _expire(self) -> None:
        if self.handle.fail(f"Timed out after {self.spec.max_wait_seconds:g}s."):
            self._log.warning("step=timeout limit=%ss", self.spec.max_wait_seconds)
            self.stop()

    def _schedule(self, delay: float, callback: Callable[[], None]) -> None:
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        with self._lock:
            self._timers.append(timer)
        timer.start()

    def _cancel_timers(self) -> None:
        with self._lock:
            timers = list(self._timers)
            self._timers.clear()
        for timer in timers:
            timer.cancel()


class ProcessRunner:
    def __init__(
        self,
        supervisor: ProcessSupervisor,
        *,
        max_capture_bytes: int = DEFAULT_MAX_CAPTURE_BYTES,
        confirm: ConfirmPrompt | None = None,
        popen: Popen = subprocess.Popen,
    ) -> None:
        self.supervisor = supervisor
        self.max_capture_bytes = max_capture_bytes
        self._confirm = confirm
        self._popen = popen

    def run(self, spec: PipelineSpec, *, on_complete: CompletionCallback | None = None) -> RunHandle:
        """Start ``spec`` and return its handle without waiting for completion."""
        if not spec.stages:
            raise ClipActionError(
                f"Pipeline has no stages: {spec.command_name}",
                code=ExitCode.VALIDATION_ERROR,
                hint="Build the pipeline from a definition with a command line.",
            )
        handle = RunHandle(
            spec.command_name,
            item_id=spec.item_id,
            source_tab=spec.source_tab,
            captures=spec.captures,
            max_capture_bytes=self.max_capture_bytes,
        )
        execution = _PipelineExecution(
            spec,
            handle,
            popen=self._popen,
            grace_period_seconds=self.supervisor.grace_period_seconds,
        )
        handle.bind_controls(cancel=execution.stop, kill=execution.force_kill)
        self.supervisor.register(handle)
        logger.info("run-event run=%s command=%s step=start pipeline=%s", handle.run_id, spec.command_name, spec.describe())

        if spec.confirm_before_run:
            target: Callable[[], None] = lambda: self._confirm_and_execute(execution)
        elif execution.spawn_first():
            target = execution.execute
        else:
            self._complete(handle, on_complete)
            return handle

        _start_thread(self._drive, target, handle, on_complete, name=f"clipaction-run-{handle.run_id[:8]}")
        return handle

    def _confirm_and_execute(self, execution: _PipelineExecution) -> None:
        handle = execution.handle
        if self._confirm is None:
            logger.warning("No confirmation prompt configured; running command=%s", execution.spec.command_name)
        elif not self._confirm(execution.spec):
            handle.terminate("Declined before start.")
            return
        if handle.is_terminal:
            return
        execution.execute()

    def _drive(
        self,
        target: Callable[[], None],
        handle: RunHandle,
        on_complete: CompletionCallback | None,
    ) -> None:
        try:
            target()
        except Exception as exc:
            logger.exception("Unhandled error in pipeline run=%s", handle.run_id)
            if handle.fail(f"Internal error: {exc}"):
                handle.kill()
        finally:
            self._complete(handle, on_complete)

    def _complete(self, handle: RunHandle, on_complete: CompletionCallback | None) -> None:
        # Waiters are released only after the callback has routed the output.
        handle.seal()
        try:
            if on_complete is not None:
                on_complete(handle.snapshot())
        except Exception:
            logger.exception("Completion callback failed run=%s", handle.run_id)
        finally:
            handle.mark_done()
