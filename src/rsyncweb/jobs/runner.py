"""Subprocess runner for synchronization jobs.

Owns the lifecycle of one external process per job: spawn, line-oriented
streaming of its merged stdout/stderr, exit detection, cooperative
cancellation and an optional wall-clock timeout.

Security Note: Uses asyncio.create_subprocess_exec(), so arguments are
passed as a list and never interpolated into a shell command.

Each process is started in its own session (``start_new_session=True``)
so cancellation can signal the whole process group, including the
remote-shell children rsync spawns for SSH transfers.
"""

from __future__ import annotations

import asyncio
import codecs
import os
import signal
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

from rsyncweb.core.constants import GRACEFUL_TERMINATION_SECONDS, READ_CHUNK_BYTES
from rsyncweb.core.errors import SpawnError
from rsyncweb.core.logging import get_logger
from rsyncweb.core.task_utils import watch_task
from rsyncweb.jobs.models import CommandSpec, StreamEvent

_logger = get_logger("runner")

OutputCallback = Callable[[StreamEvent], Awaitable[None]]
ExitCallback = Callable[["ProcessHandle", int | None, bool], Awaitable[None]]


class LineSplitter:
    """Incremental splitter turning decoded text into output/progress events.

    ``\\n`` and ``\\r\\n`` end an ``output`` line. A bare ``\\r`` ends an
    in-place status line, which becomes a ``progress`` event. Partial
    lines are held until their terminator arrives or ``flush()`` is called.
    """

    def __init__(self) -> None:
        self._buf: list[str] = []
        self._pending_cr = False

    def feed(self, text: str) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for ch in text:
            if self._pending_cr:
                self._pending_cr = False
                if ch == "\n":
                    events.append(StreamEvent.output(self._take()))
                    continue
                self._emit_progress(events)
            if ch == "\n":
                events.append(StreamEvent.output(self._take()))
            elif ch == "\r":
                self._pending_cr = True
            else:
                self._buf.append(ch)
        return events

    def flush(self) -> list[StreamEvent]:
        """Emit whatever is buffered; called once the stream hits EOF."""
        events: list[StreamEvent] = []
        if self._pending_cr:
            self._pending_cr = False
            self._emit_progress(events)
        elif self._buf:
            events.append(StreamEvent.output(self._take()))
        return events

    def _take(self) -> str:
        line = "".join(self._buf)
        self._buf.clear()
        return line

    def _emit_progress(self, events: list[StreamEvent]) -> None:
        line = self._take()
        if line.strip():
            events.append(StreamEvent.progress(line))


@dataclass
class ProcessHandle:
    """Handle to one running job process, used for cancellation."""

    job_id: int
    process: asyncio.subprocess.Process
    started_at: float = field(default_factory=time.time)
    cancel_requested: bool = False
    timed_out: bool = False
    exited: bool = False
    exit_code: int | None = None
    _supervisor: asyncio.Task[None] | None = field(default=None, repr=False)
    _escalation: asyncio.Task[None] | None = field(default=None, repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid

    async def wait(self) -> None:
        """Wait until the exit callback for this handle has run."""
        if self._supervisor is not None:
            await asyncio.shield(self._supervisor)


class ProcessRunner:
    """Launches and supervises synchronization processes.

    Usage:
        runner = ProcessRunner(cwd=work_dir, timeout_seconds=3600)
        handle = await runner.start(job_id, spec, on_output, on_exit)
        ...
        await runner.cancel(handle)
    """

    def __init__(
        self,
        *,
        cwd: Path | str | None = None,
        timeout_seconds: float | None = None,
        grace_seconds: float = GRACEFUL_TERMINATION_SECONDS,
        env: dict[str, str] | None = None,
    ) -> None:
        """Initialize the runner.

        Args:
            cwd: Working directory for launched processes.
            timeout_seconds: Wall-clock limit per process; None disables it.
            grace_seconds: Delay between SIGTERM and SIGKILL on cancel.
            env: Environment for the processes (defaults to ours).
        """
        self.cwd = cwd
        self.timeout_seconds = timeout_seconds
        self.grace_seconds = grace_seconds
        self.env = env

    async def start(
        self,
        job_id: int,
        spec: CommandSpec,
        on_output: OutputCallback,
        on_exit: ExitCallback,
    ) -> ProcessHandle:
        """Spawn the process and begin streaming its output.

        Returns as soon as the process exists. ``on_output`` receives every
        event in production order; ``on_exit`` is awaited exactly once,
        after the last output event.

        Raises:
            SpawnError: If the executable is missing or cannot be executed.
        """
        argv = spec.argv
        _logger.debug(
            "runner.starting",
            job_id=job_id,
            command=argv[0],
            args_count=len(argv) - 1,
            cwd=str(self.cwd) if self.cwd else None,
        )
        env = self.env if self.env is not None else os.environ.copy()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=self.cwd,
                env=env,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise SpawnError(f"Executable not found: {argv[0]}") from e
        except PermissionError as e:
            raise SpawnError(f"Permission denied executing {argv[0]}") from e
        except OSError as e:
            raise SpawnError(f"Failed to start {argv[0]}: {e}") from e

        handle = ProcessHandle(job_id=job_id, process=process)
        _logger.info("runner.spawned", job_id=job_id, pid=process.pid)

        handle._supervisor = watch_task(
            asyncio.create_task(
                self._supervise(handle, on_output, on_exit),
                name=f"job-{job_id}-supervisor",
            ),
            _logger,
            "runner.supervisor_died",
            job_id=job_id,
        )
        return handle

    async def cancel(self, handle: ProcessHandle) -> None:
        """Request graceful termination of the process.

        Sends SIGTERM to the process group, then SIGKILL if it is still
        alive after the grace period. Returns once the first signal has
        been sent. Cancelling a handle whose process already exited, even
        if its last output is still being read, is a no-op.
        """
        if handle.exited or handle.cancel_requested:
            return
        if handle.process.returncode is not None:
            # Exited on its own; the remaining output is still being read.
            _logger.debug("runner.cancel_after_exit", job_id=handle.job_id, pid=handle.pid)
            return
        handle.cancel_requested = True
        _logger.info("runner.cancel_requested", job_id=handle.job_id, pid=handle.pid)
        self._begin_termination(handle)

    def _begin_termination(self, handle: ProcessHandle) -> None:
        self._signal_group(handle, signal.SIGTERM)
        if handle._escalation is None:
            handle._escalation = watch_task(
                asyncio.create_task(
                    self._escalate(handle), name=f"job-{handle.job_id}-escalation"
                ),
                _logger,
                "runner.escalation_died",
                job_id=handle.job_id,
            )

    async def _escalate(self, handle: ProcessHandle) -> None:
        """Force-kill the process group if SIGTERM did not end it in time."""
        try:
            await asyncio.wait_for(handle.process.wait(), timeout=self.grace_seconds)
        except TimeoutError:
            _logger.warning(
                "runner.kill_after_grace",
                job_id=handle.job_id,
                pid=handle.pid,
                grace_seconds=self.grace_seconds,
            )
            self._signal_group(handle, signal.SIGKILL)

    @staticmethod
    def _signal_group(handle: ProcessHandle, sig: int) -> None:
        if handle.process.returncode is not None:
            return
        try:
            os.killpg(os.getpgid(handle.pid), sig)
        except (OSError, ProcessLookupError):
            # Group already gone; fall back to the direct child.
            try:
                handle.process.send_signal(sig)
            except ProcessLookupError:
                pass

    async def _watchdog(self, handle: ProcessHandle, timeout: float) -> None:
        await asyncio.sleep(timeout)
        if handle.process.returncode is None and not handle.cancel_requested:
            handle.timed_out = True
            _logger.warning(
                "runner.timeout", job_id=handle.job_id, pid=handle.pid, timeout_seconds=timeout
            )
            self._begin_termination(handle)

    async def _pump(self, handle: ProcessHandle, on_output: OutputCallback) -> None:
        stream = handle.process.stdout
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        splitter = LineSplitter()
        while True:
            chunk = await stream.read(READ_CHUNK_BYTES)
            if not chunk:
                break
            for event in splitter.feed(decoder.decode(chunk)):
                await on_output(event)
        for event in splitter.feed(decoder.decode(b"", final=True)) + splitter.flush():
            await on_output(event)

    async def _supervise(
        self,
        handle: ProcessHandle,
        on_output: OutputCallback,
        on_exit: ExitCallback,
    ) -> None:
        watchdog: asyncio.Task[None] | None = None
        if self.timeout_seconds is not None:
            watchdog = asyncio.create_task(
                self._watchdog(handle, self.timeout_seconds),
                name=f"job-{handle.job_id}-watchdog",
            )
        try:
            await self._pump(handle, on_output)
        except asyncio.CancelledError:
            # Never leave an unsupervised process behind.
            self._signal_group(handle, signal.SIGKILL)
            raise
        except Exception:
            _logger.exception("runner.stream_failed", job_id=handle.job_id, pid=handle.pid)
            self._signal_group(handle, signal.SIGKILL)
        finally:
            if watchdog is not None:
                watchdog.cancel()

        returncode = await handle.process.wait()
        if handle._escalation is not None and not handle._escalation.done():
            handle._escalation.cancel()

        handle.exited = True
        handle.exit_code = returncode
        duration = time.time() - handle.started_at
        _logger.info(
            "runner.exited",
            job_id=handle.job_id,
            pid=handle.pid,
            exit_code=returncode,
            cancelled=handle.cancel_requested,
            timed_out=handle.timed_out,
            duration_seconds=round(duration, 3),
        )
        await on_exit(handle, returncode, handle.cancel_requested)


__all__ = ["LineSplitter", "ProcessHandle", "ProcessRunner"]
