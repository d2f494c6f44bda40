"""Tests for rsyncweb.jobs.runner.

Covers line splitting, output ordering, exit classification inputs,
cancellation escalation, timeouts and spawn failures. Processes are
short Python scripts run with the current interpreter.
"""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path

import pytest

from rsyncweb.core.errors import SpawnError
from rsyncweb.jobs.models import CommandSpec, StreamEvent
from rsyncweb.jobs.runner import LineSplitter, ProcessHandle, ProcessRunner
from tests.helpers import lines, python_spec


class Recorder:
    """Collects runner callbacks for assertions."""

    def __init__(self) -> None:
        self.events: list[StreamEvent] = []
        self.exits: list[tuple[int | None, bool]] = []
        self.exited = asyncio.Event()
        self.events_at_exit: int | None = None

    async def on_output(self, event: StreamEvent) -> None:
        self.events.append(event)

    async def on_exit(self, handle: ProcessHandle, code: int | None, cancelled: bool) -> None:
        self.events_at_exit = len(self.events)
        self.exits.append((code, cancelled))
        self.exited.set()

    async def wait(self, timeout: float = 10.0) -> None:
        await asyncio.wait_for(self.exited.wait(), timeout=timeout)


async def _run(runner: ProcessRunner, spec: CommandSpec) -> tuple[Recorder, ProcessHandle]:
    rec = Recorder()
    handle = await runner.start(1, spec, rec.on_output, rec.on_exit)
    await rec.wait()
    return rec, handle


# ─── Line Splitting ────────────────────────────────────────────────────


class TestLineSplitter:

    def test_newline_terminated_lines(self):
        splitter = LineSplitter()
        events = splitter.feed("one\ntwo\n")
        assert [(e.type, e.data) for e in events] == [("output", "one"), ("output", "two")]

    def test_crlf_is_a_single_output_line(self):
        splitter = LineSplitter()
        events = splitter.feed("one\r\ntwo\r\n")
        assert [(e.type, e.data) for e in events] == [("output", "one"), ("output", "two")]

    def test_crlf_split_across_chunks(self):
        splitter = LineSplitter()
        events = splitter.feed("one\r") + splitter.feed("\ntwo\n")
        assert [(e.type, e.data) for e in events] == [("output", "one"), ("output", "two")]

    def test_bare_carriage_return_is_progress(self):
        splitter = LineSplitter()
        events = splitter.feed("  10%\r  50%\r 100%\n")
        assert [(e.type, e.data) for e in events] == [
            ("progress", "  10%"),
            ("progress", "  50%"),
            ("output", " 100%"),
        ]

    def test_partial_line_held_until_terminator(self):
        splitter = LineSplitter()
        assert splitter.feed("hel") == []
        assert splitter.feed("lo") == []
        events = splitter.feed(" world\n")
        assert [e.data for e in events] == ["hello world"]

    def test_flush_emits_final_fragment(self):
        splitter = LineSplitter()
        splitter.feed("no newline")
        events = splitter.flush()
        assert [(e.type, e.data) for e in events] == [("output", "no newline")]
        assert splitter.flush() == []

    def test_flush_trailing_carriage_return(self):
        splitter = LineSplitter()
        splitter.feed("99%\r")
        assert [(e.type, e.data) for e in splitter.flush()] == [("progress", "99%")]

    def test_empty_progress_fragments_discarded(self):
        splitter = LineSplitter()
        assert splitter.feed("\r\r   \r") == []

    def test_empty_output_lines_kept(self):
        splitter = LineSplitter()
        events = splitter.feed("a\n\nb\n")
        assert [e.data for e in events] == ["a", "", "b"]


# ─── Running Processes ─────────────────────────────────────────────────


class TestStart:

    @pytest.mark.asyncio
    async def test_output_delivered_in_order(self, runner: ProcessRunner):
        code = "for i in range(200): print(f'line {i}', flush=True)"
        rec, handle = await _run(runner, python_spec(code))

        assert lines(rec.events) == [f"line {i}" for i in range(200)]
        assert rec.exits == [(0, False)]
        assert handle.exited
        assert handle.exit_code == 0

    @pytest.mark.asyncio
    async def test_exit_reported_after_all_output(self, runner: ProcessRunner):
        code = "import sys; sys.stdout.write('a\\nb\\npartial'); sys.stdout.flush()"
        rec, _ = await _run(runner, python_spec(code))

        assert lines(rec.events) == ["a", "b", "partial"]
        assert rec.events_at_exit == len(rec.events)

    @pytest.mark.asyncio
    async def test_stderr_merged_with_stdout(self, runner: ProcessRunner):
        code = (
            "import sys\n"
            "print('out', flush=True)\n"
            "print('err', file=sys.stderr, flush=True)\n"
            "print('out again', flush=True)\n"
        )
        rec, _ = await _run(runner, python_spec(code))
        assert lines(rec.events) == ["out", "err", "out again"]

    @pytest.mark.asyncio
    async def test_lines_stream_before_exit(self, runner: ProcessRunner):
        """Output arrives while the process is still running."""
        code = "import time; print('first', flush=True); time.sleep(2)"
        rec = Recorder()
        await runner.start(1, python_spec(code), rec.on_output, rec.on_exit)

        for _ in range(100):
            if rec.events:
                break
            await asyncio.sleep(0.05)
        assert lines(rec.events) == ["first"]
        assert not rec.exited.is_set()
        await rec.wait()

    @pytest.mark.asyncio
    async def test_nonzero_exit_code(self, runner: ProcessRunner):
        rec, _ = await _run(runner, python_spec("import sys; sys.exit(23)"))
        assert rec.exits == [(23, False)]

    @pytest.mark.asyncio
    async def test_endpoints_are_last_arguments(self, runner: ProcessRunner):
        code = "import sys; print(sys.argv[1:])"
        rec, _ = await _run(runner, python_spec(code, "/tmp/a", "/tmp/b"))
        assert lines(rec.events) == ["['/tmp/a', '/tmp/b']"]

    @pytest.mark.asyncio
    async def test_runs_in_configured_directory(self, tmp_path: Path):
        runner = ProcessRunner(cwd=tmp_path)
        rec, _ = await _run(runner, python_spec("import os; print(os.getcwd())"))
        assert Path(lines(rec.events)[0]).resolve() == tmp_path.resolve()

    @pytest.mark.asyncio
    async def test_invalid_utf8_is_replaced(self, runner: ProcessRunner):
        code = "import sys; sys.stdout.buffer.write(b'caf\\xe9\\n'); sys.stdout.flush()"
        rec, _ = await _run(runner, python_spec(code))
        assert lines(rec.events) == ["caf\ufffd"]

    @pytest.mark.asyncio
    async def test_progress_lines_tagged(self, runner: ProcessRunner):
        code = "import sys; sys.stdout.write('f.txt\\n 10%\\r 100%\\n'); sys.stdout.flush()"
        rec, _ = await _run(runner, python_spec(code))
        assert [(e.type, e.data) for e in rec.events] == [
            ("output", "f.txt"),
            ("progress", " 10%"),
            ("output", " 100%"),
        ]


class TestSpawnFailure:

    @pytest.mark.asyncio
    async def test_missing_executable(self, runner: ProcessRunner, tmp_path: Path):
        rec = Recorder()
        spec = CommandSpec(str(tmp_path / "no-such-rsync"), "a", "b")
        with pytest.raises(SpawnError, match="not found"):
            await runner.start(1, spec, rec.on_output, rec.on_exit)
        assert rec.exits == []

    @pytest.mark.asyncio
    async def test_not_executable(self, runner: ProcessRunner, tmp_path: Path):
        script = tmp_path / "rsync"
        script.write_text("#!/bin/sh\necho hi\n")
        script.chmod(0o644)
        rec = Recorder()
        with pytest.raises(SpawnError):
            await runner.start(1, CommandSpec(str(script), "a", "b"), rec.on_output, rec.on_exit)


# ─── Cancellation ──────────────────────────────────────────────────────


class TestCancel:

    @pytest.mark.asyncio
    async def test_cancel_terminates_process(self, runner: ProcessRunner):
        code = "import time; print('ready', flush=True); time.sleep(30)"
        rec = Recorder()
        handle = await runner.start(1, python_spec(code), rec.on_output, rec.on_exit)

        await runner.cancel(handle)
        await rec.wait()

        assert handle.cancel_requested
        assert rec.exits == [(-signal.SIGTERM, True)]

    @pytest.mark.asyncio
    async def test_cancel_escalates_to_kill(self, tmp_path: Path):
        runner = ProcessRunner(cwd=tmp_path, grace_seconds=0.3)
        code = (
            "import signal, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "print('ignoring', flush=True)\n"
            "time.sleep(30)\n"
        )
        rec = Recorder()
        handle = await runner.start(1, python_spec(code), rec.on_output, rec.on_exit)
        # Wait until the handler is installed.
        for _ in range(100):
            if rec.events:
                break
            await asyncio.sleep(0.05)

        await runner.cancel(handle)
        await rec.wait()
        assert rec.exits == [(-signal.SIGKILL, True)]

    @pytest.mark.asyncio
    async def test_cancel_reaches_child_processes(self, runner: ProcessRunner):
        """The whole process group is signalled, not only the direct child."""
        code = (
            "import subprocess, sys\n"
            "child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(30)'])\n"
            "print(child.pid, flush=True)\n"
            "child.wait()\n"
        )
        rec = Recorder()
        handle = await runner.start(1, python_spec(code), rec.on_output, rec.on_exit)
        for _ in range(100):
            if rec.events:
                break
            await asyncio.sleep(0.05)

        await runner.cancel(handle)
        await rec.wait()
        assert rec.exits[0][1] is True

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, runner: ProcessRunner):
        rec = Recorder()
        handle = await runner.start(
            1, python_spec("import time; time.sleep(30)"), rec.on_output, rec.on_exit
        )
        await runner.cancel(handle)
        await runner.cancel(handle)
        await rec.wait()
        assert len(rec.exits) == 1

    @pytest.mark.asyncio
    async def test_cancel_after_exit_is_noop(self, runner: ProcessRunner):
        rec, handle = await _run(runner, python_spec("print('done')"))
        await runner.cancel(handle)
        assert not handle.cancel_requested
        assert rec.exits == [(0, False)]

    @pytest.mark.asyncio
    async def test_cancel_while_draining_output_is_noop(self, runner: ProcessRunner):
        """A process that already exited is not reported as cancelled."""
        gate = asyncio.Event()
        rec = Recorder()

        async def slow_output(event: StreamEvent) -> None:
            await gate.wait()
            await rec.on_output(event)

        code = "for i in range(50): print(f'line-{i}', flush=True)"
        handle = await runner.start(1, python_spec(code), slow_output, rec.on_exit)
        for _ in range(200):
            if handle.process.returncode is not None:
                break
            await asyncio.sleep(0.02)
        assert handle.process.returncode == 0
        assert not handle.exited

        await runner.cancel(handle)
        assert not handle.cancel_requested

        gate.set()
        await rec.wait()
        assert rec.exits == [(0, False)]
        assert lines(rec.events) == [f"line-{i}" for i in range(50)]

    @pytest.mark.asyncio
    async def test_handle_wait(self, runner: ProcessRunner):
        rec = Recorder()
        handle = await runner.start(1, python_spec("print('x')"), rec.on_output, rec.on_exit)
        await asyncio.wait_for(handle.wait(), timeout=10)
        assert rec.exited.is_set()


# ─── Timeout ───────────────────────────────────────────────────────────


class TestTimeout:

    @pytest.mark.asyncio
    async def test_timeout_terminates_and_flags_handle(self, tmp_path: Path):
        runner = ProcessRunner(cwd=tmp_path, timeout_seconds=0.3, grace_seconds=1.0)
        rec, handle = await _run(runner, python_spec("import time; time.sleep(30)"))

        assert handle.timed_out
        assert not handle.cancel_requested
        assert rec.exits == [(-signal.SIGTERM, False)]

    @pytest.mark.asyncio
    async def test_fast_process_not_timed_out(self, tmp_path: Path):
        runner = ProcessRunner(cwd=tmp_path, timeout_seconds=10)
        rec, handle = await _run(runner, python_spec("print('quick')"))
        assert not handle.timed_out
        assert rec.exits == [(0, False)]


class TestOutputCallbackFailure:

    @pytest.mark.asyncio
    async def test_exit_still_reported_when_callback_raises(self, runner: ProcessRunner):
        rec = Recorder()

        async def broken(event: StreamEvent) -> None:
            raise RuntimeError("subscriber exploded")

        await runner.start(
            1, python_spec("import time; print('x', flush=True); time.sleep(30)"), broken, rec.on_exit
        )
        await rec.wait()
        assert len(rec.exits) == 1
