"""In-memory registry of live jobs.

The registry is the bridge between the process runner, the history
store and the stream broker. It owns the live state of every job that
is ``pending`` or ``running``: the process handle, the bounded buffer of
recent output and the per-job lock that serializes status changes,
buffer appends and broker deliveries for that job.

A job's live entry is evicted exactly when its terminal event has been
handed to the broker. From then on the job exists only in history.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field

from rsyncweb.core.constants import RECENT_OUTPUT_LINES
from rsyncweb.core.errors import NotFoundError, RsyncWebError, SpawnError
from rsyncweb.core.logging import get_logger, job_context
from rsyncweb.jobs.broker import StreamBroker
from rsyncweb.jobs.history import HistoryStore
from rsyncweb.jobs.models import CommandSpec, JobStatus, StreamEvent, classify_exit
from rsyncweb.jobs.runner import ProcessHandle, ProcessRunner

_logger = get_logger("registry")


@dataclass
class LiveJob:
    """Mutable execution state of one pending or running job.

    Guarded by ``lock``, which the broker topic for this job shares.
    """

    job_id: int
    spec: CommandSpec
    recent: deque[StreamEvent]
    status: JobStatus = JobStatus.PENDING
    handle: ProcessHandle | None = None
    cancel_requested: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # Set once the running transition is persisted (or spawning failed),
    # so the exit path never overtakes it.
    started: asyncio.Event = field(default_factory=asyncio.Event)

    def append(self, event: StreamEvent) -> None:
        """Buffer an event; consecutive progress updates replace each other."""
        if event.type == "progress" and self.recent and self.recent[-1].type == "progress":
            self.recent[-1] = event
        else:
            self.recent.append(event)

    def snapshot(self) -> list[StreamEvent]:
        return list(self.recent)

    def rendered_output(self) -> str:
        return "\n".join(e.data or "" for e in self.recent)


class JobRegistry:
    """Authoritative map of jobs that have not yet reached a terminal state.

    Usage::

        registry = JobRegistry(history, broker, runner)
        job_id = await registry.submit(spec)
        observer = await broker.subscribe(job_id)
        await registry.cancel(job_id)
    """

    def __init__(
        self,
        history: HistoryStore,
        broker: StreamBroker,
        runner: ProcessRunner,
        *,
        recent_output_lines: int = RECENT_OUTPUT_LINES,
    ) -> None:
        self._history = history
        self._broker = broker
        self._runner = runner
        self._recent_output_lines = recent_output_lines
        self._live: dict[int, LiveJob] = {}

    @property
    def broker(self) -> StreamBroker:
        return self._broker

    @property
    def history(self) -> HistoryStore:
        return self._history

    def running_count(self) -> int:
        return len(self._live)

    def live_job_ids(self) -> list[int]:
        return sorted(self._live)

    def is_live(self, job_id: int) -> bool:
        return job_id in self._live

    async def submit(self, spec: CommandSpec) -> int:
        """Create a job and start its process.

        Suspends until the process is confirmed started, never until it
        finishes. The job is visible to ``subscribe`` as soon as its
        record exists, so observers can attach before the first line.

        Raises:
            SpawnError: The process could not be started. The job has been
                persisted as ``failed`` and ``SpawnError.job_id`` holds its id.
        """
        job_id = await self._history.create(spec)
        live = LiveJob(
            job_id=job_id,
            spec=spec,
            recent=deque(maxlen=self._recent_output_lines),
        )
        self._live[job_id] = live
        self._broker.open(job_id, lock=live.lock, replay=live.snapshot)

        with job_context(job_id):
            _logger.info("registry.submitted", command=spec.render())
            try:
                handle = await self._runner.start(
                    job_id,
                    spec,
                    lambda event: self._on_output(live, event),
                    lambda h, code, cancelled: self._on_exit(live, h, code, cancelled),
                )
            except SpawnError as e:
                await self._fail_spawn(live, str(e))
                raise SpawnError(str(e), job_id=job_id) from e

            try:
                async with live.lock:
                    live.handle = handle
                    live.status = JobStatus.RUNNING
                await self._history.update_status(
                    job_id, JobStatus.RUNNING, started_at=handle.started_at
                )
            finally:
                live.started.set()

            if live.cancel_requested:
                # A cancel arrived while the process was being spawned.
                await self._runner.cancel(handle)
        return job_id

    async def cancel(self, job_id: int) -> JobStatus:
        """Request cooperative termination of a live job.

        Returns once the request has been issued, with the status the job
        had at that moment (``pending`` while its process is still being
        started). The outcome arrives later as the job's terminal event.

        Raises:
            NotFoundError: No live entry exists (unknown or already terminal).
        """
        live = self._live.get(job_id)
        if live is None:
            raise NotFoundError(f"Job {job_id} is not running")
        async with live.lock:
            live.cancel_requested = True
            handle = live.handle
            status = live.status
        with job_context(job_id):
            _logger.info("registry.cancel", status=status.value, has_process=handle is not None)
        if handle is not None:
            await self._runner.cancel(handle)
        return status

    async def get_live_state(self, job_id: int) -> tuple[list[StreamEvent], JobStatus]:
        """Return the buffered recent output and current status of a live job.

        Raises:
            NotFoundError: The job is not live. It may still exist in history.
        """
        live = self._live.get(job_id)
        if live is None:
            raise NotFoundError(f"Job {job_id} is not running")
        async with live.lock:
            return live.snapshot(), live.status

    async def shutdown(self, timeout: float | None = None) -> None:
        """Cancel every live job and wait for their exit handling."""
        jobs = list(self._live.values())
        if not jobs:
            return
        _logger.info("registry.shutdown", live_jobs=len(jobs))
        for live in jobs:
            try:
                await self.cancel(live.job_id)
            except NotFoundError:
                continue
        handles = [live.handle for live in jobs if live.handle is not None]
        if not handles:
            return
        waiter = asyncio.gather(*(h.wait() for h in handles), return_exceptions=True)
        try:
            await asyncio.wait_for(waiter, timeout=timeout)
        except TimeoutError:
            _logger.warning("registry.shutdown_timeout", pending=self.running_count())

    async def _on_output(self, live: LiveJob, event: StreamEvent) -> None:
        async with live.lock:
            live.append(event)
            self._broker.publish(live.job_id, event)

    async def _on_exit(
        self,
        live: LiveJob,
        handle: ProcessHandle,
        exit_code: int | None,
        was_cancelled: bool,
    ) -> None:
        await live.started.wait()
        job_id = live.job_id
        status = classify_exit(exit_code, was_cancelled, handle.timed_out)
        error_message = None
        if handle.timed_out:
            error_message = f"timed out after {self._runner.timeout_seconds:g}s"

        with job_context(job_id):
            async with live.lock:
                output = live.rendered_output()
            try:
                await self._history.update_status(
                    job_id,
                    status,
                    exit_code=exit_code,
                    error_message=error_message,
                    output=output,
                )
            except RsyncWebError:
                _logger.exception("registry.persist_failed", status=status.value)
            await self._finish(live, status)
            _logger.info(
                "registry.finished",
                status=status.value,
                exit_code=exit_code,
            )

    async def _fail_spawn(self, live: LiveJob, message: str) -> None:
        job_id = live.job_id
        _logger.error("registry.spawn_failed", error=message)
        diagnostic = StreamEvent.output(message)
        async with live.lock:
            live.append(diagnostic)
            self._broker.publish(job_id, diagnostic)
        try:
            await self._history.update_status(
                job_id,
                JobStatus.FAILED,
                error_message=message,
                output=message,
            )
        except RsyncWebError:
            _logger.exception("registry.persist_failed", status=JobStatus.FAILED.value)
        finally:
            live.started.set()
        await self._finish(live, JobStatus.FAILED)

    async def _finish(self, live: LiveJob, status: JobStatus) -> None:
        """Hand the terminal event to the broker, then evict the job."""
        async with live.lock:
            live.status = status
            self._broker.close(live.job_id, StreamEvent.done(status))
            self._live.pop(live.job_id, None)


__all__ = ["JobRegistry", "LiveJob"]
