"""Tests for rsyncweb.jobs.broker."""

from __future__ import annotations

import asyncio
from collections import deque

import pytest

from rsyncweb.core.errors import NotFoundError
from rsyncweb.jobs.broker import StreamBroker
from rsyncweb.jobs.models import JobStatus, StreamEvent
from tests.helpers import collect, lines


class FakeJob:
    """Minimal stand-in for the registry's live state of one job."""

    def __init__(self, job_id: int = 1, maxlen: int = 100) -> None:
        self.job_id = job_id
        self.lock = asyncio.Lock()
        self.recent: deque[StreamEvent] = deque(maxlen=maxlen)

    def snapshot(self) -> list[StreamEvent]:
        return list(self.recent)

    async def emit(self, broker: StreamBroker, event: StreamEvent) -> int:
        async with self.lock:
            self.recent.append(event)
            return broker.publish(self.job_id, event)

    async def finish(self, broker: StreamBroker, status: JobStatus) -> int:
        async with self.lock:
            return broker.close(self.job_id, StreamEvent.done(status))


def _open(broker: StreamBroker, job: FakeJob) -> None:
    broker.open(job.job_id, lock=job.lock, replay=job.snapshot)


class TestSubscribe:

    @pytest.mark.asyncio
    async def test_unknown_job_raises_not_found(self, broker: StreamBroker):
        with pytest.raises(NotFoundError):
            await broker.subscribe(99)

    @pytest.mark.asyncio
    async def test_live_events_then_done(self, broker: StreamBroker):
        job = FakeJob()
        _open(broker, job)
        observer = await broker.subscribe(job.job_id)

        await job.emit(broker, StreamEvent.output("one"))
        await job.emit(broker, StreamEvent.progress("50%"))
        await job.emit(broker, StreamEvent.output("two"))
        await job.finish(broker, JobStatus.COMPLETED)

        events = await collect(observer)
        assert [e.to_dict() for e in events] == [
            {"type": "output", "data": "one"},
            {"type": "progress", "data": "50%"},
            {"type": "output", "data": "two"},
            {"type": "done", "status": "completed"},
        ]
        assert observer.closed

    @pytest.mark.asyncio
    async def test_late_subscriber_gets_backlog_without_gap(self, broker: StreamBroker):
        job = FakeJob()
        _open(broker, job)
        early = await broker.subscribe(job.job_id)
        for i in range(5):
            await job.emit(broker, StreamEvent.output(f"line {i}"))

        late = await broker.subscribe(job.job_id)
        for i in range(5, 8):
            await job.emit(broker, StreamEvent.output(f"line {i}"))
        await job.finish(broker, JobStatus.COMPLETED)

        expected = [f"line {i}" for i in range(8)]
        assert lines(await collect(early)) == expected
        assert lines(await collect(late)) == expected

    @pytest.mark.asyncio
    async def test_backlog_is_bounded(self, broker: StreamBroker):
        job = FakeJob(maxlen=3)
        _open(broker, job)
        for i in range(10):
            await job.emit(broker, StreamEvent.output(f"line {i}"))

        observer = await broker.subscribe(job.job_id)
        await job.finish(broker, JobStatus.FAILED)
        events = await collect(observer)
        assert lines(events) == ["line 7", "line 8", "line 9"]
        assert events[-1].status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_subscribe_after_close_raises_not_found(self, broker: StreamBroker):
        job = FakeJob()
        _open(broker, job)
        await job.finish(broker, JobStatus.COMPLETED)
        with pytest.raises(NotFoundError):
            await broker.subscribe(job.job_id)

    @pytest.mark.asyncio
    async def test_max_observers(self):
        broker = StreamBroker(queue_size=8, max_observers=2)
        job = FakeJob()
        _open(broker, job)
        await broker.subscribe(job.job_id)
        await broker.subscribe(job.job_id)
        with pytest.raises(ConnectionError):
            await broker.subscribe(job.job_id)

    @pytest.mark.asyncio
    async def test_subscribe_waits_for_job_lock(self, broker: StreamBroker):
        """Subscription snapshots the backlog only between publishes."""
        job = FakeJob()
        _open(broker, job)
        await job.lock.acquire()
        pending = asyncio.create_task(broker.subscribe(job.job_id))
        await asyncio.sleep(0.01)
        assert not pending.done()

        job.recent.append(StreamEvent.output("buffered"))
        broker.publish(job.job_id, StreamEvent.output("buffered"))
        job.lock.release()

        observer = await pending
        await job.finish(broker, JobStatus.COMPLETED)
        assert lines(await collect(observer)) == ["buffered"]


class TestPublish:

    @pytest.mark.asyncio
    async def test_publish_to_unknown_job_is_ignored(self, broker: StreamBroker):
        assert broker.publish(42, StreamEvent.output("nobody")) == 0

    @pytest.mark.asyncio
    async def test_publish_after_close_is_ignored(self, broker: StreamBroker):
        job = FakeJob()
        _open(broker, job)
        observer = await broker.subscribe(job.job_id)
        await job.finish(broker, JobStatus.COMPLETED)

        assert broker.publish(job.job_id, StreamEvent.output("late")) == 0
        events = await collect(observer)
        assert events[-1].is_terminal
        assert lines(events) == []

    @pytest.mark.asyncio
    async def test_slow_observer_dropped_without_blocking_others(self):
        broker = StreamBroker(queue_size=8, max_observers=10)
        job = FakeJob()
        _open(broker, job)
        slow = await broker.subscribe(job.job_id)
        fast = await broker.subscribe(job.job_id)

        received: list[StreamEvent] = []

        async def consume() -> None:
            async for event in fast:
                received.append(event)

        consumer = asyncio.create_task(consume())
        for i in range(50):
            await job.emit(broker, StreamEvent.output(f"line {i}"))
            await asyncio.sleep(0)
        await job.finish(broker, JobStatus.COMPLETED)
        await asyncio.wait_for(consumer, timeout=5)

        assert lines(received) == [f"line {i}" for i in range(50)]
        assert received[-1].is_terminal

        assert slow.dropped
        assert await slow.next_event() is None
        assert broker.observer_count(job.job_id) == 0

    @pytest.mark.asyncio
    async def test_drop_does_not_affect_job(self):
        broker = StreamBroker(queue_size=8, max_observers=10)
        job = FakeJob()
        _open(broker, job)
        await broker.subscribe(job.job_id)
        for i in range(20):
            await job.emit(broker, StreamEvent.output(f"line {i}"))

        assert broker.is_open(job.job_id)
        assert broker.observer_count(job.job_id) == 0
        late = await broker.subscribe(job.job_id)
        await job.finish(broker, JobStatus.COMPLETED)
        assert len(lines(await collect(late))) == 20


class TestUnsubscribe:

    @pytest.mark.asyncio
    async def test_unsubscribe_is_idempotent(self, broker: StreamBroker):
        job = FakeJob()
        _open(broker, job)
        observer = await broker.subscribe(job.job_id)
        assert broker.observer_count() == 1

        broker.unsubscribe(observer)
        broker.unsubscribe(observer)
        assert broker.observer_count() == 0
        assert await job.emit(broker, StreamEvent.output("x")) == 0

    @pytest.mark.asyncio
    async def test_unsubscribe_after_close(self, broker: StreamBroker):
        job = FakeJob()
        _open(broker, job)
        observer = await broker.subscribe(job.job_id)
        await job.finish(broker, JobStatus.CANCELLED)
        broker.unsubscribe(observer)  # Should not raise


class TestObserver:

    @pytest.mark.asyncio
    async def test_next_event_timeout(self, broker: StreamBroker):
        job = FakeJob()
        _open(broker, job)
        observer = await broker.subscribe(job.job_id)
        with pytest.raises(TimeoutError):
            await observer.next_event(timeout=0.05)

        await job.emit(broker, StreamEvent.output("after timeout"))
        event = await observer.next_event(timeout=1)
        assert event is not None
        assert event.data == "after timeout"

    @pytest.mark.asyncio
    async def test_no_events_after_done(self, broker: StreamBroker):
        job = FakeJob()
        _open(broker, job)
        observer = await broker.subscribe(job.job_id)
        await job.finish(broker, JobStatus.COMPLETED)

        assert (await observer.next_event()).is_terminal
        assert await observer.next_event() is None

    @pytest.mark.asyncio
    async def test_open_twice_rejected(self, broker: StreamBroker):
        job = FakeJob()
        _open(broker, job)
        with pytest.raises(RuntimeError):
            _open(broker, job)
