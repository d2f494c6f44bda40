"""Per-job publish/subscribe fan-out of stream events.

Each live job has a topic. Observers subscribe to a topic and receive
the job's recent output first, then every event published afterwards,
ending with the terminal ``done`` event. Every observer has a bounded
queue: an observer that falls behind is dropped rather than slowing
the producer or the other observers.

Locking: a topic shares its lock with the job's live state in the
registry. ``publish`` and ``close`` must be called with that lock held,
and ``subscribe`` takes it while it snapshots the replay buffer, so a
late subscriber never sees a gap or a duplicate between the backlog
and the live events.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import deque
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime

from rsyncweb.core.constants import MAX_OBSERVERS, OBSERVER_QUEUE_SIZE
from rsyncweb.core.errors import NotFoundError
from rsyncweb.core.logging import get_logger
from rsyncweb.jobs.models import StreamEvent

_logger = get_logger("broker")

ReplayFn = Callable[[], list[StreamEvent]]

# Queued in place of events when an observer is disconnected for lagging.
_DROPPED = object()


class Observer:
    """A subscription to one job's event stream.

    Iterate with ``async for event in observer`` or call ``next_event()``
    directly. Iteration ends after ``done`` or when the observer has been
    dropped.
    """

    def __init__(self, job_id: int, backlog: list[StreamEvent], queue_size: int) -> None:
        self.observer_id = str(uuid.uuid4())
        self.job_id = job_id
        self.connected_at = datetime.now(UTC)
        self.dropped = False
        self._backlog: deque[StreamEvent] = deque(backlog)
        self._queue: asyncio.Queue[StreamEvent | object] = asyncio.Queue(maxsize=queue_size)
        self._finished = False

    @property
    def closed(self) -> bool:
        return self._finished

    def _offer(self, event: StreamEvent) -> bool:
        """Queue an event without blocking. Returns False on overflow."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def _drop(self) -> None:
        """Discard undelivered events and end the stream for this observer."""
        self.dropped = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_DROPPED)

    async def next_event(self, timeout: float | None = None) -> StreamEvent | None:
        """Return the next event, or None once the stream has ended.

        Raises:
            TimeoutError: If ``timeout`` elapses with no event available.
        """
        if self._finished:
            return None
        if self._backlog:
            event = self._backlog.popleft()
        else:
            if timeout is None:
                item = await self._queue.get()
            else:
                item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
            if item is _DROPPED:
                self._finished = True
                return None
            assert isinstance(item, StreamEvent)
            event = item
        if event.is_terminal:
            self._finished = True
        return event

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[StreamEvent]:
        while (event := await self.next_event()) is not None:
            yield event


class _Topic:
    __slots__ = ("job_id", "lock", "replay", "observers")

    def __init__(self, job_id: int, lock: asyncio.Lock, replay: ReplayFn) -> None:
        self.job_id = job_id
        self.lock = lock
        self.replay = replay
        self.observers: dict[str, Observer] = {}


class StreamBroker:
    """Fan-out of job events to any number of observers.

    Usage::

        broker = StreamBroker(queue_size=256)
        broker.open(job_id, lock=live.lock, replay=live.snapshot)

        observer = await broker.subscribe(job_id)
        async for event in observer:
            ...

        async with live.lock:
            broker.publish(job_id, StreamEvent.output("sending file list"))
            broker.close(job_id, StreamEvent.done(JobStatus.COMPLETED))
    """

    def __init__(
        self,
        *,
        queue_size: int = OBSERVER_QUEUE_SIZE,
        max_observers: int = MAX_OBSERVERS,
    ) -> None:
        self._queue_size = queue_size
        self._max_observers = max_observers
        self._topics: dict[int, _Topic] = {}

    def open(self, job_id: int, *, lock: asyncio.Lock, replay: ReplayFn) -> None:
        """Create the topic for a newly submitted job."""
        if job_id in self._topics:
            raise RuntimeError(f"Stream for job {job_id} is already open")
        self._topics[job_id] = _Topic(job_id, lock, replay)

    def is_open(self, job_id: int) -> bool:
        return job_id in self._topics

    async def subscribe(self, job_id: int) -> Observer:
        """Attach a new observer to a live job.

        The observer first yields the job's buffered recent output in
        original order, then all subsequently published events.

        Raises:
            NotFoundError: If the job has no open stream (unknown or
                already terminal).
            ConnectionError: If the global observer limit is reached.
        """
        topic = self._topics.get(job_id)
        if topic is None:
            raise NotFoundError(f"No live stream for job {job_id}")
        async with topic.lock:
            # The topic may have closed while we waited for the lock.
            if self._topics.get(job_id) is not topic:
                raise NotFoundError(f"No live stream for job {job_id}")
            if self.observer_count() >= self._max_observers:
                _logger.warning(
                    "broker.observer_rejected", job_id=job_id, max=self._max_observers
                )
                raise ConnectionError(
                    f"Maximum stream observers ({self._max_observers}) reached"
                )
            observer = Observer(job_id, topic.replay(), self._queue_size)
            topic.observers[observer.observer_id] = observer
        _logger.info(
            "broker.subscribed",
            job_id=job_id,
            observer_id=observer.observer_id,
            backlog=len(observer._backlog),
        )
        return observer

    def publish(self, job_id: int, event: StreamEvent) -> int:
        """Deliver a non-terminal event to every observer of a job.

        Never blocks. Observers whose queue is full are dropped. Events
        for closed or unknown jobs are ignored. Returns the number of
        observers that received the event.
        """
        topic = self._topics.get(job_id)
        if topic is None:
            return 0
        delivered = 0
        for observer_id, observer in list(topic.observers.items()):
            if observer._offer(event):
                delivered += 1
            else:
                self._drop(topic, observer_id, observer)
        return delivered

    def close(self, job_id: int, event: StreamEvent) -> int:
        """Deliver the terminal event and close the job's stream.

        Afterwards publishes are ignored and ``subscribe`` raises
        NotFoundError. Returns the number of observers that received
        the terminal event.
        """
        topic = self._topics.pop(job_id, None)
        if topic is None:
            return 0
        delivered = 0
        for observer_id, observer in topic.observers.items():
            if observer._offer(event):
                delivered += 1
            else:
                self._drop(topic, observer_id, observer, remove=False)
        topic.observers.clear()
        _logger.debug("broker.closed", job_id=job_id, delivered=delivered)
        return delivered

    def unsubscribe(self, observer: Observer) -> None:
        """Detach an observer. Idempotent; unknown observers are ignored."""
        topic = self._topics.get(observer.job_id)
        if topic is not None and topic.observers.pop(observer.observer_id, None) is not None:
            _logger.info(
                "broker.unsubscribed", job_id=observer.job_id, observer_id=observer.observer_id
            )

    def observer_count(self, job_id: int | None = None) -> int:
        """Connected observers for one job, or across all jobs."""
        if job_id is None:
            return sum(len(t.observers) for t in self._topics.values())
        topic = self._topics.get(job_id)
        return len(topic.observers) if topic is not None else 0

    @staticmethod
    def _drop(
        topic: _Topic, observer_id: str, observer: Observer, *, remove: bool = True
    ) -> None:
        observer._drop()
        if remove:
            topic.observers.pop(observer_id, None)
        _logger.info("broker.observer_dropped", job_id=topic.job_id, observer_id=observer_id)


__all__ = ["Observer", "StreamBroker"]
