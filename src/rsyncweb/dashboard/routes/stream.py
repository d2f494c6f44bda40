"""Live job streams over Server-Sent Events and WebSocket.

Both transports carry the same JSON events: ``output`` and ``progress``
lines followed by a single ``done`` event, after which the stream is
closed. A job that is no longer live is replayed from its persisted
output.
"""
from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse

from rsyncweb.config import ServerConfig
from rsyncweb.core.errors import NotFoundError
from rsyncweb.core.logging import get_logger
from rsyncweb.dashboard.app import get_config, get_history, get_registry
from rsyncweb.dashboard.sse import SSE_HEADERS, SSEEvent
from rsyncweb.jobs.broker import Observer, StreamBroker
from rsyncweb.jobs.history import HistoryStore
from rsyncweb.jobs.models import JobRecord, StreamEvent
from rsyncweb.jobs.registry import JobRegistry

_logger = get_logger("dashboard.stream")

router = APIRouter(prefix="/api/job", tags=["Streaming"])
ws_router = APIRouter(tags=["Streaming"])

# Close code sent to WebSocket clients asking for an unknown job.
WS_CLOSE_NOT_FOUND = 4404
WS_CLOSE_TRY_AGAIN = 1013


# ============================================================================
# Helper Functions
# ============================================================================


def replay_events(record: JobRecord) -> list[StreamEvent]:
    """Rebuild the event sequence of a finished job from its record."""
    events: list[StreamEvent] = []
    if record.output:
        events.extend(StreamEvent.output(line) for line in record.output.split("\n"))
    events.append(StreamEvent.done(record.status))
    return events


async def open_stream(
    job_id: int, registry: JobRegistry, history: HistoryStore
) -> Observer | list[StreamEvent]:
    """Subscribe to a live job, or fall back to its stored history.

    A job's stream is opened in the same step that creates its record,
    so a record that is not terminal and has no stream has lost its
    supervisor (its final status could not be persisted) and is
    reported as not found.

    Raises:
        NotFoundError: If the job id is unknown or has no stream to offer.
        ConnectionError: If the observer limit is reached.
    """
    try:
        return await registry.broker.subscribe(job_id)
    except NotFoundError:
        record = await history.get(job_id)
    if not record.status.is_terminal:
        raise NotFoundError(f"Job {job_id} is {record.status.value} but has no live stream")
    return replay_events(record)


async def _live_sse_stream(
    observer: Observer, broker: StreamBroker, heartbeat_seconds: float
) -> AsyncIterator[str]:
    seq = 0
    try:
        while True:
            try:
                event = await observer.next_event(timeout=heartbeat_seconds)
            except TimeoutError:
                yield SSEEvent.heartbeat().format()
                continue
            if event is None:
                if observer.dropped:
                    _logger.info("stream.sse_dropped", job_id=observer.job_id)
                break
            seq += 1
            yield SSEEvent.from_stream_event(event, seq).format()
    finally:
        broker.unsubscribe(observer)


async def _replay_sse_stream(events: list[StreamEvent]) -> AsyncIterator[str]:
    for seq, event in enumerate(events, start=1):
        yield SSEEvent.from_stream_event(event, seq).format()


# ============================================================================
# API Endpoints
# ============================================================================


@router.get("/{job_id}/stream")
async def stream_job(
    job_id: int,
    config: ServerConfig = Depends(get_config),
    history: HistoryStore = Depends(get_history),
    registry: JobRegistry = Depends(get_registry),
) -> StreamingResponse:
    """Stream a job's output via Server-Sent Events.

    Args:
        job_id: Job identifier to stream

    Returns:
        SSE stream of ``output``/``progress`` events ending with ``done``

    Raises:
        HTTPException: 404 if job not found, 503 if too many observers
    """
    try:
        opened = await open_stream(job_id, registry, history)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except ConnectionError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e

    if isinstance(opened, Observer):
        body = _live_sse_stream(opened, registry.broker, config.heartbeat_seconds)
    else:
        body = _replay_sse_stream(opened)
    return StreamingResponse(body, media_type="text/event-stream", headers=SSE_HEADERS)


async def _pump_to_websocket(websocket: WebSocket, source: Observer | list[StreamEvent]) -> None:
    if isinstance(source, Observer):
        async for event in source:
            await websocket.send_json(event.to_dict())
    else:
        for event in source:
            await websocket.send_json(event.to_dict())


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    # Clients never send anything meaningful; this only notices them leaving.
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@ws_router.websocket("/ws/job/{job_id}")
async def job_websocket(
    websocket: WebSocket,
    job_id: int,
    history: HistoryStore = Depends(get_history),
    registry: JobRegistry = Depends(get_registry),
) -> None:
    """Stream a job's events as JSON text frames.

    The server closes the socket after ``done``. Unknown jobs are
    closed with code 4404, an exhausted observer limit with 1013.
    """
    await websocket.accept()
    try:
        source = await open_stream(job_id, registry, history)
    except NotFoundError:
        await websocket.close(code=WS_CLOSE_NOT_FOUND)
        return
    except ConnectionError:
        await websocket.close(code=WS_CLOSE_TRY_AGAIN)
        return

    pump = asyncio.create_task(_pump_to_websocket(websocket, source))
    watcher = asyncio.create_task(_wait_for_disconnect(websocket))
    try:
        done, _ = await asyncio.wait({pump, watcher}, return_when=asyncio.FIRST_COMPLETED)
        if pump in done:
            # Surfaces send failures other than a vanished client.
            try:
                pump.result()
            except WebSocketDisconnect:
                return
            await websocket.close()
        else:
            _logger.debug("stream.ws_client_left", job_id=job_id)
    finally:
        for task in (pump, watcher):
            task.cancel()
        await asyncio.gather(pump, watcher, return_exceptions=True)
        if isinstance(source, Observer):
            registry.broker.unsubscribe(source)
