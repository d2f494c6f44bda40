"""Background task supervision.

Process supervisors and escalation timers run as detached tasks. Their
failures would otherwise surface only as "Task exception was never
retrieved" at garbage collection; ``watch_task`` logs them as soon as
the task ends, tagged with the job they belong to.
"""

from __future__ import annotations

import asyncio
from typing import Any, TypeVar

from rsyncweb.core.logging import ComponentLogger, get_current_job_id

T = TypeVar("T")


def log_task_failure(
    task: asyncio.Task[Any],
    logger: ComponentLogger,
    event: str,
    **context: Any,
) -> BaseException | None:
    """Log the exception a finished task ended with, if any.

    ``context`` is added to the log entry.

    Returns:
        The exception, or ``None`` if the task succeeded or was cancelled.
    """
    if task.cancelled():
        return None
    exc = task.exception()
    if exc is None:
        return None
    logger.error(
        event,
        task_name=task.get_name(),
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=exc,
        **context,
    )
    return exc


def watch_task(
    task: asyncio.Task[T],
    logger: ComponentLogger,
    event: str,
    **context: Any,
) -> asyncio.Task[T]:
    """Attach a done-callback that logs the task's failure; returns ``task``.

    Without an explicit ``job_id`` in ``context``, the one bound by
    ``job_context`` at the time of the call is used.
    """
    job_id = get_current_job_id()
    if job_id is not None:
        context.setdefault("job_id", job_id)
    task.add_done_callback(lambda t: log_task_failure(t, logger, event, **context))
    return task


__all__ = ["log_task_failure", "watch_task"]
