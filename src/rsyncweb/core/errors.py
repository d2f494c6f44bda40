"""Exception hierarchy for rsync-web.

All errors inherit from RsyncWebError, so callers can catch broadly
or narrowly. Process outcomes (nonzero exit, cancellation, timeout)
are not exceptions: they are carried by the job's terminal status.
"""

from __future__ import annotations


class RsyncWebError(Exception):
    """Base exception for all rsync-web errors."""


class ValidationError(RsyncWebError):
    """Raised when a run request is malformed.

    Raised before a job is created, so it never leaves a history entry.
    """


class SpawnError(RsyncWebError):
    """Raised when the synchronization process cannot be started.

    Examples: executable missing, permission denied. When raised from
    ``JobRegistry.submit`` the job has already been persisted as
    ``failed`` and ``job_id`` identifies it.
    """

    def __init__(self, message: str, *, job_id: int | None = None) -> None:
        super().__init__(message)
        self.job_id = job_id


class NotFoundError(RsyncWebError):
    """Raised when an operation references an unknown job id.

    For live-state operations this includes jobs that already reached a
    terminal state and were evicted from the registry.
    """


class ConflictError(RsyncWebError):
    """Raised when an operation conflicts with the job's current state.

    Examples: deleting the history of a job that is still running,
    changing the status of a job that is already terminal.
    """


class ExecutableUnavailableError(RsyncWebError):
    """Raised when a job is submitted but the executable is not installed."""


__all__ = [
    "ConflictError",
    "ExecutableUnavailableError",
    "NotFoundError",
    "RsyncWebError",
    "SpawnError",
    "ValidationError",
]
