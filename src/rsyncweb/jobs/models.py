"""Shared data types for the job subsystem.

Job status, the immutable command spec, persisted job records and the
events pushed to stream observers.
"""

from __future__ import annotations

import shlex
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from rsyncweb.core.errors import ValidationError


class JobStatus(str, Enum):
    """Lifecycle of a job: pending -> running -> terminal.

    Inherits from ``str`` so values serialize directly to JSON.
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.RUNNING})

# Allowed forward transitions. pending -> failed covers spawn failures.
_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.RUNNING: TERMINAL_STATUSES,
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def can_transition(current: JobStatus, new: JobStatus) -> bool:
    """Return True if ``current -> new`` is a legal status change."""
    return new in _TRANSITIONS[current]


def classify_exit(exit_code: int | None, was_cancelled: bool, timed_out: bool = False) -> JobStatus:
    """Map a process outcome to a terminal status.

    A timeout is an internally triggered cancellation that is recorded
    as ``failed``; a user cancellation wins over whatever code the
    process exited with.
    """
    if timed_out:
        return JobStatus.FAILED
    if was_cancelled:
        return JobStatus.CANCELLED
    if exit_code == 0:
        return JobStatus.COMPLETED
    return JobStatus.FAILED


@dataclass(frozen=True)
class CommandSpec:
    """Fully resolved, immutable invocation of the synchronization tool."""

    executable: str
    source: str
    destination: str
    options: tuple[str, ...] = ()

    @property
    def argv(self) -> list[str]:
        """Argument vector: executable, options, then the two endpoints."""
        return [self.executable, *self.options, self.source, self.destination]

    def render(self) -> str:
        """Shell-quoted command line for display in history."""
        return shlex.join(self.argv)


def _check_token(name: str, value: str) -> str:
    if "\x00" in value:
        raise ValidationError(f"{name} must not contain NUL bytes")
    return value


def build_command_spec(
    executable: str,
    source: str,
    destination: str,
    options: list[str] | tuple[str, ...] = (),
) -> CommandSpec:
    """Validate an inbound run request and resolve it into a CommandSpec.

    Raises:
        ValidationError: If an endpoint is missing or blank, or a token is
            malformed. Nothing has been persisted at that point.
    """
    source = (source or "").strip()
    destination = (destination or "").strip()
    if not source:
        raise ValidationError("source is required")
    if not destination:
        raise ValidationError("destination is required")
    _check_token("source", source)
    _check_token("destination", destination)

    cleaned: list[str] = []
    for i, option in enumerate(options):
        if not isinstance(option, str):
            raise ValidationError(f"option {i} must be a string")
        option = option.strip()
        if not option:
            raise ValidationError(f"option {i} is empty")
        cleaned.append(_check_token(f"option {i}", option))

    return CommandSpec(
        executable=executable,
        source=source,
        destination=destination,
        options=tuple(cleaned),
    )


@dataclass
class JobRecord:
    """A job's persisted History Store entry."""

    id: int
    source: str
    destination: str
    options: list[str]
    full_command: str
    status: JobStatus = JobStatus.PENDING
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    ended_at: float | None = None
    exit_code: int | None = None
    error_message: str | None = None
    output: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "destination": self.destination,
            "options": list(self.options),
            "full_command": self.full_command,
            "status": self.status,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "exit_code": self.exit_code,
            "error_message": self.error_message,
        }


EventType = Literal["output", "progress", "done"]


@dataclass(frozen=True)
class StreamEvent:
    """One event pushed to stream observers.

    ``output`` and ``progress`` carry a line in ``data``; ``done`` carries
    the terminal status and is always the last event of a stream.
    """

    type: EventType
    data: str | None = None
    status: JobStatus | None = None

    @classmethod
    def output(cls, line: str) -> StreamEvent:
        return cls(type="output", data=line)

    @classmethod
    def progress(cls, line: str) -> StreamEvent:
        return cls(type="progress", data=line)

    @classmethod
    def done(cls, status: JobStatus) -> StreamEvent:
        return cls(type="done", status=status)

    @property
    def is_terminal(self) -> bool:
        return self.type == "done"

    def to_dict(self) -> dict[str, Any]:
        if self.type == "done":
            return {"type": "done", "status": self.status.value if self.status else None}
        return {"type": self.type, "data": self.data}


__all__ = [
    "ACTIVE_STATUSES",
    "CommandSpec",
    "JobRecord",
    "JobStatus",
    "StreamEvent",
    "TERMINAL_STATUSES",
    "build_command_spec",
    "can_transition",
    "classify_exit",
]
