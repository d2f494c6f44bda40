"""Structured logging for rsync-web.

structlog on top of stdlib logging, rendered either as coloured console
lines or as JSON. Every logger is bound to a component name, and log
calls made while a job is being supervised automatically carry its
``job_id``.

Example usage:
    from rsyncweb.core.logging import configure_logging, get_logger, job_context

    configure_logging(level="DEBUG", format="console")

    logger = get_logger("runner")
    logger.info("runner.spawned", pid=1234)

    with job_context(42):
        logger.info("runner.exited")  # includes job_id=42
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Literal

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# Field name fragments whose values are never written to logs
SENSITIVE_PATTERNS = frozenset({
    "password",
    "passphrase",
    "token",
    "secret",
    "credential",
    "authorization",
    "identity_file",
})

_current_job_id: ContextVar[int | None] = ContextVar("rsyncweb_job_id", default=None)


def get_current_job_id() -> int | None:
    """Return the job id bound by the innermost ``job_context`` block."""
    return _current_job_id.get()


@contextmanager
def job_context(job_id: int) -> Iterator[int]:
    """Bind ``job_id`` to every log entry emitted inside the block.

    The binding lives in a ContextVar, so tasks created inside the block
    inherit it.
    """
    token = _current_job_id.set(job_id)
    try:
        yield job_id
    finally:
        _current_job_id.reset(token)


def _redact(key: str, value: Any) -> Any:
    key_lower = key.lower()
    if any(pattern in key_lower for pattern in SENSITIVE_PATTERNS):
        return "[REDACTED]"
    return value


def _sanitize_event_dict(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Structlog processor that redacts sensitive fields (one level deep)."""
    sanitized: EventDict = {}
    for key, value in event_dict.items():
        if isinstance(value, dict):
            sanitized[key] = {k: _redact(k, v) for k, v in value.items()}
        else:
            sanitized[key] = _redact(key, value)
    return sanitized


def _add_timestamp(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    event_dict["timestamp"] = datetime.now(UTC).isoformat()
    return event_dict


def _add_job_id(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Add the context job id unless the call site passed one explicitly."""
    job_id = _current_job_id.get()
    if job_id is not None and "job_id" not in event_dict:
        event_dict["job_id"] = job_id
    return event_dict


class ComponentLogger:
    """Component-bound wrapper around a structlog logger.

    The underlying structlog logger is fetched on every call, so loggers
    created at import time still respect ``configure_logging()`` calls
    made later.
    """

    def __init__(self, component: str, **initial_context: Any) -> None:
        self._context: dict[str, Any] = {"component": component, **initial_context}

    def _get_logger(self) -> structlog.stdlib.BoundLogger:
        logger: structlog.stdlib.BoundLogger = structlog.get_logger().bind(**self._context)
        return logger

    def bind(self, **context: Any) -> ComponentLogger:
        """Return a new logger with additional bound context."""
        new_logger = ComponentLogger.__new__(ComponentLogger)
        new_logger._context = {**self._context, **context}
        return new_logger

    def debug(self, event: str, **kw: Any) -> None:
        self._get_logger().debug(event, **kw)

    def info(self, event: str, **kw: Any) -> None:
        self._get_logger().info(event, **kw)

    def warning(self, event: str, **kw: Any) -> None:
        self._get_logger().warning(event, **kw)

    def error(self, event: str, **kw: Any) -> None:
        self._get_logger().error(event, **kw)

    def exception(self, event: str, **kw: Any) -> None:
        """Log an error with traceback; call from inside an ``except`` block."""
        self._get_logger().exception(event, **kw)


def _build_processors(format: Literal["json", "console"]) -> list[Processor]:  # noqa: A002
    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        _sanitize_event_dict,
        _add_job_id,
        _add_timestamp,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))
    return processors


def configure_logging(
    level: str = "INFO",
    format: Literal["json", "console"] = "console",  # noqa: A002
    file_path: Path | None = None,
    max_file_size_mb: int = 50,
    backup_count: int = 5,
) -> None:
    """Configure structured logging; call once at startup.

    Args:
        level: Minimum log level name (case-insensitive).
        format: ``"console"`` for human-readable output on stderr,
            ``"json"`` for one JSON object per line.
        file_path: Optional rotating log file. Console format still
            writes to stderr; the file receives the same rendering.
        max_file_size_mb: Size at which the log file is rotated.
        backup_count: Number of rotated files to keep.

    Raises:
        ValueError: If ``level`` is not a known logging level.
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        raise ValueError(f"Unknown log level: {level}")

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if file_path is not None:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                file_path,
                maxBytes=max_file_size_mb * 1024 * 1024,
                backupCount=backup_count,
                encoding="utf-8",
            )
        )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in handlers:
        handler.setLevel(log_level)
        root_logger.addHandler(handler)

    structlog.configure(
        processors=_build_processors(format),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(component: str, **initial_context: Any) -> ComponentLogger:
    """Get a logger bound to ``component`` (e.g. ``"runner"``, ``"history"``)."""
    return ComponentLogger(component, **initial_context)


__all__ = [
    "ComponentLogger",
    "SENSITIVE_PATTERNS",
    "configure_logging",
    "get_current_job_id",
    "get_logger",
    "job_context",
]
