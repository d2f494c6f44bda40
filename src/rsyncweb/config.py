"""Configuration model for the rsync-web server.

Pydantic v2 model for server binding, job execution limits, streaming
bounds and logging. Loaded from an optional YAML file; every field has
a working default.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, model_validator

from rsyncweb.core import constants
from rsyncweb.core.logging import get_logger

_logger = get_logger("config")


class ServerConfig(BaseModel):
    """Top-level configuration for the rsync-web server."""

    host: str = Field(
        default="127.0.0.1",
        description="Interface the HTTP server binds to",
    )
    port: int = Field(
        default=8000,
        ge=1,
        le=65535,
        description="TCP port the HTTP server listens on",
    )
    work_dir: Path = Field(
        default_factory=Path.cwd,
        description="Working directory for launched processes and root "
        "of the filesystem browser.",
    )
    db_path: Path = Field(
        default=Path("rsync-web.db"),
        description="SQLite file holding job history. Relative paths are "
        "resolved against work_dir; tilde is expanded.",
    )
    executable: str = Field(
        default=constants.DEFAULT_EXECUTABLE,
        min_length=1,
        description="Name or path of the synchronization tool",
    )
    recent_output_lines: int = Field(
        default=constants.RECENT_OUTPUT_LINES,
        ge=10,
        description="Lines of recent output kept per job for late observers. "
        "Oldest lines are evicted first.",
    )
    observer_queue_size: int = Field(
        default=constants.OBSERVER_QUEUE_SIZE,
        ge=8,
        description="Per-observer queue bound. An observer that falls this "
        "far behind is disconnected.",
    )
    max_observers: int = Field(
        default=constants.MAX_OBSERVERS,
        ge=1,
        description="Maximum concurrently connected stream observers",
    )
    job_timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Wall-clock limit per job. Jobs exceeding it are "
        "terminated and recorded as failed. None disables the limit.",
    )
    termination_grace_seconds: float = Field(
        default=constants.GRACEFUL_TERMINATION_SECONDS,
        gt=0,
        description="Seconds between SIGTERM and SIGKILL on cancellation",
    )
    heartbeat_seconds: float = Field(
        default=constants.HEARTBEAT_SECONDS,
        gt=0,
        description="Idle interval before an SSE heartbeat is sent",
    )
    history_limit: int = Field(
        default=constants.HISTORY_PAGE_SIZE,
        ge=1,
        le=1000,
        description="Default page size for history queries",
    )
    ssh_config_path: Path = Field(
        default=Path("~/.ssh/config"),
        description="SSH client config parsed for the host picker",
    )
    log_level: Literal["debug", "info", "warning", "error"] = Field(
        default="info",
        description="Minimum log level for structlog output",
    )
    log_format: Literal["console", "json"] = Field(
        default="console",
        description="Log rendering: human-readable console or JSON lines",
    )
    log_file: Path | None = Field(
        default=None,
        description="Optional rotating log file. None logs to stderr only.",
    )

    @model_validator(mode="after")
    def _resolve_paths(self) -> ServerConfig:
        """Expand ``~`` and anchor relative paths."""
        self.work_dir = self.work_dir.expanduser().resolve()
        db_path = self.db_path.expanduser()
        if not db_path.is_absolute():
            db_path = self.work_dir / db_path
        self.db_path = db_path
        self.ssh_config_path = self.ssh_config_path.expanduser()
        return self


def load_config(config_file: Path | None, **overrides: object) -> ServerConfig:
    """Load ServerConfig from a YAML file, or return defaults.

    Keyword overrides (typically from CLI options) take precedence over
    file values; ``None`` overrides are ignored.

    Raises:
        pydantic.ValidationError: If the merged values are invalid.
        yaml.YAMLError: If the file is not valid YAML.
    """
    data: dict[str, object] = {}
    if config_file is not None and config_file.exists():
        with open(config_file) as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config file must contain a mapping: {config_file}")
        data.update(loaded)
        _logger.debug("config.loaded", path=str(config_file))
    elif config_file is not None:
        _logger.warning("config.file_missing", path=str(config_file))
    data.update({k: v for k, v in overrides.items() if v is not None})
    return ServerConfig.model_validate(data)


__all__ = ["ServerConfig", "load_config"]
