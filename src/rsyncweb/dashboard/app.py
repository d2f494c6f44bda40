"""FastAPI application factory for rsync-web.

Provides the web server for launching, observing and cancelling jobs.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import HTTPConnection

from rsyncweb import __version__
from rsyncweb.config import ServerConfig
from rsyncweb.core.logging import get_logger
from rsyncweb.jobs.broker import StreamBroker
from rsyncweb.jobs.history import HistoryStore
from rsyncweb.jobs.probe import ExecutableStatus, probe_executable
from rsyncweb.jobs.registry import JobRegistry
from rsyncweb.jobs.runner import ProcessRunner

_logger = get_logger("dashboard")


# ============================================================================
# Dependencies (resolved from app.state, populated by the lifespan)
# ============================================================================


def get_config(conn: HTTPConnection) -> ServerConfig:
    return conn.app.state.config


def get_history(conn: HTTPConnection) -> HistoryStore:
    """Get the History Store.

    Raises:
        RuntimeError: If the application was not started through its lifespan
    """
    history = getattr(conn.app.state, "history", None)
    if history is None:
        raise RuntimeError("History store not configured. Start the app with its lifespan.")
    return history


def get_registry(conn: HTTPConnection) -> JobRegistry:
    registry = getattr(conn.app.state, "registry", None)
    if registry is None:
        raise RuntimeError("Job registry not configured. Start the app with its lifespan.")
    return registry


def get_executable_status(conn: HTTPConnection) -> ExecutableStatus:
    return conn.app.state.executable_status


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler.

    Opens the History Store, fails jobs orphaned by a previous process,
    probes the executable and wires the job subsystem. On shutdown every
    live job is cancelled before the store closes.
    """
    config: ServerConfig = app.state.config
    history = HistoryStore(config.db_path)
    await history.open()
    await history.mark_orphans_failed()

    status = await probe_executable(config.executable)
    if not status.available:
        _logger.warning("dashboard.executable_unavailable", executable=config.executable)

    runner = ProcessRunner(
        cwd=config.work_dir,
        timeout_seconds=config.job_timeout_seconds,
        grace_seconds=config.termination_grace_seconds,
    )
    broker = StreamBroker(
        queue_size=config.observer_queue_size,
        max_observers=config.max_observers,
    )
    registry = JobRegistry(
        history,
        broker,
        runner,
        recent_output_lines=config.recent_output_lines,
    )

    app.state.history = history
    app.state.registry = registry
    app.state.executable_status = status
    _logger.info(
        "dashboard.started",
        work_dir=str(config.work_dir),
        db_path=str(config.db_path),
        executable=status.path or config.executable,
    )
    try:
        yield
    finally:
        await registry.shutdown(timeout=config.termination_grace_seconds + 1.0)
        await history.close()
        app.state.registry = None
        app.state.history = None
        _logger.info("dashboard.stopped")


def create_app(
    config: ServerConfig | None = None,
    title: str = "rsync-web",
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Server configuration (defaults to ``ServerConfig()``)
        title: API title for OpenAPI docs
        cors_origins: Allowed CORS origins (defaults to all for development)

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title=title,
        version=__version__,
        description="REST and streaming API for running rsync jobs",
        lifespan=lifespan,
    )
    app.state.config = config or ServerConfig()

    # CORS middleware
    allowed_origins = cors_origins or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register routes
    from rsyncweb.dashboard.routes import router
    app.include_router(router)

    # Health check endpoint (at root level)
    @app.get("/health", tags=["System"])
    async def health_check() -> dict[str, Any]:
        """Health check endpoint.

        Returns basic service health status.
        """
        return {
            "status": "healthy",
            "version": __version__,
            "service": "rsync-web",
        }

    return app
