"""Pytest fixtures for rsync-web tests."""

import logging
import stat
from collections.abc import AsyncIterator, Generator
from pathlib import Path

import pytest
import structlog

from rsyncweb.jobs.broker import StreamBroker
from rsyncweb.jobs.history import HistoryStore
from rsyncweb.jobs.registry import JobRegistry
from rsyncweb.jobs.runner import ProcessRunner
from tests.helpers import FAKE_RSYNC


@pytest.fixture(autouse=True)
def reset_logging_state() -> Generator[None, None, None]:
    """Reset structlog and root handlers around each test.

    This ensures test isolation for logging configuration.
    """
    structlog.reset_defaults()

    root_logger = logging.getLogger()
    original_handlers = root_logger.handlers[:]
    original_level = root_logger.level

    yield

    structlog.reset_defaults()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in original_handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(original_level)


@pytest.fixture
def fake_rsync(tmp_path: Path) -> Path:
    """Write the fake rsync script and return its path."""
    script = tmp_path / "bin" / "rsync"
    script.parent.mkdir()
    script.write_text(FAKE_RSYNC)
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


@pytest.fixture
async def history(tmp_path: Path) -> AsyncIterator[HistoryStore]:
    """Create and open a HistoryStore for testing."""
    store = HistoryStore(tmp_path / "history.db")
    await store.open()
    yield store
    await store.close()


@pytest.fixture
def broker() -> StreamBroker:
    return StreamBroker(queue_size=16, max_observers=10)


@pytest.fixture
def runner(tmp_path: Path) -> ProcessRunner:
    return ProcessRunner(cwd=tmp_path, grace_seconds=1.0)


@pytest.fixture
async def registry(
    history: HistoryStore, broker: StreamBroker, runner: ProcessRunner
) -> AsyncIterator[JobRegistry]:
    reg = JobRegistry(history, broker, runner, recent_output_lines=50)
    yield reg
    await reg.shutdown(timeout=5.0)
