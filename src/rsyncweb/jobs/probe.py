"""Availability probe for the synchronization executable."""

from __future__ import annotations

import asyncio
import shutil
from dataclasses import dataclass

from rsyncweb.core.constants import VERSION_PROBE_TIMEOUT_SECONDS
from rsyncweb.core.errors import ExecutableUnavailableError
from rsyncweb.core.logging import get_logger

_logger = get_logger("probe")


@dataclass(frozen=True)
class ExecutableStatus:
    """Result of probing the synchronization executable."""

    executable: str
    available: bool
    path: str | None = None
    version: str | None = None

    def require(self) -> None:
        """Raise ExecutableUnavailableError unless the probe succeeded."""
        if not self.available:
            raise ExecutableUnavailableError(f"{self.executable} not available")


async def probe_executable(
    executable: str,
    timeout: float = VERSION_PROBE_TIMEOUT_SECONDS,
) -> ExecutableStatus:
    """Locate ``executable`` and read the first line of ``--version``.

    Never raises: an executable that is missing, cannot be run or hangs
    is reported as unavailable.
    """
    path = shutil.which(executable)
    if path is None:
        _logger.warning("probe.not_found", executable=executable)
        return ExecutableStatus(executable=executable, available=False)

    try:
        process = await asyncio.create_subprocess_exec(
            path,
            "--version",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        _logger.warning("probe.spawn_failed", executable=path, error=str(e))
        return ExecutableStatus(executable=executable, available=False, path=path)

    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        process.kill()
        await process.wait()
        _logger.warning("probe.timeout", executable=path, timeout_seconds=timeout)
        return ExecutableStatus(executable=executable, available=False, path=path)

    lines = stdout.decode("utf-8", errors="replace").strip().splitlines()
    version = lines[0].strip() if lines else None
    _logger.debug("probe.found", executable=path, version=version)
    return ExecutableStatus(executable=executable, available=True, path=path, version=version)


__all__ = ["ExecutableStatus", "probe_executable"]
