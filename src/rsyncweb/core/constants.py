"""Global constants for rsync-web.

Centralizes the defaults shared between the configuration model,
the job subsystem and the HTTP layer.
"""

# =============================================================================
# Process Execution Defaults
# =============================================================================

DEFAULT_EXECUTABLE = "rsync"
"""Name of the synchronization tool looked up on PATH."""

GRACEFUL_TERMINATION_SECONDS = 5.0
"""Seconds between SIGTERM and SIGKILL when cancelling a job."""

READ_CHUNK_BYTES = 8192
"""Bytes read from the merged stdout/stderr pipe per iteration."""

VERSION_PROBE_TIMEOUT_SECONDS = 5.0
"""Timeout for ``<executable> --version`` during the status probe."""

# =============================================================================
# Streaming
# =============================================================================

RECENT_OUTPUT_LINES = 1000
"""Per-job ring buffer size for late-joining observers."""

OBSERVER_QUEUE_SIZE = 256
"""Per-observer bounded queue; an observer that overflows it is dropped."""

MAX_OBSERVERS = 100
"""Global cap on concurrently connected stream observers."""

HEARTBEAT_SECONDS = 15.0
"""Idle interval after which an SSE heartbeat is sent."""

# =============================================================================
# History
# =============================================================================

HISTORY_PAGE_SIZE = 100
"""Default number of history rows returned by list queries."""

ORPHAN_ERROR_MESSAGE = "server restarted while job was active"
"""Error message stored on jobs recovered as orphans at startup."""
