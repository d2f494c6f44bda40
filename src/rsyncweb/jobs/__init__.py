"""Job execution and live-streaming subsystem.

Leaf-first: ``history`` persists job records, ``runner`` supervises one
process per job, ``broker`` fans events out to observers and
``registry`` ties them together for jobs that are still live.
"""

from rsyncweb.jobs.broker import Observer, StreamBroker
from rsyncweb.jobs.history import HistoryStore
from rsyncweb.jobs.models import CommandSpec, JobRecord, JobStatus, StreamEvent, build_command_spec
from rsyncweb.jobs.registry import JobRegistry
from rsyncweb.jobs.runner import ProcessHandle, ProcessRunner

__all__ = [
    "CommandSpec",
    "HistoryStore",
    "JobRecord",
    "JobRegistry",
    "JobStatus",
    "Observer",
    "ProcessHandle",
    "ProcessRunner",
    "StreamBroker",
    "StreamEvent",
    "build_command_spec",
]
