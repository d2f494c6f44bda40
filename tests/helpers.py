"""Shared test helpers for rsync-web tests."""

import asyncio
import sys

from rsyncweb.jobs.broker import Observer
from rsyncweb.jobs.models import CommandSpec, StreamEvent

# Stand-in for rsync: prints a version banner, echoes its arguments and
# understands a few flags that steer its behaviour.
FAKE_RSYNC = """#!/bin/sh
if [ "$1" = "--version" ]; then
    echo "rsync  version 3.2.7  protocol version 31"
    echo "Copyright (C) 1996-2022 by Andrew Tridgell, Wayne Davison, and others."
    exit 0
fi
for arg in "$@"; do
    case "$arg" in
        --fail)
            echo "rsync: [sender] change_dir \\"/nonexistent\\" failed: No such file or directory (2)" >&2
            exit 23
            ;;
        --sleep)
            echo "sending incremental file list"
            exec sleep 30
            ;;
        --progress)
            printf 'file.txt\\n'
            printf '      1,024  10%%\\r      5,120  50%%\\r     10,240 100%%\\n'
            ;;
    esac
done
echo "sending incremental file list"
echo "args: $*"
exit 0
"""


def python_spec(code: str, source: str = "src", destination: str = "dst") -> CommandSpec:
    """A command spec that runs ``code`` with the current interpreter.

    The endpoints end up in ``sys.argv[1:]`` of the child.
    """
    return CommandSpec(
        executable=sys.executable,
        source=source,
        destination=destination,
        options=("-c", code),
    )


async def collect(observer: Observer, timeout: float = 10.0) -> list[StreamEvent]:
    """Drain an observer until its stream ends."""

    async def _drain() -> list[StreamEvent]:
        return [event async for event in observer]

    return await asyncio.wait_for(_drain(), timeout=timeout)


def lines(events: list[StreamEvent], kind: str = "output") -> list[str]:
    return [e.data or "" for e in events if e.type == kind]
