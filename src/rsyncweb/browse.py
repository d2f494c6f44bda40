"""Filesystem and SSH host listers used to populate run requests.

Neither lister touches the job subsystem; they only help the UI pick
the source and destination strings that end up in a command spec.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from rsyncweb.core.errors import NotFoundError, ValidationError
from rsyncweb.core.logging import get_logger

_logger = get_logger("browse")


@dataclass(frozen=True)
class FileEntry:
    name: str
    path: str
    is_dir: bool
    size: int = 0


@dataclass(frozen=True)
class DirectoryListing:
    current_path: str
    full_path: str
    entries: list[FileEntry]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SSHHost:
    name: str
    hostname: str = ""
    user: str = ""
    port: str = ""


def _relative(root: Path, path: Path) -> str:
    return os.path.relpath(path, root)


def list_directory(work_dir: Path, rel_path: str | None = None) -> DirectoryListing:
    """List one directory below ``work_dir``.

    Entries are sorted directories first, then by name. A ``..`` entry
    pointing at the parent is prepended unless the directory is the root.

    Raises:
        ValidationError: If the path escapes ``work_dir``.
        NotFoundError: If the path does not exist or is not a directory.
    """
    root = work_dir.resolve()
    rel_path = rel_path or "."
    target = (root / rel_path).resolve()
    if not target.is_relative_to(root):
        _logger.warning("browse.path_rejected", path=rel_path)
        raise ValidationError(f"Invalid path: {rel_path}")
    if not target.is_dir():
        raise NotFoundError(f"Directory not found: {rel_path}")

    entries: list[FileEntry] = []
    if target != root:
        entries.append(FileEntry(name="..", path=_relative(root, target.parent), is_dir=True))

    children: list[FileEntry] = []
    for child in target.iterdir():
        try:
            stat = child.stat()
        except OSError:
            # Dangling symlinks and entries removed while listing.
            continue
        is_dir = child.is_dir()
        children.append(
            FileEntry(
                name=child.name,
                path=_relative(root, child),
                is_dir=is_dir,
                size=0 if is_dir else stat.st_size,
            )
        )
    children.sort(key=lambda e: (not e.is_dir, e.name.lower()))
    entries.extend(children)

    return DirectoryListing(current_path=rel_path, full_path=str(target), entries=entries)


def parse_ssh_config(config_path: Path) -> list[SSHHost]:
    """Read ``Host`` blocks from an OpenSSH client config.

    Only ``HostName``, ``User`` and ``Port`` are picked up. Wildcard
    ``*`` blocks are skipped; a missing or unreadable file yields ``[]``.
    """
    try:
        text = config_path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        _logger.debug("browse.ssh_config_unreadable", path=str(config_path))
        return []

    hosts: list[SSHHost] = []
    current: SSHHost | None = None

    def _flush() -> None:
        if current is not None and current.name and current.name != "*":
            hosts.append(current)

    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split()
        if len(parts) < 2:
            continue
        key = parts[0].lower()
        value = " ".join(parts[1:])
        if key == "host":
            _flush()
            current = SSHHost(name=value)
        elif current is None:
            continue
        elif key == "hostname":
            current.hostname = value
        elif key == "user":
            current.user = value
        elif key == "port":
            current.port = value
    _flush()
    return hosts


__all__ = ["DirectoryListing", "FileEntry", "SSHHost", "list_directory", "parse_ssh_config"]
