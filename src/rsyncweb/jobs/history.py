"""Persistent job history for rsync-web.

SQLite-backed store of every job ever submitted: its command, endpoints,
status, timestamps, exit code and the tail of its output. Survives
server restarts so the history view always shows past runs.

All database methods are async (via ``aiosqlite``) so they never block
the event loop. A single connection serializes writes; status changes
are additionally guarded by the transition rules in ``models``, so a
terminal record can no longer be modified, only deleted.
"""

from __future__ import annotations

import json
import sqlite3
import time
from pathlib import Path
from typing import Any

import aiosqlite

from rsyncweb.core.constants import ORPHAN_ERROR_MESSAGE
from rsyncweb.core.errors import ConflictError, NotFoundError
from rsyncweb.core.logging import get_logger
from rsyncweb.jobs.models import (
    ACTIVE_STATUSES,
    CommandSpec,
    JobRecord,
    JobStatus,
    can_transition,
)

_logger = get_logger("history")


class HistoryStore:
    """Async SQLite-backed job history.

    Usage::

        store = HistoryStore(db_path)
        await store.open()      # creates tables, sets WAL mode
        ...
        await store.close()

    Or as an async context manager::

        async with HistoryStore(db_path) as store:
            job_id = await store.create(spec)
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: aiosqlite.Connection | None = None

    async def open(self) -> None:
        """Open the database connection and create tables."""
        conn = await aiosqlite.connect(str(self._db_path))
        try:
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA journal_mode=WAL")
            await self._create_tables(conn)
        except Exception:
            await conn.close()
            raise
        self._conn = conn
        _logger.info("history.opened", path=str(self._db_path))

    @property
    def _db(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("HistoryStore not opened; call open() first")
        return self._conn

    @staticmethod
    async def _create_tables(conn: aiosqlite.Connection) -> None:
        # AUTOINCREMENT guarantees ids are never reused, even after deletes.
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                source TEXT NOT NULL,
                destination TEXT NOT NULL,
                options TEXT NOT NULL DEFAULT '[]',
                full_command TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                created_at REAL NOT NULL,
                started_at REAL,
                ended_at REAL,
                exit_code INTEGER,
                error_message TEXT
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_created
            ON jobs (created_at DESC, id DESC)
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_status
            ON jobs (status)
        """)
        await HistoryStore._migrate_schema(conn)
        await conn.commit()

    @staticmethod
    async def _migrate_schema(conn: aiosqlite.Connection) -> None:
        """Add columns that may be missing from older databases."""
        for col_name, col_type in [("output", "TEXT")]:
            try:
                await conn.execute(f"ALTER TABLE jobs ADD COLUMN {col_name} {col_type}")
            except sqlite3.OperationalError:
                _logger.debug("history.migrate_column_exists", column=col_name)

    async def create(self, spec: CommandSpec) -> int:
        """Persist a new ``pending`` job and return its id."""
        cursor = await self._db.execute(
            """
            INSERT INTO jobs
                (source, destination, options, full_command, status, created_at)
            VALUES (?, ?, ?, ?, 'pending', ?)
            """,
            (
                spec.source,
                spec.destination,
                json.dumps(list(spec.options)),
                spec.render(),
                time.time(),
            ),
        )
        await self._db.commit()
        job_id = cursor.lastrowid
        if job_id is None:
            raise RuntimeError("SQLite did not return a row id for the new job")
        _logger.debug("history.created", job_id=job_id)
        return job_id

    async def update_status(
        self,
        job_id: int,
        status: JobStatus,
        *,
        exit_code: int | None = None,
        started_at: float | None = None,
        ended_at: float | None = None,
        error_message: str | None = None,
        output: str | None = None,
    ) -> JobRecord:
        """Move a job to ``status`` and record outcome fields.

        Terminal statuses get ``ended_at`` stamped when the caller did
        not supply one.

        Raises:
            NotFoundError: If the job does not exist.
            ConflictError: If the transition is not allowed (including any
                change to a terminal record).
        """
        record = await self.get(job_id)
        if not can_transition(record.status, status):
            raise ConflictError(
                f"Job {job_id} cannot move from {record.status.value} to {status.value}"
            )

        updates = ["status = ?"]
        params: list[Any] = [status.value]
        if started_at is not None:
            updates.append("started_at = ?")
            params.append(started_at)
        if status.is_terminal:
            updates.append("ended_at = ?")
            params.append(ended_at if ended_at is not None else time.time())
        if exit_code is not None:
            updates.append("exit_code = ?")
            params.append(exit_code)
        if error_message is not None:
            updates.append("error_message = ?")
            params.append(error_message)
        if output is not None:
            updates.append("output = ?")
            params.append(output)

        # The status predicate keeps a concurrent writer from racing past
        # the transition check above.
        params.extend([job_id, record.status.value])
        cursor = await self._db.execute(
            f"UPDATE jobs SET {', '.join(updates)} WHERE id = ? AND status = ?",
            params,
        )
        await self._db.commit()
        if cursor.rowcount == 0:
            raise ConflictError(f"Job {job_id} changed status concurrently")
        _logger.debug("history.status_updated", job_id=job_id, status=status.value)
        return await self.get(job_id)

    async def get(self, job_id: int) -> JobRecord:
        """Get a single job.

        Raises:
            NotFoundError: If no job has this id.
        """
        cursor = await self._db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,))
        row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"Job not found: {job_id}")
        return self._row_to_record(row)

    async def list_jobs(
        self,
        limit: int = 100,
        offset: int = 0,
        status: JobStatus | None = None,
    ) -> list[JobRecord]:
        """List jobs, most recently created first (ties broken by id)."""
        if status is not None:
            cursor = await self._db.execute(
                "SELECT * FROM jobs WHERE status = ? "
                "ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                (status.value, limit, offset),
            )
        else:
            cursor = await self._db.execute(
                "SELECT * FROM jobs ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                (limit, offset),
            )
        rows = await cursor.fetchall()
        return [self._row_to_record(r) for r in rows]

    async def count(self, status: JobStatus | None = None) -> int:
        if status is not None:
            cursor = await self._db.execute(
                "SELECT COUNT(*) FROM jobs WHERE status = ?", (status.value,)
            )
        else:
            cursor = await self._db.execute("SELECT COUNT(*) FROM jobs")
        row = await cursor.fetchone()
        return int(row[0]) if row is not None else 0

    async def delete(self, job_id: int) -> None:
        """Delete a terminal job's record.

        Raises:
            NotFoundError: If the job does not exist.
            ConflictError: If the job is still pending or running.
        """
        record = await self.get(job_id)
        if not record.status.is_terminal:
            raise ConflictError(
                f"Cannot delete {record.status.value} job {job_id}. Cancel the job first."
            )
        await self._db.execute(
            "DELETE FROM jobs WHERE id = ? AND status = ?",
            (job_id, record.status.value),
        )
        await self._db.commit()
        _logger.info("history.deleted", job_id=job_id)

    async def mark_orphans_failed(self) -> int:
        """Fail jobs left pending/running by a previous server process.

        Their processes are no longer supervised by anyone, so they can
        never reach a terminal state on their own. Returns the count.
        """
        active = [s.value for s in ACTIVE_STATUSES]
        cursor = await self._db.execute(
            f"""
            UPDATE jobs SET
                status = 'failed',
                ended_at = ?,
                error_message = ?
            WHERE status IN ({",".join("?" for _ in active)})
            """,
            (time.time(), ORPHAN_ERROR_MESSAGE, *active),
        )
        await self._db.commit()
        count = cursor.rowcount
        if count > 0:
            _logger.warning("history.orphans_marked_failed", count=count)
        return count

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> HistoryStore:
        await self.open()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    @staticmethod
    def _row_to_record(row: aiosqlite.Row) -> JobRecord:
        return JobRecord(
            id=row["id"],
            source=row["source"],
            destination=row["destination"],
            options=json.loads(row["options"] or "[]"),
            full_command=row["full_command"],
            status=JobStatus(row["status"]),
            created_at=row["created_at"],
            started_at=row["started_at"],
            ended_at=row["ended_at"],
            exit_code=row["exit_code"],
            error_message=row["error_message"],
            output=row["output"],
        )


__all__ = ["HistoryStore"]
