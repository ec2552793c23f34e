"""Persistent sync state for blobmirror.

This module provides:
- StateStore: SQLite-based durable record of objects, runs, checkpoint,
  errors and metrics
- ObjectState, SyncRun, Checkpoint, ErrorLogEntry, PerformanceMetric:
  Row dataclasses

Architecture:
    The store is the only shared mutable state in the engine. All access
    goes through a single connection guarded by a re-entrant lock, so
    concurrent download workers are serialized into one logical writer.
    The connection runs in autocommit mode with a WAL journal: every
    statement is committed before the call returns, and readers get a
    consistent snapshot.

    Object records are never deleted. They are the ledger of what has and
    has not been synced, and make every run resumable.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from blobmirror.core.types import ErrorKind, ObjectStatus, RunStatus

logger = logging.getLogger(__name__)

# Canonical second-resolution form used for change detection on last-modified
LAST_MODIFIED_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def format_last_modified(value: datetime) -> str:
    """Format a remote last-modified timestamp canonically.

    Naive datetimes are assumed to be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime(LAST_MODIFIED_FORMAT)


def parse_last_modified(value: str) -> datetime:
    """Parse a canonical last-modified string back to an aware datetime."""
    return datetime.strptime(value, LAST_MODIFIED_FORMAT).replace(tzinfo=UTC)


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass
class ObjectState:
    """Persistent state of one remote object.

    Attributes:
        key: Remote object key (unique).
        path: Logical path of the object relative to the output directory.
        local_path: Physical path chosen by the folder organizer, set once the
            object has been resolved for download.
        size: Size in bytes as last listed.
        content_hash: Lowercase hex MD5 reported by the remote, if any.
        last_modified: Remote last-modified timestamp.
        etag: Remote entity tag.
        first_seen_at: When discovery first saw the object (immutable).
        last_synced_at: When the object was last downloaded.
        sync_run_id: Run that last downloaded or failed the object.
        status: Current sync status.
        error_message: Last error for failed objects.
    """

    key: str
    path: str
    size: int
    etag: str
    last_modified: datetime
    status: ObjectStatus = ObjectStatus.PENDING
    local_path: str | None = None
    content_hash: str | None = None
    first_seen_at: datetime = field(default_factory=utcnow)
    last_synced_at: datetime | None = None
    sync_run_id: int | None = None
    error_message: str | None = None

    @property
    def last_modified_str(self) -> str:
        """Canonical last-modified string used for change detection."""
        return format_last_modified(self.last_modified)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> ObjectState:
        """Create ObjectState from database row."""
        return cls(
            key=row["key"],
            path=row["path"],
            local_path=row["local_path"],
            size=row["size_bytes"],
            content_hash=row["content_hash"],
            last_modified=parse_last_modified(row["last_modified"]),
            etag=row["etag"],
            first_seen_at=datetime.fromisoformat(row["first_seen_at"]),
            last_synced_at=_dt(row["last_synced_at"]),
            sync_run_id=row["sync_run_id"],
            status=ObjectStatus(row["status"]),
            error_message=row["error_message"],
        )


@dataclass
class SyncRun:
    """One discovery + download + completion pass."""

    id: int
    started_at: datetime
    status: RunStatus
    completed_at: datetime | None = None
    total_files: int = 0
    downloaded_files: int = 0
    failed_files: int = 0
    total_bytes: int = 0
    error_message: str | None = None

    @property
    def duration(self) -> float | None:
        """Run duration in seconds, if the run has ended."""
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> SyncRun:
        """Create SyncRun from database row."""
        return cls(
            id=row["id"],
            started_at=datetime.fromisoformat(row["started_at"]),
            completed_at=_dt(row["completed_at"]),
            status=RunStatus(row["status"]),
            total_files=row["total_files"],
            downloaded_files=row["downloaded_files"],
            failed_files=row["failed_files"],
            total_bytes=row["total_bytes"],
            error_message=row["error_message"],
        )


@dataclass
class Checkpoint:
    """Listing cursor for the mirrored container (single row)."""

    container: str
    last_check_time: datetime
    continuation_token: str | None = None
    prefix: str = ""
    total_objects_tracked: int = 0


@dataclass
class ErrorLogEntry:
    """A failed download attempt."""

    id: int
    sync_run_id: int | None
    timestamp: datetime
    key: str
    error_kind: ErrorKind
    message: str
    retry_count: int
    resolved: bool


@dataclass
class PerformanceMetric:
    """Performance snapshot recorded during a run."""

    sync_run_id: int
    timestamp: datetime = field(default_factory=utcnow)
    cpu_percent: float | None = None
    memory_mb: int | None = None
    network_mbps: float | None = None
    disk_io_mbps: float | None = None
    active_workers: int | None = None
    download_rate_files_per_sec: float | None = None
    download_rate_mbps: float | None = None
    throttled: bool = False


@dataclass
class RunAggregates:
    """Per-run counts recomputed from object state."""

    downloaded_files: int = 0
    failed_files: int = 0
    total_bytes: int = 0


class StateStore:
    """SQLite-based durable state for the sync engine.

    Usage:
        with StateStore(Path(".sync-state.db")) as store:
            run_id = store.create_run()
            store.upsert_object_state(state)
            pending = store.get_pending_objects()
    """

    def __init__(self, db_path: Path) -> None:
        """Open (or create) the state database.

        Args:
            db_path: Path to SQLite database file.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        # Single logical writer: every statement goes through this lock
        self._lock = threading.RLock()

        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode
        )
        self._conn.row_factory = sqlite3.Row

        self._conn.execute("PRAGMA journal_mode=WAL")
        # Sync the WAL on every commit so a reported transition survives a crash
        self._conn.execute("PRAGMA synchronous=FULL")
        self._conn.execute("PRAGMA temp_store=MEMORY")
        self._conn.execute("PRAGMA foreign_keys=ON")

        self._create_tables()

    @property
    def path(self) -> Path:
        """Location of the database file."""
        return self._db_path

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS sync_runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                status TEXT NOT NULL,
                total_files INTEGER NOT NULL DEFAULT 0,
                downloaded_files INTEGER NOT NULL DEFAULT 0,
                failed_files INTEGER NOT NULL DEFAULT 0,
                total_bytes INTEGER NOT NULL DEFAULT 0,
                error_message TEXT
            );

            CREATE TABLE IF NOT EXISTS object_state (
                key TEXT PRIMARY KEY,
                path TEXT NOT NULL,
                local_path TEXT,
                size_bytes INTEGER NOT NULL,
                content_hash TEXT,
                last_modified TEXT NOT NULL,
                etag TEXT NOT NULL,
                first_seen_at TEXT NOT NULL,
                last_synced_at TEXT,
                sync_run_id INTEGER REFERENCES sync_runs(id),
                status TEXT NOT NULL,
                error_message TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_object_status ON object_state(status);
            CREATE INDEX IF NOT EXISTS idx_object_run ON object_state(sync_run_id);
            CREATE INDEX IF NOT EXISTS idx_object_synced ON object_state(last_synced_at);

            -- Single row, overwritten in place
            CREATE TABLE IF NOT EXISTS sync_checkpoint (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                container TEXT NOT NULL,
                prefix TEXT NOT NULL DEFAULT '',
                last_check_time TEXT NOT NULL,
                continuation_token TEXT,
                total_objects_tracked INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS error_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                sync_run_id INTEGER REFERENCES sync_runs(id),
                timestamp TEXT NOT NULL,
                key TEXT NOT NULL,
                error_kind TEXT NOT NULL,
                message TEXT NOT NULL,
                retry_count INTEGER NOT NULL DEFAULT 0,
                resolved INTEGER NOT NULL DEFAULT 0
            );

            CREATE INDEX IF NOT EXISTS idx_error_key ON error_log(key);
            CREATE INDEX IF NOT EXISTS idx_error_resolved ON error_log(resolved);

            CREATE TABLE IF NOT EXISTS performance_metrics (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                sync_run_id INTEGER NOT NULL REFERENCES sync_runs(id),
                timestamp TEXT NOT NULL,
                cpu_percent REAL,
                memory_mb INTEGER,
                network_mbps REAL,
                disk_io_mbps REAL,
                active_workers INTEGER,
                download_rate_files_per_sec REAL,
                download_rate_mbps REAL,
                throttled INTEGER NOT NULL DEFAULT 0
            );

            CREATE INDEX IF NOT EXISTS idx_perf_run ON performance_metrics(sync_run_id);
        """)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    def __enter__(self) -> StateStore:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # === Sync runs ===

    def create_run(self) -> int:
        """Start a new sync run in RUNNING status.

        Returns:
            The new run id.
        """
        with self._lock:
            cursor = self._conn.execute(
                "INSERT INTO sync_runs (started_at, status) VALUES (?, ?)",
                (_ts(utcnow()), RunStatus.RUNNING.value),
            )
            run_id = cursor.lastrowid
        if run_id is None:
            raise RuntimeError("Failed to create sync run")
        return run_id

    def update_run(self, run: SyncRun) -> None:
        """Persist the mutable fields of a run."""
        with self._lock:
            self._conn.execute(
                """
                UPDATE sync_runs
                SET completed_at = ?, status = ?, total_files = ?,
                    downloaded_files = ?, failed_files = ?, total_bytes = ?,
                    error_message = ?
                WHERE id = ?
                """,
                (
                    _ts(run.completed_at),
                    run.status.value,
                    run.total_files,
                    run.downloaded_files,
                    run.failed_files,
                    run.total_bytes,
                    run.error_message,
                    run.id,
                ),
            )

    def get_run(self, run_id: int) -> SyncRun | None:
        """Get a sync run by id."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM sync_runs WHERE id = ?", (run_id,)
            ).fetchone()
        return SyncRun.from_row(row) if row else None

    def list_runs(self, limit: int = 10) -> list[SyncRun]:
        """List the most recent runs, newest first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM sync_runs ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [SyncRun.from_row(row) for row in rows]

    def count_runs_by_status(self) -> dict[RunStatus, int]:
        """Count runs per status (every status present, zero if none)."""
        counts = {status: 0 for status in RunStatus}
        with self._lock:
            rows = self._conn.execute(
                "SELECT status, COUNT(*) AS n FROM sync_runs GROUP BY status"
            ).fetchall()
        for row in rows:
            counts[RunStatus(row["status"])] = row["n"]
        return counts

    def get_run_aggregates(self, run_id: int) -> RunAggregates:
        """Recompute download/failure counts and bytes for a run."""
        with self._lock:
            row = self._conn.execute(
                """
                SELECT
                    COALESCE(SUM(CASE WHEN status = ? THEN 1 ELSE 0 END), 0) AS downloaded,
                    COALESCE(SUM(CASE WHEN status = ? THEN 1 ELSE 0 END), 0) AS failed,
                    COALESCE(SUM(CASE WHEN status = ? THEN size_bytes ELSE 0 END), 0) AS bytes
                FROM object_state WHERE sync_run_id = ?
                """,
                (
                    ObjectStatus.DOWNLOADED.value,
                    ObjectStatus.FAILED.value,
                    ObjectStatus.DOWNLOADED.value,
                    run_id,
                ),
            ).fetchone()
        return RunAggregates(
            downloaded_files=row["downloaded"],
            failed_files=row["failed"],
            total_bytes=row["bytes"],
        )

    # === Object state ===

    def upsert_object_state(self, state: ObjectState) -> None:
        """Insert or update an object record keyed by object key.

        Every column is last-write-wins except first_seen_at, which keeps
        the value of the first insert.
        """
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO object_state (
                    key, path, local_path, size_bytes, content_hash,
                    last_modified, etag, first_seen_at, last_synced_at,
                    sync_run_id, status, error_message
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    path = excluded.path,
                    local_path = excluded.local_path,
                    size_bytes = excluded.size_bytes,
                    content_hash = excluded.content_hash,
                    last_modified = excluded.last_modified,
                    etag = excluded.etag,
                    last_synced_at = excluded.last_synced_at,
                    sync_run_id = excluded.sync_run_id,
                    status = excluded.status,
                    error_message = excluded.error_message
                """,
                (
                    state.key,
                    state.path,
                    state.local_path,
                    state.size,
                    state.content_hash,
                    state.last_modified_str,
                    state.etag,
                    _ts(state.first_seen_at),
                    _ts(state.last_synced_at),
                    state.sync_run_id,
                    state.status.value,
                    state.error_message,
                ),
            )

    def get_object_state(self, key: str) -> ObjectState | None:
        """Get an object record by key.

        Returns:
            ObjectState if found, None otherwise.
        """
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM object_state WHERE key = ?", (key,)
            ).fetchone()
        return ObjectState.from_row(row) if row else None

    def get_pending_objects(self) -> list[ObjectState]:
        """Snapshot of every object currently in PENDING status.

        The list is materialized at call time; records that become pending
        afterwards are not included.
        """
        return self.list_objects(ObjectStatus.PENDING)

    def list_objects(self, status: ObjectStatus | None = None) -> list[ObjectState]:
        """List object records, optionally filtered by status."""
        with self._lock:
            if status is None:
                rows = self._conn.execute(
                    "SELECT * FROM object_state ORDER BY key"
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM object_state WHERE status = ? ORDER BY key",
                    (status.value,),
                ).fetchall()
        return [ObjectState.from_row(row) for row in rows]

    def count_objects(self) -> int:
        """Total number of tracked objects."""
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) AS n FROM object_state").fetchone()
        return int(row["n"])

    def count_objects_by_status(self) -> dict[ObjectStatus, int]:
        """Count object records per status (every status present)."""
        counts = {status: 0 for status in ObjectStatus}
        with self._lock:
            rows = self._conn.execute(
                "SELECT status, COUNT(*) AS n FROM object_state GROUP BY status"
            ).fetchall()
        for row in rows:
            counts[ObjectStatus(row["status"])] = row["n"]
        return counts

    def list_recent_failures(self, limit: int = 5) -> list[ObjectState]:
        """Failed objects, most recently touched first."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT * FROM object_state WHERE status = ?
                ORDER BY COALESCE(sync_run_id, 0) DESC, key LIMIT ?
                """,
                (ObjectStatus.FAILED.value, limit),
            ).fetchall()
        return [ObjectState.from_row(row) for row in rows]

    # === Error log ===

    def record_error(
        self,
        run_id: int | None,
        key: str,
        kind: ErrorKind,
        message: str,
        retry_count: int,
    ) -> None:
        """Append an entry to the error log.

        Args:
            run_id: Run during which the error happened.
            key: Object key.
            kind: Classified error kind.
            message: Error message.
            retry_count: Attempt index (0 for the first attempt).
        """
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO error_log
                    (sync_run_id, timestamp, key, error_kind, message, retry_count)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (run_id, _ts(utcnow()), key, kind.value, message, retry_count),
            )

    def list_errors(
        self,
        run_id: int | None = None,
        key: str | None = None,
        unresolved_only: bool = False,
    ) -> list[ErrorLogEntry]:
        """List error log entries in insertion order."""
        clauses: list[str] = []
        values: list[Any] = []
        if run_id is not None:
            clauses.append("sync_run_id = ?")
            values.append(run_id)
        if key is not None:
            clauses.append("key = ?")
            values.append(key)
        if unresolved_only:
            clauses.append("resolved = 0")

        query = "SELECT * FROM error_log"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY id"

        with self._lock:
            rows = self._conn.execute(query, values).fetchall()
        return [
            ErrorLogEntry(
                id=row["id"],
                sync_run_id=row["sync_run_id"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
                key=row["key"],
                error_kind=ErrorKind(row["error_kind"]),
                message=row["message"],
                retry_count=row["retry_count"],
                resolved=bool(row["resolved"]),
            )
            for row in rows
        ]

    def mark_errors_resolved(self, key: str) -> int:
        """Mark every unresolved error for a key as resolved.

        Returns:
            Number of entries updated.
        """
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE error_log SET resolved = 1 WHERE key = ? AND resolved = 0",
                (key,),
            )
        return cursor.rowcount

    # === Metrics ===

    def record_metric(self, metric: PerformanceMetric) -> None:
        """Append a performance snapshot."""
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO performance_metrics (
                    sync_run_id, timestamp, cpu_percent, memory_mb, network_mbps,
                    disk_io_mbps, active_workers, download_rate_files_per_sec,
                    download_rate_mbps, throttled
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    metric.sync_run_id,
                    _ts(metric.timestamp),
                    metric.cpu_percent,
                    metric.memory_mb,
                    metric.network_mbps,
                    metric.disk_io_mbps,
                    metric.active_workers,
                    metric.download_rate_files_per_sec,
                    metric.download_rate_mbps,
                    int(metric.throttled),
                ),
            )

    def list_metrics(self, run_id: int) -> list[PerformanceMetric]:
        """List performance snapshots for a run."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM performance_metrics WHERE sync_run_id = ? ORDER BY id",
                (run_id,),
            ).fetchall()
        return [
            PerformanceMetric(
                sync_run_id=row["sync_run_id"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
                cpu_percent=row["cpu_percent"],
                memory_mb=row["memory_mb"],
                network_mbps=row["network_mbps"],
                disk_io_mbps=row["disk_io_mbps"],
                active_workers=row["active_workers"],
                download_rate_files_per_sec=row["download_rate_files_per_sec"],
                download_rate_mbps=row["download_rate_mbps"],
                throttled=bool(row["throttled"]),
            )
            for row in rows
        ]

    # === Checkpoint ===

    def update_checkpoint(
        self,
        container: str,
        continuation_token: str | None,
        prefix: str = "",
        total_objects_tracked: int | None = None,
    ) -> None:
        """Create or overwrite the checkpoint row.

        Args:
            container: Container being mirrored.
            continuation_token: Listing cursor to resume from, None when the
                last listing ran to completion.
            prefix: Key prefix the cursor belongs to.
            total_objects_tracked: Tracked object count; defaults to the
                current number of object records.
        """
        if total_objects_tracked is None:
            total_objects_tracked = self.count_objects()
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO sync_checkpoint (
                    id, container, prefix, last_check_time,
                    continuation_token, total_objects_tracked
                ) VALUES (1, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    container = excluded.container,
                    prefix = excluded.prefix,
                    last_check_time = excluded.last_check_time,
                    continuation_token = excluded.continuation_token,
                    total_objects_tracked = excluded.total_objects_tracked
                """,
                (
                    container,
                    prefix,
                    _ts(utcnow()),
                    continuation_token,
                    total_objects_tracked,
                ),
            )

    def get_checkpoint(self) -> Checkpoint | None:
        """Get the checkpoint row, if any."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM sync_checkpoint WHERE id = 1"
            ).fetchone()
        if row is None:
            return None
        return Checkpoint(
            container=row["container"],
            prefix=row["prefix"],
            last_check_time=datetime.fromisoformat(row["last_check_time"]),
            continuation_token=row["continuation_token"],
            total_objects_tracked=row["total_objects_tracked"],
        )
