"""Download worker: per-object retry loop.

This module provides:
- DownloadWorker: Downloads one pending object with disk guard, retry and
  backoff, recording every outcome in the state store
- ItemOutcome, WorkerResult: Result of processing one object
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass, replace
from enum import Enum, auto
from pathlib import Path
from typing import TYPE_CHECKING

from blobmirror.core.types import ErrorKind, ObjectStatus
from blobmirror.state import utcnow
from blobmirror.sync.retry import compute_backoff, wait_or_cancel
from blobmirror.sync.types import DiskThresholdError, SyncError, classify_error

if TYPE_CHECKING:
    from blobmirror.core.config import SyncConfig
    from blobmirror.state import ObjectState, StateStore
    from blobmirror.sync.disk import DiskGuard
    from blobmirror.sync.download import ObjectDownloader
    from blobmirror.sync.organizer import FolderOrganizer

logger = logging.getLogger(__name__)


class ItemOutcome(Enum):
    """How processing of one object ended."""

    DOWNLOADED = auto()
    FAILED = auto()
    CANCELLED = auto()
    HALTED = auto()


@dataclass
class WorkerResult:
    """Result of processing one object.

    Attributes:
        key: Object key.
        outcome: How processing ended.
        bytes_downloaded: Bytes committed on success.
        attempts: Number of download attempts made.
        error_kind: Kind of the last error, if any.
        error: Message of the last error, if any.
    """

    key: str
    outcome: ItemOutcome
    bytes_downloaded: int = 0
    attempts: int = 0
    error_kind: ErrorKind | None = None
    error: str | None = None


class DownloadWorker:
    """Processes pending objects one at a time.

    A single instance is shared by every pool thread; it holds no per-item
    state. Cancellation is cooperative: ``cancel_event`` is checked before
    every attempt and interrupts the backoff sleep, while ``halt_event`` is
    set when the disk stop threshold is reached and stops every worker from
    starting new attempts.

    Usage:
        worker = DownloadWorker(config, store, downloader, organizer, guard,
                                cancel_event, halt_event)
        result = worker.process(record, run_id)
    """

    def __init__(
        self,
        config: SyncConfig,
        store: StateStore,
        downloader: ObjectDownloader,
        organizer: FolderOrganizer,
        disk_guard: DiskGuard,
        cancel_event: threading.Event,
        halt_event: threading.Event,
    ) -> None:
        self._config = config
        self._store = store
        self._downloader = downloader
        self._organizer = organizer
        self._disk_guard = disk_guard
        self._cancel_event = cancel_event
        self._halt_event = halt_event

    def _should_stop(self) -> ItemOutcome | None:
        if self._halt_event.is_set():
            return ItemOutcome.HALTED
        if self._cancel_event.is_set():
            return ItemOutcome.CANCELLED
        return None

    def process(self, record: ObjectState, run_id: int) -> WorkerResult:
        """Download one object, retrying transient failures.

        Every failed attempt is written to the error log before any backoff
        sleep. A terminal failure marks the record FAILED and a success marks
        it DOWNLOADED. A cancelled or halted item is left untouched
        (PENDING), except for the item that observed the disk stop
        threshold, which fails with a disk error.

        Args:
            record: Pending object state.
            run_id: Current sync run.

        Returns:
            WorkerResult describing the outcome.
        """
        key = record.key
        stopped = self._should_stop()
        if stopped is not None:
            return WorkerResult(key=key, outcome=stopped)

        try:
            local_path = self._resolve_local_path(record)
        except SyncError as e:
            kind = e.kind
            self._record_attempt_error(run_id, key, kind, str(e), 0)
            self._mark_failed(record, run_id, None, str(e))
            return WorkerResult(
                key=key, outcome=ItemOutcome.FAILED, error_kind=kind, error=str(e)
            )

        max_attempts = self._config.max_attempts
        last_kind = ErrorKind.UNKNOWN
        last_error = ""
        attempts = 0

        for attempt in range(max_attempts):
            if attempt > 0:
                delay = compute_backoff(attempt, self._config.retry_base_delay)
                logger.info(
                    f"Retrying {key} (attempt {attempt + 1}/{max_attempts}) "
                    f"in {delay:.1f}s"
                )
                if wait_or_cancel(self._cancel_event, delay):
                    return WorkerResult(
                        key=key, outcome=ItemOutcome.CANCELLED, attempts=attempts
                    )

            stopped = self._should_stop()
            if stopped is not None:
                return WorkerResult(key=key, outcome=stopped, attempts=attempts)

            try:
                self._disk_guard.check()
            except DiskThresholdError as e:
                logger.error(f"{e}; stopping downloads")
                self._halt_event.set()
                self._record_attempt_error(run_id, key, e.kind, str(e), attempt)
                self._mark_failed(record, run_id, local_path, str(e))
                return WorkerResult(
                    key=key,
                    outcome=ItemOutcome.HALTED,
                    attempts=attempts,
                    error_kind=e.kind,
                    error=str(e),
                )

            attempts += 1
            try:
                result = self._downloader.download(record, local_path)
            except Exception as e:
                last_kind = classify_error(e)
                last_error = str(e)
                self._record_attempt_error(run_id, key, last_kind, last_error, attempt)
                if not last_kind.retryable:
                    logger.debug(f"Not retrying {key}: {last_kind.value} error")
                    break
                logger.warning(
                    f"Attempt {attempt + 1}/{max_attempts} for {key} failed: {e}"
                )
                continue

            self._mark_downloaded(record, run_id, local_path)
            logger.info(f"Downloaded {key} ({result.size} bytes)")
            return WorkerResult(
                key=key,
                outcome=ItemOutcome.DOWNLOADED,
                bytes_downloaded=result.size,
                attempts=attempts,
            )

        self._mark_failed(record, run_id, local_path, last_error)
        logger.error(f"Failed to download {key} after {attempts} attempt(s): {last_error}")
        return WorkerResult(
            key=key,
            outcome=ItemOutcome.FAILED,
            attempts=attempts,
            error_kind=last_kind,
            error=last_error,
        )

    def _resolve_local_path(self, record: ObjectState) -> Path:
        """Reuse the record's physical path if the layout keeps it, else resolve."""
        if record.local_path and self._organizer.keeps(record.local_path, record.path):
            return Path(record.local_path)
        return self._organizer.resolve(record.key, record.path)

    def _record_attempt_error(
        self, run_id: int, key: str, kind: ErrorKind, message: str, attempt: int
    ) -> None:
        try:
            self._store.record_error(run_id, key, kind, message, attempt)
        except sqlite3.Error as e:
            logger.warning(f"Failed to record error for {key}: {e}")

    def _mark_downloaded(self, record: ObjectState, run_id: int, local_path: Path) -> None:
        state = replace(
            record,
            status=ObjectStatus.DOWNLOADED,
            local_path=str(local_path),
            last_synced_at=utcnow(),
            sync_run_id=run_id,
            error_message=None,
        )
        try:
            self._store.upsert_object_state(state)
            self._store.mark_errors_resolved(record.key)
        except sqlite3.Error as e:
            logger.warning(f"Failed to update state of {record.key}: {e}")

    def _mark_failed(
        self,
        record: ObjectState,
        run_id: int,
        local_path: Path | None,
        message: str,
    ) -> None:
        state = replace(
            record,
            status=ObjectStatus.FAILED,
            local_path=str(local_path) if local_path is not None else record.local_path,
            sync_run_id=run_id,
            error_message=message,
        )
        try:
            self._store.upsert_object_state(state)
        except sqlite3.Error as e:
            logger.warning(f"Failed to update failed state of {record.key}: {e}")
