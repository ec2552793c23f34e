"""Worker pool for concurrent object downloads.

This module provides:
- DownloadWorkerPool: Fixed-size thread pool draining a closed queue of
  pending objects
- PoolState: Lifecycle state of the pool
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from enum import Enum, auto
from typing import TYPE_CHECKING

from blobmirror.sync.download import ObjectDownloader
from blobmirror.sync.types import PoolStats
from blobmirror.sync.workers.download import DownloadWorker, ItemOutcome, WorkerResult

if TYPE_CHECKING:
    from blobmirror.core.config import SyncConfig
    from blobmirror.state import ObjectState, StateStore
    from blobmirror.storage import ObjectStore
    from blobmirror.sync.disk import DiskGuard
    from blobmirror.sync.organizer import FolderOrganizer

logger = logging.getLogger(__name__)


class PoolState(Enum):
    """State of the worker pool."""

    STOPPED = auto()
    RUNNING = auto()
    STOPPING = auto()


class DownloadWorkerPool:
    """Pool of worker threads downloading a fixed set of pending objects.

    The queue is filled with every pending record, followed by one poison
    pill per worker, before any thread starts. Nothing is enqueued while
    the pool runs, so workers simply exit when they reach a pill.

    Usage:
        pool = DownloadWorkerPool(config, state, remote, organizer, guard, cancel)
        stats = pool.run(state.get_pending_objects(), run_id)
    """

    def __init__(
        self,
        config: SyncConfig,
        store: StateStore,
        remote: ObjectStore,
        organizer: FolderOrganizer,
        disk_guard: DiskGuard,
        cancel_event: threading.Event,
    ) -> None:
        """Initialize the worker pool.

        Args:
            config: Sync settings (container, workers, retry, verification).
            store: State store receiving every outcome.
            remote: Remote object store to download from.
            organizer: Folder organizer resolving physical paths.
            disk_guard: Pre-flight disk usage guard.
            cancel_event: Shared cancellation signal.
        """
        self._config = config
        self._store = store
        self._cancel_event = cancel_event
        self._halt_event = threading.Event()
        self._max_workers = config.workers

        self._worker = DownloadWorker(
            config=config,
            store=store,
            downloader=ObjectDownloader(
                remote, config.container, verify_checksums=config.verify_checksums
            ),
            organizer=organizer,
            disk_guard=disk_guard,
            cancel_event=cancel_event,
            halt_event=self._halt_event,
        )

        # Pool state
        self._pool_state = PoolState.STOPPED
        self._lock = threading.Lock()
        self._stats = PoolStats()
        self._active = 0

    @property
    def state(self) -> PoolState:
        """Get current pool state."""
        return self._pool_state

    @property
    def halted(self) -> bool:
        """Whether the disk stop threshold halted the pool."""
        return self._halt_event.is_set()

    @property
    def active_count(self) -> int:
        """Number of objects currently being processed."""
        with self._lock:
            return self._active

    def run(self, pending: list[ObjectState], run_id: int) -> PoolStats:
        """Download every pending object and block until the queue drains.

        Args:
            pending: Snapshot of pending objects.
            run_id: Current sync run.

        Returns:
            PoolStats for this download phase.
        """
        with self._lock:
            if self._pool_state != PoolState.STOPPED:
                raise RuntimeError("Worker pool already running")
            self._pool_state = PoolState.RUNNING
            self._stats = PoolStats()
            self._halt_event.clear()

        started = time.monotonic()
        num_workers = max(1, min(self._max_workers, len(pending)))

        task_queue: queue.Queue[ObjectState | None] = queue.Queue()
        for record in pending:
            task_queue.put(record)
        for _ in range(num_workers):
            task_queue.put(None)

        logger.info(f"Downloading {len(pending)} object(s) with {num_workers} worker(s)")

        workers = [
            threading.Thread(
                target=self._worker_loop,
                args=(task_queue, run_id),
                name=f"DownloadWorker-{i}",
                daemon=True,
            )
            for i in range(num_workers)
        ]
        for thread in workers:
            thread.start()
        for thread in workers:
            thread.join()

        with self._lock:
            self._pool_state = PoolState.STOPPED
            stats = self._stats
            stats.elapsed = time.monotonic() - started
            stats.halted = self._halt_event.is_set()

        logger.info(
            f"Download phase finished: {stats.downloaded} downloaded, "
            f"{stats.failed} failed, {stats.cancelled} not attempted "
            f"in {stats.elapsed:.1f}s"
        )
        return stats

    def _worker_loop(self, task_queue: queue.Queue[ObjectState | None], run_id: int) -> None:
        """Main loop for worker threads."""
        while True:
            record = task_queue.get()
            if record is None:  # Poison pill
                break

            if self._cancel_event.is_set() or self._halt_event.is_set():
                # Leave the record pending for the next pass
                self._account(WorkerResult(key=record.key, outcome=ItemOutcome.CANCELLED))
                continue

            with self._lock:
                self._active += 1
            try:
                result = self._worker.process(record, run_id)
            except Exception as e:
                logger.exception(f"Unexpected error processing {record.key}: {e}")
                result = WorkerResult(key=record.key, outcome=ItemOutcome.FAILED, error=str(e))
            finally:
                with self._lock:
                    self._active -= 1

            self._account(result)

    def _account(self, result: WorkerResult) -> None:
        with self._lock:
            stats = self._stats
            if result.outcome is ItemOutcome.DOWNLOADED:
                stats.downloaded += 1
                stats.bytes_downloaded += result.bytes_downloaded
            elif result.outcome is ItemOutcome.FAILED:
                stats.failed += 1
            elif result.outcome is ItemOutcome.HALTED and result.error is not None:
                # The item that observed the stop threshold
                stats.failed += 1
                stats.halt_reason = result.error
            else:
                stats.cancelled += 1
