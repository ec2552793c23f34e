"""Sync orchestrator driving discovery, download and completion.

This module provides:
- SyncOrchestrator: Runs sync passes, once or in a watch loop

Lifecycle:
    INIT → DISCOVERY → DOWNLOAD → COMPLETION → (SLEEPING → DISCOVERY ...) → TERMINAL

Each pass owns exactly one sync run. A failure during discovery or
download (including the disk stop threshold halting the pool) marks the
run failed and aborts the pass; in watch mode the loop logs the failure,
sleeps and tries again. A stop request marks the in-flight run
interrupted. Committed downloads are never rolled back.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING

from blobmirror.core.types import RunStatus
from blobmirror.state import PerformanceMetric, utcnow
from blobmirror.sync.discovery import DiscoveryCoordinator
from blobmirror.sync.disk import DiskGuard
from blobmirror.sync.organizer import FolderOrganizer
from blobmirror.sync.types import (
    DiscoveryStats,
    PassResult,
    PoolStats,
    SyncCancelledError,
    SyncPassError,
    SyncPhase,
)
from blobmirror.sync.workers import DownloadWorkerPool

if TYPE_CHECKING:
    from collections.abc import Callable

    from blobmirror.core.config import AppConfig
    from blobmirror.state import StateStore, SyncRun
    from blobmirror.storage import ObjectStore

logger = logging.getLogger(__name__)


class SyncOrchestrator:
    """Drives sync passes against one container.

    Usage:
        orchestrator = SyncOrchestrator(config, store, remote)
        signal.signal(signal.SIGINT, lambda *_: orchestrator.request_stop())
        results = orchestrator.run()
    """

    def __init__(
        self,
        config: AppConfig,
        store: StateStore,
        remote: ObjectStore,
        organizer: FolderOrganizer | None = None,
        disk_guard: DiskGuard | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            config: Complete application configuration.
            store: State store.
            remote: Remote object store.
            organizer: Folder organizer (default: built from config).
            disk_guard: Disk usage guard (default: built from config).
        """
        self._config = config
        self._store = store
        self._remote = remote
        self._organizer = organizer or FolderOrganizer(
            config.sync.folder_organization, config.output_path
        )
        self._disk_guard = disk_guard or DiskGuard(
            config.output_path,
            warn_percent=config.sync.disk_warn_percent,
            stop_percent=config.sync.disk_stop_percent,
        )

        self._lock = threading.Lock()
        self._phase = SyncPhase.INIT
        self._cancel_event = threading.Event()
        # Set whenever no pass is in flight
        self._idle = threading.Event()
        self._idle.set()
        self._organizer_loaded = False

    @property
    def phase(self) -> SyncPhase:
        """Current lifecycle phase."""
        with self._lock:
            return self._phase

    @property
    def stop_requested(self) -> bool:
        """Whether a stop has been requested."""
        return self._cancel_event.is_set()

    def _set_phase(self, phase: SyncPhase) -> None:
        with self._lock:
            self._phase = phase
        logger.debug(f"Sync phase: {phase.name}")

    def request_stop(self) -> None:
        """Signal cancellation without waiting (safe from signal handlers)."""
        self._cancel_event.set()

    def stop(self, timeout: float | None = None) -> bool:
        """Cooperative shutdown.

        Signals cancellation to every in-flight worker, then blocks until
        the current pass has drained.

        Args:
            timeout: Maximum seconds to wait (None waits indefinitely).

        Returns:
            True if the orchestrator is idle, False on timeout.
        """
        logger.info("Stopping sync...")
        self.request_stop()
        return self._idle.wait(timeout)

    def run(
        self, on_pass: Callable[[PassResult], None] | None = None
    ) -> list[PassResult]:
        """Run one pass, or loop forever in watch mode until stopped.

        A stop requested before or during the call ends it; the request is
        cleared on return so the orchestrator can be run again.

        Args:
            on_pass: Called with the result of every pass that did not fail.

        Returns:
            Results of every completed or interrupted pass.

        Raises:
            SyncPassError: If a pass fails and watch mode is disabled.
        """
        watch = self._config.watch
        results: list[PassResult] = []
        try:
            while True:
                try:
                    result = self.run_once()
                    results.append(result)
                    if on_pass:
                        on_pass(result)
                except SyncPassError as e:
                    if not watch.enabled:
                        raise
                    logger.error(f"Sync pass failed: {e}")

                if not watch.enabled or self._cancel_event.is_set():
                    break

                self._set_phase(SyncPhase.SLEEPING)
                logger.info(f"Next sync in {watch.interval:.0f}s")
                if self._cancel_event.wait(watch.interval):
                    break
        finally:
            self._set_phase(SyncPhase.TERMINAL)
            # A stop ends this run() only; the orchestrator can run again
            self._cancel_event.clear()
        return results

    def run_once(self) -> PassResult:
        """Run a single discovery → download → completion pass.

        Returns:
            PassResult for the pass (run status completed or interrupted).

        Raises:
            SyncPassError: If discovery or download failed.
        """
        self._idle.clear()
        try:
            return self._run_pass()
        finally:
            self._idle.set()

    def _run_pass(self) -> PassResult:
        sync = self._config.sync
        started = time.monotonic()

        run_id = self._store.create_run()
        run = self._store.get_run(run_id)
        if run is None:
            raise RuntimeError(f"Sync run {run_id} vanished after creation")
        logger.info(f"Starting sync run {run_id} for container {sync.container}")

        discovery = DiscoveryStats()
        pool_stats = PoolStats()

        try:
            if not self._organizer_loaded:
                self._organizer.load_state()
                self._organizer_loaded = True

            self._set_phase(SyncPhase.DISCOVERY)
            discovery = DiscoveryCoordinator(
                sync, self._store, self._remote, self._cancel_event
            ).discover(sync.container, sync.prefix, sync.batch_size)

            self._set_phase(SyncPhase.DOWNLOAD)
            pending = self._store.get_pending_objects()
            pool = DownloadWorkerPool(
                sync,
                self._store,
                self._remote,
                self._organizer,
                self._disk_guard,
                self._cancel_event,
            )
            pool_stats = pool.run(pending, run_id)
            self._record_metric(run_id, pool_stats, len(pending))

            if pool_stats.halted:
                raise SyncPassError(
                    pool_stats.halt_reason or "Downloads halted: disk stop threshold reached",
                    run_id,
                )
            if self._cancel_event.is_set():
                raise SyncCancelledError("Sync cancelled during download")

        except SyncCancelledError as e:
            logger.warning(f"Sync run {run_id} interrupted: {e}")
            run = self._finish(run, RunStatus.INTERRUPTED, discovery, str(e))
            return self._result(run, discovery, pool_stats, started)

        except SyncPassError as e:
            self._finish(run, RunStatus.FAILED, discovery, str(e))
            logger.error(f"Sync run {run_id} failed: {e}")
            raise

        except Exception as e:
            self._finish(run, RunStatus.FAILED, discovery, str(e))
            logger.error(f"Sync run {run_id} failed: {e}")
            raise SyncPassError(str(e), run_id) from e

        self._set_phase(SyncPhase.COMPLETION)
        run = self._finish(run, RunStatus.COMPLETED, discovery)
        result = self._result(run, discovery, pool_stats, started)
        logger.info(result.summary())
        return result

    def _finish(
        self,
        run: SyncRun,
        status: RunStatus,
        discovery: DiscoveryStats,
        error: str | None = None,
    ) -> SyncRun:
        """Recompute aggregates from the store and close the run."""
        aggregates = self._store.get_run_aggregates(run.id)
        run.total_files = discovery.found
        run.downloaded_files = aggregates.downloaded_files
        run.failed_files = aggregates.failed_files
        run.total_bytes = aggregates.total_bytes
        run.completed_at = utcnow()
        run.status = status
        run.error_message = error
        self._store.update_run(run)
        return run

    def _record_metric(self, run_id: int, stats: PoolStats, pending: int) -> None:
        elapsed = stats.elapsed
        self._store.record_metric(
            PerformanceMetric(
                sync_run_id=run_id,
                active_workers=min(self._config.sync.workers, pending),
                download_rate_files_per_sec=stats.files_per_second,
                download_rate_mbps=(
                    stats.bytes_downloaded * 8 / 1_000_000 / elapsed if elapsed > 0 else 0.0
                ),
                throttled=stats.halted,
            )
        )

    @staticmethod
    def _result(
        run: SyncRun,
        discovery: DiscoveryStats,
        pool_stats: PoolStats,
        started: float,
    ) -> PassResult:
        return PassResult(
            run=run,
            discovery=discovery,
            pool=pool_stats,
            skipped=discovery.skipped,
            duration=time.monotonic() - started,
        )

