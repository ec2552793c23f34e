"""Workers for concurrent object downloads.

This package provides:
- DownloadWorker: Per-object download with disk guard, retry and backoff
- DownloadWorkerPool: Fixed-size thread pool draining pending objects

Usage:
    from blobmirror.sync.workers import DownloadWorkerPool

    pool = DownloadWorkerPool(config, store, remote, organizer, guard, cancel)
    stats = pool.run(store.get_pending_objects(), run_id)
"""

from blobmirror.sync.workers.download import DownloadWorker, ItemOutcome, WorkerResult
from blobmirror.sync.workers.pool import DownloadWorkerPool, PoolState

__all__ = [
    # Worker
    "DownloadWorker",
    "ItemOutcome",
    "WorkerResult",
    # Pool
    "DownloadWorkerPool",
    "PoolState",
]
