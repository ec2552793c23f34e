"""Sync engine: mirror a remote container onto the local filesystem.

Architecture:
    SyncOrchestrator → DiscoveryCoordinator → StateStore → DownloadWorkerPool

Components:
- **DiscoveryCoordinator**: Walks the paginated remote listing and marks
  objects pending or skipped in the state store
- **DownloadWorkerPool**: Fixed-size thread pool downloading every pending
  object with retry, backoff and atomic commit
- **FolderOrganizer**: Maps object keys to bounded local folders
- **DiskGuard**: Stops downloads before the output filesystem fills up
- **SyncOrchestrator**: Drives passes, owns cancellation and the watch loop

All public symbols are re-exported here.
"""

from blobmirror.sync.discovery import DiscoveryCoordinator
from blobmirror.sync.disk import DiskGuard, filesystem_usage_percent
from blobmirror.sync.download import ObjectDownloader
from blobmirror.sync.orchestrator import SyncOrchestrator
from blobmirror.sync.organizer import FolderOrganizer, OrganizerStats, sanitize_path
from blobmirror.sync.retry import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_BASE_DELAY,
    DEFAULT_MAX_ATTEMPTS,
    compute_backoff,
)
from blobmirror.sync.types import (
    ChecksumMismatchError,
    DiscoveryStats,
    DiskError,
    DiskThresholdError,
    DownloadError,
    DownloadResult,
    PassResult,
    PoolStats,
    SyncCancelledError,
    SyncError,
    SyncPassError,
    SyncPhase,
    UnsafePathError,
    classify_error,
)
from blobmirror.sync.workers import (
    DownloadWorker,
    DownloadWorkerPool,
    ItemOutcome,
    PoolState,
    WorkerResult,
)

__all__ = [
    # Retry
    "DEFAULT_BACKOFF_MULTIPLIER",
    "DEFAULT_BASE_DELAY",
    "DEFAULT_MAX_ATTEMPTS",
    "compute_backoff",
    # Errors
    "ChecksumMismatchError",
    "DiskError",
    "DiskThresholdError",
    "DownloadError",
    "SyncCancelledError",
    "SyncError",
    "SyncPassError",
    "UnsafePathError",
    "classify_error",
    # Results
    "DiscoveryStats",
    "DownloadResult",
    "PassResult",
    "PoolStats",
    "SyncPhase",
    # Components
    "DiscoveryCoordinator",
    "DiskGuard",
    "filesystem_usage_percent",
    "FolderOrganizer",
    "ObjectDownloader",
    "OrganizerStats",
    "SyncOrchestrator",
    "sanitize_path",
    # Workers
    "DownloadWorker",
    "DownloadWorkerPool",
    "ItemOutcome",
    "PoolState",
    "WorkerResult",
]
