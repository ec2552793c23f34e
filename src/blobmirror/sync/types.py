"""Shared types and dataclasses for sync operations.

This module provides:
- SyncError and its subclasses: Tagged exception classes
- classify_error: Map any exception to an ErrorKind
- SyncPhase: Orchestrator lifecycle phases
- DownloadResult: Outcome of one committed download
- DiscoveryStats, PoolStats, PassResult: Per-phase and per-pass results
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum, auto
from pathlib import Path
from typing import TYPE_CHECKING

from blobmirror.core.errors import SyncError
from blobmirror.core.types import ErrorKind

if TYPE_CHECKING:
    from blobmirror.state import SyncRun


class DownloadError(SyncError):
    """Failed to download an object (kind: unknown unless given)."""


class ChecksumMismatchError(DownloadError):
    """Downloaded content does not match the reference hash."""

    kind = ErrorKind.CHECKSUM

    def __init__(self, key: str, expected: str, actual: str) -> None:
        super().__init__(f"Checksum mismatch for {key}: expected {expected}, got {actual}")
        self.key = key
        self.expected = expected
        self.actual = actual


class DiskError(SyncError):
    """Local filesystem operation failed."""

    kind = ErrorKind.DISK


class DiskThresholdError(DiskError):
    """Filesystem usage reached the stop threshold.

    Attributes:
        usage_percent: Measured usage.
        threshold: Configured stop threshold.
    """

    def __init__(self, usage_percent: float, threshold: int) -> None:
        super().__init__(
            f"Disk usage {usage_percent:.1f}% reached stop threshold {threshold}%"
        )
        self.usage_percent = usage_percent
        self.threshold = threshold


class UnsafePathError(SyncError):
    """Object path would escape the output directory."""


class SyncPassError(Exception):
    """A sync pass failed during discovery or download.

    Attributes:
        run_id: Run that was marked failed.
    """

    def __init__(self, message: str, run_id: int | None = None) -> None:
        super().__init__(message)
        self.run_id = run_id


class SyncCancelledError(Exception):
    """Raised when a phase is interrupted by a stop request."""


def classify_error(exc: BaseException) -> ErrorKind:
    """Return the ErrorKind for an exception.

    Tagged errors carry their own kind. An untagged OSError can only come
    from local filesystem work (remote adapters tag their own failures), so
    it is classified as a disk error. Anything else is unknown.
    """
    if isinstance(exc, SyncError):
        return exc.kind
    if isinstance(exc, OSError):
        return ErrorKind.DISK
    return ErrorKind.UNKNOWN


class SyncPhase(IntEnum):
    """Lifecycle phase of the orchestrator."""

    INIT = auto()
    DISCOVERY = auto()
    DOWNLOAD = auto()
    COMPLETION = auto()
    SLEEPING = auto()
    TERMINAL = auto()


@dataclass
class DiscoveryStats:
    """Counters for one discovery phase."""

    found: int = 0
    new: int = 0
    changed: int = 0
    requeued: int = 0
    reverify: int = 0
    skipped: int = 0
    errors: int = 0
    pages: int = 0
    resumed_from_checkpoint: bool = False

    @property
    def pending(self) -> int:
        """Objects queued for download by this discovery."""
        return self.new + self.changed + self.requeued + self.reverify


@dataclass
class PoolStats:
    """Statistics for one download phase."""

    downloaded: int = 0
    failed: int = 0
    bytes_downloaded: int = 0
    cancelled: int = 0
    halted: bool = False
    halt_reason: str | None = None
    elapsed: float = 0.0

    @property
    def files_per_second(self) -> float:
        """Download rate in files per second."""
        return self.downloaded / self.elapsed if self.elapsed > 0 else 0.0

    @property
    def megabytes_per_second(self) -> float:
        """Download rate in MB/s."""
        if self.elapsed <= 0:
            return 0.0
        return self.bytes_downloaded / (1024 * 1024) / self.elapsed


@dataclass
class PassResult:
    """Result of one orchestrator pass."""

    run: SyncRun
    discovery: DiscoveryStats = field(default_factory=DiscoveryStats)
    pool: PoolStats = field(default_factory=PoolStats)
    skipped: int = 0
    duration: float = 0.0

    def summary(self) -> str:
        """One-line human-readable summary."""
        line = (
            f"Run {self.run.id} {self.run.status.value}: "
            f"{self.run.downloaded_files} downloaded, "
            f"{self.run.failed_files} failed, "
            f"{self.skipped} skipped, "
            f"{_format_bytes(self.run.total_bytes)} in {self.duration:.1f}s"
        )
        if self.pool.downloaded:
            line += f" ({self.pool.megabytes_per_second:.1f} MB/s)"
        return line


def _format_bytes(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024:
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} TB"


@dataclass
class DownloadResult:
    """Result of a successful object download."""

    key: str
    local_path: Path
    size: int
    content_hash: str
