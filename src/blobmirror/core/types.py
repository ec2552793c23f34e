"""Shared types for blobmirror.

This module defines the enums persisted in the state database and used
across discovery, the worker pool and the orchestrator.
"""

from __future__ import annotations

from enum import Enum


class ObjectStatus(str, Enum):
    """Sync status of a tracked remote object.

    Discovery only ever sets PENDING or SKIPPED; download workers only ever
    set DOWNLOADED or FAILED.
    """

    PENDING = "pending"
    DOWNLOADED = "downloaded"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    """Status of a sync run."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


class ErrorKind(str, Enum):
    """Classification of a per-object failure.

    Only NETWORK and CHECKSUM are transient and worth retrying.
    """

    NETWORK = "network"
    CHECKSUM = "checksum"
    DISK = "disk"
    AUTH = "auth"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        """Whether a failure of this kind should be retried."""
        return self in (ErrorKind.NETWORK, ErrorKind.CHECKSUM)


class FolderStrategy(str, Enum):
    """Folder organization strategy."""

    SEQUENTIAL = "sequential"
    PARTITION_KEY = "partition_key"
    DATE = "date"
