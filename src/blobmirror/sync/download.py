"""Object download with integrity check and atomic commit.

This module provides:
- ObjectDownloader: Streams one object to disk through a temp file
"""

from __future__ import annotations

import contextlib
import logging
import os
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

from blobmirror.core.hashing import HashingWriter
from blobmirror.sync.types import ChecksumMismatchError, DiskError, DownloadResult

if TYPE_CHECKING:
    from blobmirror.state import ObjectState
    from blobmirror.storage import ObjectStore

logger = logging.getLogger(__name__)

# Temp files are hidden siblings: ".<name>.<random>.blobmirror-part"
TEMP_SUFFIX = ".blobmirror-part"


class _DiskSink:
    """Binary sink that tags local write failures as disk errors."""

    def __init__(self, target: BinaryIO, path: Path) -> None:
        self._writer = HashingWriter(target)
        self._path = path

    @property
    def bytes_written(self) -> int:
        return self._writer.bytes_written

    def write(self, data: bytes) -> int:
        try:
            return self._writer.write(data)
        except OSError as e:
            raise DiskError(f"Failed to write {self._path}: {e}") from e

    def flush(self) -> None:
        try:
            self._writer.flush()
        except OSError as e:
            raise DiskError(f"Failed to flush {self._path}: {e}") from e

    def hexdigest(self) -> str:
        return self._writer.hexdigest()


def temp_path_for(local_path: Path) -> Path:
    """Fresh temp file name for one download to ``local_path``.

    The name is hidden, randomized and carries a suffix of its own, so it
    never names another object that may live in the same directory.
    """
    return local_path.with_name(f".{local_path.name}.{uuid.uuid4().hex[:12]}{TEMP_SUFFIX}")


def is_temp_file(path: Path) -> bool:
    """Whether ``path`` is an in-progress download temp file."""
    return path.name.startswith(".") and path.name.endswith(TEMP_SUFFIX)


class ObjectDownloader:
    """Downloads objects to disk with atomic writes."""

    def __init__(
        self,
        store: ObjectStore,
        container: str,
        verify_checksums: bool = True,
    ) -> None:
        """Initialize the downloader.

        Args:
            store: Remote object store.
            container: Container the objects live in.
            verify_checksums: Verify MD5 when the record carries a reference.
        """
        self._store = store
        self._container = container
        self._verify_checksums = verify_checksums

    def download(self, record: ObjectState, local_path: Path) -> DownloadResult:
        """Download an object with atomic write.

        The object is streamed into a hidden temp file (see
        ``temp_path_for``) in the destination directory and renamed over
        ``local_path`` only once complete and verified. No partial file is ever visible at the final path.

        Args:
            record: State of the object to download.
            local_path: Final path of the object.

        Returns:
            DownloadResult with the committed path and hash.

        Raises:
            StoreError: If the remote fetch fails.
            ChecksumMismatchError: If verification fails.
            DiskError: If a local filesystem operation fails.
        """
        tmp_path = temp_path_for(local_path)

        try:
            local_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DiskError(f"Failed to create {local_path.parent}: {e}") from e

        try:
            # Exclusive create: never truncate a file that is already there
            f = open(tmp_path, "xb")
        except OSError as e:
            raise DiskError(f"Failed to open {tmp_path}: {e}") from e

        try:
            with f:
                sink = _DiskSink(f, tmp_path)
                hash_applies = self._store.download_object(self._container, record.key, sink)
                sink.flush()

            digest = sink.hexdigest()
            if (
                self._verify_checksums
                and hash_applies
                and record.content_hash
                and digest != record.content_hash.lower()
            ):
                raise ChecksumMismatchError(record.key, record.content_hash, digest)

            try:
                os.replace(tmp_path, local_path)
            except OSError as e:
                raise DiskError(f"Failed to commit {local_path}: {e}") from e

        except Exception:
            # Clean up temp file on failure
            with contextlib.suppress(OSError):
                tmp_path.unlink(missing_ok=True)
            raise

        logger.debug(f"Downloaded {record.key} -> {local_path} ({sink.bytes_written} bytes)")
        return DownloadResult(
            key=record.key,
            local_path=local_path,
            size=sink.bytes_written,
            content_hash=digest,
        )
