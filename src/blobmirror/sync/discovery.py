"""Discovery: diff the remote listing against local state.

This module provides:
- DiscoveryCoordinator: Walks the paginated listing and marks each object
  pending (new, changed, or re-queued) or skipped (unchanged)

Change detection compares the ETag AND the canonical last-modified
timestamp; a difference in either means the object changed.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from typing import TYPE_CHECKING

from blobmirror.core.types import ObjectStatus
from blobmirror.state import ObjectState, format_last_modified, utcnow
from blobmirror.sync.types import DiscoveryStats, SyncCancelledError

if TYPE_CHECKING:
    from blobmirror.core.config import SyncConfig
    from blobmirror.state import StateStore
    from blobmirror.storage import ObjectDescriptor, ObjectStore

logger = logging.getLogger(__name__)

# Stored statuses that must be retried even when the object is unchanged
_UNFINISHED = (ObjectStatus.PENDING, ObjectStatus.FAILED)


class DiscoveryCoordinator:
    """Classifies remote objects as new, changed, or unchanged.

    Usage:
        coordinator = DiscoveryCoordinator(config, store, remote, cancel_event)
        stats = coordinator.discover(config.container, config.prefix, config.batch_size)
    """

    def __init__(
        self,
        config: SyncConfig,
        store: StateStore,
        remote: ObjectStore,
        cancel_event: threading.Event | None = None,
    ) -> None:
        """Initialize discovery.

        Args:
            config: Sync settings (skip_existing, force_resync).
            store: State store to upsert records into.
            remote: Remote object store to list.
            cancel_event: Shared cancellation signal, checked between pages.
        """
        self._config = config
        self._store = store
        self._remote = remote
        self._cancel_event = cancel_event or threading.Event()

    def discover(self, container: str, prefix: str, page_size: int) -> DiscoveryStats:
        """List every object and upsert its record.

        If the previous discovery of the same container and prefix was
        interrupted, listing resumes from the saved continuation token.

        Args:
            container: Container to list.
            prefix: Key prefix filter.
            page_size: Objects requested per page.

        Returns:
            DiscoveryStats with per-category counts.

        Raises:
            StoreError: If listing a page fails.
            SyncCancelledError: If cancelled between pages.
        """
        stats = DiscoveryStats()
        token = self._resume_token(container, prefix)
        if token is not None:
            stats.resumed_from_checkpoint = True
            logger.info(f"Resuming listing of {container} from checkpoint")

        logger.info(f"Discovering objects in {container} (prefix={prefix!r})")

        while True:
            page = self._remote.list_objects(container, prefix, page_size, token)
            stats.pages += 1
            for descriptor in page.objects:
                self._process(descriptor, stats)
            token = page.continuation_token

            logger.debug(
                f"Listed page {stats.pages}: {len(page.objects)} objects "
                f"({stats.found} total)"
            )

            if token is None:
                break
            if self._cancel_event.is_set():
                self._store.update_checkpoint(container, token, prefix)
                raise SyncCancelledError(
                    f"Discovery of {container} interrupted after {stats.found} objects"
                )

        self._store.update_checkpoint(container, None, prefix)

        logger.info(
            f"Discovery complete: {stats.found} found, {stats.new} new, "
            f"{stats.changed} changed, {stats.requeued} re-queued, "
            f"{stats.skipped} skipped, {stats.errors} errors"
        )
        return stats

    def _resume_token(self, container: str, prefix: str) -> str | None:
        checkpoint = self._store.get_checkpoint()
        if (
            checkpoint is None
            or checkpoint.container != container
            or checkpoint.prefix != prefix
        ):
            return None
        return checkpoint.continuation_token

    def _classify(
        self, descriptor: ObjectDescriptor, existing: ObjectState | None
    ) -> tuple[ObjectStatus, str]:
        """Decide the new status and the stats counter it belongs to."""
        if existing is None:
            return ObjectStatus.PENDING, "new"

        if self._config.force_resync:
            return ObjectStatus.PENDING, "changed"

        unchanged = (
            existing.etag == descriptor.etag
            and existing.last_modified_str == format_last_modified(descriptor.last_modified)
        )
        if not unchanged:
            return ObjectStatus.PENDING, "changed"

        if existing.status in _UNFINISHED:
            return ObjectStatus.PENDING, "requeued"

        if self._config.skip_existing:
            return ObjectStatus.SKIPPED, "skipped"

        return ObjectStatus.PENDING, "reverify"

    def _process(self, descriptor: ObjectDescriptor, stats: DiscoveryStats) -> None:
        """Classify one listed object and upsert its record."""
        stats.found += 1
        try:
            existing = self._store.get_object_state(descriptor.key)
            status, counter = self._classify(descriptor, existing)
            self._store.upsert_object_state(
                ObjectState(
                    key=descriptor.key,
                    path=descriptor.path,
                    size=descriptor.size,
                    etag=descriptor.etag,
                    last_modified=descriptor.last_modified,
                    content_hash=descriptor.content_hash,
                    status=status,
                    local_path=existing.local_path if existing else None,
                    first_seen_at=existing.first_seen_at if existing else utcnow(),
                    last_synced_at=existing.last_synced_at if existing else None,
                    sync_run_id=existing.sync_run_id if existing else None,
                    error_message=None,
                )
            )
        except sqlite3.Error as e:
            stats.errors += 1
            logger.warning(f"Failed to record state of {descriptor.key}: {e}")
            return
        setattr(stats, counter, getattr(stats, counter) + 1)
