"""Folder organization for downloaded objects.

Large containers can hold millions of objects under a handful of prefixes.
Writing them into the same local directory degrades most filesystems and
tools, so the organizer can spread files into bounded folders:

- sequential: folder_0000, folder_0001, ... each holding at most
  ``max_files_per_folder`` files
- partition_key: SHA-256 of the object key split into 2-character
  segments (``ab/cd/...``), evenly distributing files
- date: ``YYYY/MM/DD`` of the day the object was processed

When organization is disabled the logical path is used as-is.
"""

from __future__ import annotations

import hashlib
import logging
import re
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from blobmirror.core.types import FolderStrategy
from blobmirror.sync.download import is_temp_file
from blobmirror.sync.types import UnsafePathError

if TYPE_CHECKING:
    from blobmirror.core.config import FolderOrganizationConfig

logger = logging.getLogger(__name__)

SEQUENTIAL_FOLDER_PATTERN = re.compile(r"^folder_(\d+)$")
DATE_FOLDER_PATTERN = re.compile(r"^\d{4}/\d{2}/\d{2}$")


def sanitize_path(path: str) -> PurePosixPath:
    """Normalize an object's logical path to a safe relative path.

    Leading separators are stripped and backslashes treated as separators.

    Raises:
        UnsafePathError: If the path is empty or contains ".." segments.
    """
    cleaned = path.replace("\\", "/").lstrip("/")
    parts = [part for part in cleaned.split("/") if part not in ("", ".")]
    if not parts:
        raise UnsafePathError(f"Empty object path: {path!r}")
    if ".." in parts:
        raise UnsafePathError(f"Object path escapes output directory: {path!r}")
    return PurePosixPath(*parts)


def _count_files(folder: Path) -> int:
    """Count committed files below a folder (temp files excluded)."""
    return sum(
        1 for p in folder.rglob("*") if p.is_file() and not is_temp_file(p)
    )


@dataclass
class OrganizerStats:
    """Snapshot of the organizer's counters."""

    enabled: bool
    strategy: str
    total_folders: int
    total_files: int
    current_folder: str | None = None
    next_folder_index: int | None = None


class FolderOrganizer:
    """Maps object keys to physical paths according to a layout strategy.

    Thread-safe: resolve() may be called concurrently by download workers.
    Counters are private and only mutated under the lock.

    Usage:
        organizer = FolderOrganizer(config, Path("./data"))
        organizer.load_state()
        target = organizer.resolve("logs/app.log", "logs/app.log")
    """

    def __init__(
        self,
        config: FolderOrganizationConfig,
        base_path: Path,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        """Initialize the organizer.

        Args:
            config: Folder organization settings.
            base_path: Output directory.
            clock: Returns the current (local) time, used by the date strategy.
        """
        self._config = config
        self._base_path = Path(base_path)
        self._clock = clock
        self._strategy = FolderStrategy(config.strategy)

        self._lock = threading.Lock()
        self._folder_counts: dict[str, int] = {}
        self._current_folder: str | None = None
        self._next_index = 0

    @property
    def enabled(self) -> bool:
        """Whether folder organization is enabled."""
        return self._config.enabled

    @property
    def base_path(self) -> Path:
        """Output directory."""
        return self._base_path

    def resolve(self, key: str, path: str) -> Path:
        """Pick the physical path for an object and count it.

        Each call counts one file, so callers must resolve an object once
        and persist the result.

        Args:
            key: Remote object key (input of the partition hash).
            path: Logical path of the object.

        Returns:
            Absolute or base-relative path the object should be written to.

        Raises:
            UnsafePathError: If the logical path is unsafe.
        """
        relative = sanitize_path(path)
        if not self._config.enabled:
            return self._base_path.joinpath(*relative.parts)

        with self._lock:
            if self._strategy is FolderStrategy.PARTITION_KEY:
                folder = self._partition_folder(key)
            elif self._strategy is FolderStrategy.DATE:
                folder = self._date_folder()
            else:
                folder = self._sequential_folder()
            self._folder_counts[folder] = self._folder_counts.get(folder, 0) + 1

        return self._base_path.joinpath(*PurePosixPath(folder).parts, *relative.parts)

    def keeps(self, local_path: str | Path, path: str) -> bool:
        """Whether an earlier placement is still valid under this layout.

        Only the counted layouts (sequential and date) keep earlier
        placements, and only if the placement lies in one of their folders
        under the current output directory and ends with the object's
        logical path. The other layouts are a pure function of the key and
        the output directory, so callers resolve again.

        Args:
            local_path: Physical path recorded for the object.
            path: Logical path of the object.
        """
        if not self._config.enabled or self._strategy is FolderStrategy.PARTITION_KEY:
            return False
        try:
            relative = Path(local_path).relative_to(self._base_path)
            logical = sanitize_path(path)
        except (ValueError, UnsafePathError):
            return False

        parts = relative.parts
        if self._strategy is FolderStrategy.SEQUENTIAL:
            folder, rest = parts[:1], parts[1:]
            valid = bool(folder) and SEQUENTIAL_FOLDER_PATTERN.match(folder[0]) is not None
        else:
            folder, rest = parts[:3], parts[3:]
            valid = DATE_FOLDER_PATTERN.match("/".join(folder)) is not None
        return valid and rest == logical.parts

    def _partition_folder(self, key: str) -> str:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        segments = [digest[i * 2 : i * 2 + 2] for i in range(self._config.partition_depth)]
        return "/".join(segments)

    def _date_folder(self) -> str:
        return self._clock().strftime("%Y/%m/%d")

    def _sequential_folder(self) -> str:
        current = self._current_folder
        if current is None or self._folder_counts.get(current, 0) >= self._config.max_files_per_folder:
            current = f"folder_{self._next_index:04d}"
            self._current_folder = current
            self._next_index += 1
        return current

    def load_state(self) -> None:
        """Rebuild counters from the files already in the output directory.

        For the sequential strategy, filling resumes in the highest-index
        folder if it still has room, otherwise in the next index. Indices
        are never reused.
        """
        if not self._config.enabled or not self._base_path.is_dir():
            return

        with self._lock:
            self._folder_counts.clear()
            self._current_folder = None
            self._next_index = 0

            if self._strategy is FolderStrategy.SEQUENTIAL:
                self._load_sequential_state()
            else:
                self._load_partitioned_state()

        logger.debug(
            f"Loaded folder state: {len(self._folder_counts)} folders, "
            f"{sum(self._folder_counts.values())} files"
        )

    def _load_sequential_state(self) -> None:
        max_index = -1
        for entry in self._base_path.iterdir():
            match = SEQUENTIAL_FOLDER_PATTERN.match(entry.name)
            if not match or not entry.is_dir():
                continue
            index = int(match.group(1))
            self._folder_counts[entry.name] = _count_files(entry)
            max_index = max(max_index, index)

        if max_index < 0:
            return

        highest = f"folder_{max_index:04d}"
        if self._folder_counts[highest] < self._config.max_files_per_folder:
            self._current_folder = highest
        self._next_index = max_index + 1

    def _load_partitioned_state(self) -> None:
        # Only feeds get_stats(); placement does not depend on these counts
        for directory in self._base_path.rglob("*"):
            if not directory.is_dir():
                continue
            count = sum(
                1
                for p in directory.iterdir()
                if p.is_file() and not is_temp_file(p)
            )
            if count:
                self._folder_counts[directory.relative_to(self._base_path).as_posix()] = count

    def get_stats(self) -> OrganizerStats:
        """Return a snapshot of the organizer's counters."""
        with self._lock:
            stats = OrganizerStats(
                enabled=self._config.enabled,
                strategy=self._strategy.value,
                total_folders=len(self._folder_counts),
                total_files=sum(self._folder_counts.values()),
            )
            if self._strategy is FolderStrategy.SEQUENTIAL:
                stats.current_folder = self._current_folder
                stats.next_folder_index = self._next_index
        return stats
