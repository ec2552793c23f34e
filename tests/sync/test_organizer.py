"""Tests for folder organization."""

import hashlib
from datetime import datetime
from pathlib import Path

import pytest

from blobmirror.core.config import FolderOrganizationConfig
from blobmirror.sync.organizer import FolderOrganizer, sanitize_path
from blobmirror.sync.types import UnsafePathError


def sequential(max_files: int = 3) -> FolderOrganizationConfig:
    return FolderOrganizationConfig(
        enabled=True, strategy="sequential", max_files_per_folder=max_files
    )


class TestSanitizePath:
    """Tests for sanitize_path()."""

    def test_strips_leading_separators(self) -> None:
        """Absolute-looking paths become relative."""
        assert sanitize_path("/a/b.txt").as_posix() == "a/b.txt"

    def test_backslashes_are_separators(self) -> None:
        """Windows separators are normalized."""
        assert sanitize_path("a\\b\\c.txt").parts == ("a", "b", "c.txt")

    def test_drops_empty_and_dot_segments(self) -> None:
        """Redundant segments are removed."""
        assert sanitize_path("a//./b").as_posix() == "a/b"

    @pytest.mark.parametrize("path", ["../etc/passwd", "a/../../b", "", "/", "./"])
    def test_rejects_unsafe(self, path: str) -> None:
        """Traversal and empty paths are rejected."""
        with pytest.raises(UnsafePathError):
            sanitize_path(path)


class TestDisabled:
    """Tests for the disabled organizer."""

    def test_uses_logical_path(self, tmp_path: Path) -> None:
        """The logical path is placed directly under the base path."""
        organizer = FolderOrganizer(FolderOrganizationConfig(), tmp_path)

        assert organizer.enabled is False
        assert organizer.resolve("k", "logs/a.txt") == tmp_path / "logs" / "a.txt"

    def test_unsafe_path_rejected(self, tmp_path: Path) -> None:
        """Unsafe paths are rejected even when disabled."""
        organizer = FolderOrganizer(FolderOrganizationConfig(), tmp_path)

        with pytest.raises(UnsafePathError):
            organizer.resolve("k", "../outside.txt")


class TestSequential:
    """Tests for the sequential strategy."""

    def test_fills_folders_in_order(self, tmp_path: Path) -> None:
        """Ten objects with capacity three land in four folders."""
        organizer = FolderOrganizer(sequential(3), tmp_path)

        folders = [
            organizer.resolve(f"k{i}", f"file_{i}.txt").relative_to(tmp_path).parts[0]
            for i in range(10)
        ]

        indices = [int(name.split("_")[1]) for name in folders]
        assert indices == [0, 0, 0, 1, 1, 1, 2, 2, 2, 3]
        assert folders[0] == "folder_0000"

    def test_keeps_logical_path_below_folder(self, tmp_path: Path) -> None:
        """The logical path is nested under the chosen folder."""
        organizer = FolderOrganizer(sequential(3), tmp_path)

        assert organizer.resolve("k", "logs/a.txt") == tmp_path / "folder_0000" / "logs" / "a.txt"

    def test_resumes_in_partial_folder(self, tmp_path: Path) -> None:
        """After a restart, filling resumes in the highest folder with room."""
        (tmp_path / "folder_0000").mkdir()
        for i in range(3):
            (tmp_path / "folder_0000" / f"f{i}").write_bytes(b"x")
        (tmp_path / "folder_0001").mkdir()
        (tmp_path / "folder_0001" / "nested").mkdir()
        (tmp_path / "folder_0001" / "nested" / "f3").write_bytes(b"x")
        (tmp_path / "folder_0001" / ".partial.0123abcd.blobmirror-part").write_bytes(b"x")

        organizer = FolderOrganizer(sequential(3), tmp_path)
        organizer.load_state()

        stats = organizer.get_stats()
        assert stats.total_files == 4
        assert stats.current_folder == "folder_0001"
        assert stats.next_folder_index == 2

        folders = [
            organizer.resolve(f"k{i}", f"n{i}").relative_to(tmp_path).parts[0]
            for i in range(3)
        ]
        assert folders == ["folder_0001", "folder_0001", "folder_0002"]

    def test_full_highest_folder_starts_next(self, tmp_path: Path) -> None:
        """A full highest folder means the next index is used."""
        (tmp_path / "folder_0004").mkdir()
        for i in range(3):
            (tmp_path / "folder_0004" / f"f{i}").write_bytes(b"x")

        organizer = FolderOrganizer(sequential(3), tmp_path)
        organizer.load_state()

        path = organizer.resolve("k", "new.txt")
        assert path.relative_to(tmp_path).parts[0] == "folder_0005"

    def test_indices_never_reused(self, tmp_path: Path) -> None:
        """Gaps below the highest index are not filled."""
        (tmp_path / "folder_0002").mkdir()

        organizer = FolderOrganizer(sequential(3), tmp_path)
        organizer.load_state()

        path = organizer.resolve("k", "new.txt")
        assert path.relative_to(tmp_path).parts[0] == "folder_0002"
        assert organizer.get_stats().next_folder_index == 3

    def test_load_state_without_output(self, tmp_path: Path) -> None:
        """A missing output directory leaves the organizer empty."""
        organizer = FolderOrganizer(sequential(3), tmp_path / "missing")
        organizer.load_state()

        assert organizer.get_stats().total_folders == 0


class TestPartitionKey:
    """Tests for the partition_key strategy."""

    def test_hash_segments(self, tmp_path: Path) -> None:
        """The folder is made of 2-character SHA-256 segments of the key."""
        config = FolderOrganizationConfig(
            enabled=True, strategy="partition_key", partition_depth=3
        )
        organizer = FolderOrganizer(config, tmp_path)
        digest = hashlib.sha256(b"logs/a.txt").hexdigest()

        path = organizer.resolve("logs/a.txt", "logs/a.txt")

        assert path == tmp_path / digest[0:2] / digest[2:4] / digest[4:6] / "logs" / "a.txt"

    def test_deterministic(self, tmp_path: Path) -> None:
        """The same key always maps to the same folder."""
        config = FolderOrganizationConfig(enabled=True, strategy="partition_key")
        first = FolderOrganizer(config, tmp_path).resolve("key", "a")
        second = FolderOrganizer(config, tmp_path).resolve("key", "a")

        assert first == second

    def test_stats_count_existing_files(self, tmp_path: Path) -> None:
        """load_state counts committed files per directory."""
        (tmp_path / "ab" / "cd").mkdir(parents=True)
        (tmp_path / "ab" / "cd" / "x").write_bytes(b"x")
        (tmp_path / "ab" / "cd" / "y").write_bytes(b"y")
        config = FolderOrganizationConfig(enabled=True, strategy="partition_key")

        organizer = FolderOrganizer(config, tmp_path)
        organizer.load_state()

        stats = organizer.get_stats()
        assert stats.total_files == 2
        assert stats.current_folder is None

    def test_stats_count_objects_named_like_temp_files(self, tmp_path: Path) -> None:
        """Objects ending in .tmp are counted; in-progress downloads are not."""
        (tmp_path / "ab").mkdir()
        (tmp_path / "ab" / "report").write_bytes(b"x")
        (tmp_path / "ab" / "report.tmp").write_bytes(b"y")
        (tmp_path / "ab" / ".report.0123abcd.blobmirror-part").write_bytes(b"z")
        config = FolderOrganizationConfig(enabled=True, strategy="partition_key")

        organizer = FolderOrganizer(config, tmp_path)
        organizer.load_state()

        assert organizer.get_stats().total_files == 2

    def test_never_keeps_earlier_placement(self, tmp_path: Path) -> None:
        """Partitioned paths are always resolved again."""
        config = FolderOrganizationConfig(enabled=True, strategy="partition_key")
        organizer = FolderOrganizer(config, tmp_path)
        path = organizer.resolve("key", "a")

        assert organizer.keeps(path, "a") is False


class TestDate:
    """Tests for the date strategy."""

    def test_uses_clock(self, tmp_path: Path) -> None:
        """Objects are placed under the processing date."""
        config = FolderOrganizationConfig(enabled=True, strategy="date")
        organizer = FolderOrganizer(
            config, tmp_path, clock=lambda: datetime(2024, 3, 9, 23, 59)
        )

        path = organizer.resolve("k", "a.txt")

        assert path == tmp_path / "2024" / "03" / "09" / "a.txt"
        assert organizer.get_stats().total_files == 1

    def test_keeps_placement_from_earlier_day(self, tmp_path: Path) -> None:
        """A file placed on an earlier day stays in that day's folder."""
        config = FolderOrganizationConfig(enabled=True, strategy="date")
        organizer = FolderOrganizer(config, tmp_path)

        assert organizer.keeps(tmp_path / "2023" / "12" / "31" / "a.txt", "a.txt") is True
        assert organizer.keeps(tmp_path / "2023" / "12" / "a.txt", "a.txt") is False


class TestKeeps:
    """Tests for FolderOrganizer.keeps()."""

    def test_disabled_never_keeps(self, tmp_path: Path) -> None:
        """Without organization the path is always base joined with the logical path."""
        organizer = FolderOrganizer(FolderOrganizationConfig(enabled=False), tmp_path)

        assert organizer.keeps(tmp_path / "a.txt", "a.txt") is False

    def test_sequential_keeps_own_folder(self, tmp_path: Path) -> None:
        """A placement in a numbered folder under the output is kept."""
        organizer = FolderOrganizer(sequential(3), tmp_path)
        path = organizer.resolve("logs/a.txt", "logs/a.txt")

        assert organizer.keeps(path, "logs/a.txt") is True
        assert organizer.keeps(str(tmp_path / "folder_0009" / "logs" / "a.txt"), "logs/a.txt")

    def test_sequential_rejects_foreign_paths(self, tmp_path: Path) -> None:
        """Placements outside the layout or the output directory are resolved again."""
        organizer = FolderOrganizer(sequential(3), tmp_path / "new")

        assert organizer.keeps(tmp_path / "old" / "folder_0000" / "a.txt", "a.txt") is False
        assert organizer.keeps(tmp_path / "new" / "a.txt", "a.txt") is False
        assert organizer.keeps(tmp_path / "new" / "folder_0000" / "b.txt", "a.txt") is False
        assert organizer.keeps(tmp_path / "new" / "folder_0000" / "a.txt", "../a.txt") is False
