"""Shared fixtures for blobmirror tests."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path
from typing import BinaryIO

import pytest

from blobmirror.core.config import AppConfig
from blobmirror.state import StateStore
from blobmirror.storage import LocalObjectStore

CONTAINER = "bucket"


def write_objects(root: Path, count: int, container: str = CONTAINER) -> list[str]:
    """Create ``count`` objects under ``root/container`` and return their keys."""
    keys = []
    for i in range(count):
        key = f"data/file_{i:02d}.txt"
        path = root / container / key
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(f"content of object {i}\n".encode() * (i + 1))
        keys.append(key)
    return keys


class CorruptingStore(LocalObjectStore):
    """Local store that serves wrong bytes for selected keys."""

    def __init__(self, root: Path, corrupt_keys: set[str]) -> None:
        super().__init__(root)
        self.corrupt_keys = corrupt_keys
        self.download_calls: list[str] = []

    def download_object(self, container: str, key: str, sink: BinaryIO) -> bool:
        self.download_calls.append(key)
        if key in self.corrupt_keys:
            sink.write(b"corrupted payload")
            return True
        return super().download_object(container, key, sink)


@pytest.fixture
def remote_root(tmp_path: Path) -> Path:
    """Root of a local object store with one empty container."""
    root = tmp_path / "remote"
    (root / CONTAINER).mkdir(parents=True)
    return root


@pytest.fixture
def make_objects(remote_root: Path) -> Callable[[int], list[str]]:
    """Factory creating objects in the test container."""

    def _make(count: int) -> list[str]:
        return write_objects(remote_root, count)

    return _make


@pytest.fixture
def make_corrupting_store(remote_root: Path) -> Callable[[set[str]], CorruptingStore]:
    """Factory for a local store serving wrong bytes for some keys."""

    def _make(corrupt_keys: set[str]) -> CorruptingStore:
        return CorruptingStore(remote_root, corrupt_keys)

    return _make


@pytest.fixture
def app_config(tmp_path: Path, remote_root: Path) -> AppConfig:
    """Config mirroring the local test container, with instant retries."""
    config = AppConfig()
    config.remote.backend = "local"
    config.remote.local_root = str(remote_root)
    config.sync.container = CONTAINER
    config.sync.output_path = str(tmp_path / "output")
    config.sync.workers = 3
    config.sync.batch_size = 4
    config.sync.retry_base_delay = 0.0
    config.state.database = str(tmp_path / "state.db")
    return config


@pytest.fixture
def store(app_config: AppConfig) -> Iterator[StateStore]:
    """State store backed by a temporary database."""
    s = StateStore(app_config.database_path)
    yield s
    s.close()


@pytest.fixture
def remote(remote_root: Path) -> LocalObjectStore:
    """Local object store over the test root."""
    return LocalObjectStore(remote_root)
