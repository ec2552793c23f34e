"""Content hashing helpers.

This module provides:
- compute_file_hash: Streaming hash of a file on disk
- HashingWriter: Binary sink that hashes bytes as they are written
- md5_base64_to_hex: Normalize a base64 Content-MD5 header to hex
"""

from __future__ import annotations

import base64
import binascii
import hashlib
from pathlib import Path
from typing import BinaryIO

READ_BLOCK_SIZE = 1024 * 1024


def new_hasher(algorithm: str = "md5") -> hashlib._Hash:
    """Create a hasher, flagged as non-security use where supported."""
    return hashlib.new(algorithm, usedforsecurity=False)


def compute_file_hash(path: Path, algorithm: str = "md5") -> str:
    """Compute the hash of a file.

    Reads the file in blocks to handle large files efficiently.

    Args:
        path: Path to the file to hash.
        algorithm: hashlib algorithm name (default: md5, as object stores
            report Content-MD5).

    Returns:
        Lowercase hexadecimal digest.
    """
    hasher = new_hasher(algorithm)
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(READ_BLOCK_SIZE), b""):
            hasher.update(block)
    return hasher.hexdigest()


def md5_base64_to_hex(value: str | bytes | None) -> str | None:
    """Convert a base64 Content-MD5 value to lowercase hex.

    Returns None for empty or malformed values.
    """
    if not value:
        return None
    try:
        raw = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return None
    if len(raw) != 16:
        return None
    return raw.hex()


class HashingWriter:
    """Write-through sink that hashes everything written to it.

    Wraps an open binary file so integrity can be verified in the same pass
    that streams the object to disk, without buffering it in memory.
    """

    def __init__(self, target: BinaryIO, algorithm: str = "md5") -> None:
        self._target = target
        self._hasher = new_hasher(algorithm)
        self.bytes_written = 0

    def write(self, data: bytes) -> int:
        written = self._target.write(data)
        self._hasher.update(data)
        self.bytes_written += len(data)
        return written if written is not None else len(data)

    def flush(self) -> None:
        self._target.flush()

    def hexdigest(self) -> str:
        return self._hasher.hexdigest()
