"""Base exception for errors tagged with an ErrorKind.

Errors are classified where they originate (remote store adapters, the
filesystem sink, the disk guard) so the worker never has to inspect
messages to decide whether to retry.
"""

from __future__ import annotations

from blobmirror.core.types import ErrorKind


class SyncError(Exception):
    """Base exception for sync errors.

    Attributes:
        kind: Classification used for retry decisions and the error log.
    """

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str, kind: ErrorKind | None = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind
