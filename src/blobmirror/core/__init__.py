"""Core module - Shared configuration, enums and hashing."""

from blobmirror.core.config import (
    AppConfig,
    ConfigError,
    FolderOrganizationConfig,
    LoggingConfig,
    RemoteConfig,
    StateConfig,
    SyncConfig,
    WatchConfig,
)
from blobmirror.core.hashing import (
    HashingWriter,
    compute_file_hash,
    md5_base64_to_hex,
)
from blobmirror.core.types import ErrorKind, FolderStrategy, ObjectStatus, RunStatus

__all__ = [
    # Config
    "AppConfig",
    "ConfigError",
    "FolderOrganizationConfig",
    "LoggingConfig",
    "RemoteConfig",
    "StateConfig",
    "SyncConfig",
    "WatchConfig",
    # Hashing
    "HashingWriter",
    "compute_file_hash",
    "md5_base64_to_hex",
    # Types
    "ErrorKind",
    "FolderStrategy",
    "ObjectStatus",
    "RunStatus",
]
