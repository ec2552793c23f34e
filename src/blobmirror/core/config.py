"""Configuration classes for blobmirror.

This module defines the explicit configuration value that is built once by
the CLI and passed into the orchestrator, state store and worker pool.

Classes:
- RemoteConfig: Which object store to read from and how to reach it
- FolderOrganizationConfig: Local folder layout settings
- SyncConfig: Sync behavior (container, workers, thresholds, retry)
- WatchConfig, StateConfig, LoggingConfig: Ambient settings
- AppConfig: Aggregate with dict round-tripping and validation
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

from blobmirror.core.types import FolderStrategy

REMOTE_BACKENDS = ("local", "s3", "azure")
LOG_LEVELS = ("debug", "info", "warning", "warn", "error")
LOG_FORMATS = ("text", "json")


class ConfigError(ValueError):
    """Raised when configuration values are invalid."""


@dataclass
class RemoteConfig:
    """Connection settings for the remote object store.

    The sync container names the S3 bucket, the Azure container, or the
    sub-directory of ``local_root`` for the local backend.

    Attributes:
        backend: One of "local", "s3", "azure".
        local_root: Root directory for the local backend.
        endpoint_url: Custom S3 endpoint (MinIO, OVH, ...).
        access_key: S3 access key ID.
        secret_key: S3 secret access key.
        region: S3 region.
        account_url: Azure Blob service URL
            (e.g. "https://account.blob.core.windows.net").
        sas_token: Azure shared access signature query string.
        timeout: Network timeout in seconds.
    """

    backend: str = "local"
    local_root: str | None = None
    endpoint_url: str | None = None
    access_key: str | None = None
    secret_key: str | None = None
    region: str = "us-east-1"
    account_url: str | None = None
    sas_token: str | None = None
    timeout: float = 30.0


@dataclass
class FolderOrganizationConfig:
    """Settings for organizing downloaded files into bounded folders."""

    enabled: bool = False
    max_files_per_folder: int = 10000
    strategy: str = FolderStrategy.SEQUENTIAL.value
    partition_depth: int = 2


@dataclass
class SyncConfig:
    """Synchronization settings.

    Attributes:
        container: Remote container (bucket) to mirror.
        output_path: Local destination directory.
        prefix: Only sync object keys starting with this prefix.
        workers: Number of concurrent download workers.
        batch_size: Objects requested per listing page.
        skip_existing: Mark unchanged, already-synced objects as skipped.
        verify_checksums: Verify the MD5 of downloaded content when the
            remote reports one.
        force_resync: Re-download everything regardless of state.
        disk_warn_percent: Filesystem usage that triggers a warning.
        disk_stop_percent: Filesystem usage at which downloads stop.
        max_attempts: Download attempts per object.
        retry_base_delay: Delay before the first retry, doubled per attempt.
        folder_organization: Folder layout settings.
    """

    container: str = ""
    output_path: str = "./data"
    prefix: str = ""
    workers: int = 10
    batch_size: int = 5000
    skip_existing: bool = True
    verify_checksums: bool = True
    force_resync: bool = False
    disk_warn_percent: int = 80
    disk_stop_percent: int = 90
    max_attempts: int = 3
    retry_base_delay: float = 1.0
    folder_organization: FolderOrganizationConfig = field(
        default_factory=FolderOrganizationConfig
    )


@dataclass
class WatchConfig:
    """Continuous sync settings. Interval is in seconds."""

    enabled: bool = False
    interval: float = 300.0


@dataclass
class StateConfig:
    """State database location."""

    database: str = "./.sync-state.db"


@dataclass
class LoggingConfig:
    """Log level and output format (text or json)."""

    level: str = "info"
    format: str = "text"


@dataclass
class AppConfig:
    """Complete application configuration."""

    remote: RemoteConfig = field(default_factory=RemoteConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    watch: WatchConfig = field(default_factory=WatchConfig)
    state: StateConfig = field(default_factory=StateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def output_path(self) -> Path:
        """Resolved local output directory."""
        return Path(self.sync.output_path).expanduser()

    @property
    def database_path(self) -> Path:
        """Resolved state database path."""
        return Path(self.state.database).expanduser()

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain nested dict (for config templates)."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AppConfig:
        """Build a config from a nested dict, starting from defaults.

        Unknown keys raise ConfigError so typos in config files are not
        silently ignored.
        """
        config = cls()
        config.update(data)
        return config

    def update(self, data: dict[str, Any]) -> None:
        """Overlay values from a nested dict onto this config in place."""
        for section_name, values in data.items():
            if section_name not in _SECTION_NAMES:
                raise ConfigError(f"Unknown config section: {section_name}")
            if not isinstance(values, dict):
                raise ConfigError(f"Config section {section_name} must be a mapping")
            _apply(getattr(self, section_name), values, section_name)

    def validate(self) -> None:
        """Check the configuration.

        Raises:
            ConfigError: If any value is missing or out of range.
        """
        s = self.sync
        if not s.container:
            raise ConfigError("container name is required")

        if self.remote.backend not in REMOTE_BACKENDS:
            raise ConfigError(
                f"invalid remote backend {self.remote.backend!r}: "
                f"must be one of {', '.join(REMOTE_BACKENDS)}"
            )
        if self.remote.backend == "local" and not self.remote.local_root:
            raise ConfigError("local backend requires remote.local_root")
        if self.remote.backend == "azure" and not self.remote.account_url:
            raise ConfigError("azure backend requires remote.account_url")

        if not 1 <= s.workers <= 100:
            raise ConfigError("workers must be between 1 and 100")
        if not 1 <= s.batch_size <= 10000:
            raise ConfigError("batch size must be between 1 and 10000")
        if not 1 <= s.disk_warn_percent <= 99:
            raise ConfigError("disk warn percent must be between 1 and 99")
        if not 1 <= s.disk_stop_percent <= 99:
            raise ConfigError("disk stop percent must be between 1 and 99")
        if s.disk_warn_percent >= s.disk_stop_percent:
            raise ConfigError("disk warn percent must be less than disk stop percent")
        if s.max_attempts < 1:
            raise ConfigError("max attempts must be at least 1")
        if s.retry_base_delay < 0:
            raise ConfigError("retry base delay must not be negative")

        fo = s.folder_organization
        if fo.enabled:
            if not 100 <= fo.max_files_per_folder <= 100000:
                raise ConfigError("max files per folder must be between 100 and 100000")
            valid = [strategy.value for strategy in FolderStrategy]
            if fo.strategy not in valid:
                raise ConfigError(
                    "invalid folder organization strategy: must be "
                    "sequential, partition_key, or date"
                )
            if not 1 <= fo.partition_depth <= 4:
                raise ConfigError("partition depth must be between 1 and 4")

        if self.watch.interval <= 0:
            raise ConfigError("watch interval must be positive")
        if self.logging.level.lower() not in LOG_LEVELS:
            raise ConfigError(f"invalid log level: {self.logging.level}")
        if self.logging.format not in LOG_FORMATS:
            raise ConfigError(f"invalid log format: {self.logging.format}")


_SECTION_NAMES = {f.name for f in fields(AppConfig)}


def _apply(target: Any, values: dict[str, Any], path: str) -> None:
    """Recursively copy dict values onto a dataclass instance."""
    known = {f.name for f in fields(target)}
    for key, value in values.items():
        if key not in known:
            raise ConfigError(f"Unknown config key: {path}.{key}")
        current = getattr(target, key)
        if hasattr(current, "__dataclass_fields__"):
            if not isinstance(value, dict):
                raise ConfigError(f"Config key {path}.{key} must be a mapping")
            _apply(current, value, f"{path}.{key}")
        else:
            setattr(target, key, value)
