"""Configuration file handling for the blobmirror CLI.

Configuration is layered: built-in defaults, then the JSON config file,
then BLOBMIRROR_* environment variables and command-line flags (both
resolved by click before they reach apply_overrides).
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from blobmirror.core.config import AppConfig, ConfigError

DEFAULT_CONFIG_FILE = Path("blobmirror.json")


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from a JSON file.

    Args:
        path: Config file. When None, ./blobmirror.json is used if present.

    Returns:
        AppConfig with file values applied over defaults.

    Raises:
        ConfigError: If the file is missing, not valid JSON, or contains
            unknown keys.
    """
    if path is None:
        if not DEFAULT_CONFIG_FILE.exists():
            return AppConfig()
        path = DEFAULT_CONFIG_FILE

    path = Path(path).expanduser()
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")

    return AppConfig.from_dict(data)


def save_config(config: AppConfig, path: Path) -> None:
    """Save configuration to a JSON file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config.to_dict(), indent=2) + "\n", encoding="utf-8")


def apply_overrides(config: AppConfig, overrides: dict[str, Any]) -> None:
    """Overlay non-None values from a nested dict onto the config.

    Sections or keys whose value is None are dropped, so options the user
    did not set leave the file (or default) value in place.
    """
    config.update(_prune(overrides))


def _prune(values: dict[str, Any]) -> dict[str, Any]:
    pruned: dict[str, Any] = {}
    for key, value in values.items():
        if isinstance(value, dict):
            nested = _prune(value)
            if nested:
                pruned[key] = nested
        elif value is not None:
            pruned[key] = value
    return pruned
