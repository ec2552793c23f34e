"""Disk usage guard for the download worker pool.

The guard is checked before every download attempt. It is advisory: usage
is sampled, not reserved, so concurrent downloads may overshoot the stop
threshold by at most their combined in-flight size.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from pathlib import Path

from blobmirror.sync.types import DiskThresholdError

logger = logging.getLogger(__name__)

UsageProbe = Callable[[Path], float]


def filesystem_usage_percent(path: Path) -> float:
    """Percentage of the filesystem holding ``path`` that is in use.

    The nearest existing ancestor is measured, so the output directory does
    not have to exist yet.
    """
    probe = Path(path).resolve()
    while not probe.exists() and probe != probe.parent:
        probe = probe.parent
    usage = shutil.disk_usage(probe)
    if usage.total == 0:
        return 0.0
    return usage.used / usage.total * 100


class DiskGuard:
    """Compares filesystem usage against warn and stop thresholds.

    Usage:
        guard = DiskGuard(Path("./data"), warn_percent=80, stop_percent=90)
        guard.check()  # raises DiskThresholdError at or above 90%
    """

    def __init__(
        self,
        path: Path,
        warn_percent: int,
        stop_percent: int,
        probe: UsageProbe | None = None,
    ) -> None:
        """Initialize the guard.

        Args:
            path: Output directory whose filesystem is measured.
            warn_percent: Usage at which a warning is logged.
            stop_percent: Usage at which downloads must stop.
            probe: Usage function (default: shutil.disk_usage based).
        """
        self._path = Path(path)
        self._warn_percent = warn_percent
        self._stop_percent = stop_percent
        self._probe = probe or filesystem_usage_percent

    def check(self) -> float | None:
        """Measure usage and enforce thresholds.

        Returns:
            The measured usage, or None if it could not be measured.

        Raises:
            DiskThresholdError: If usage is at or above the stop threshold.
        """
        try:
            usage = self._probe(self._path)
        except OSError as e:
            logger.warning(f"Failed to check disk usage of {self._path}: {e}")
            return None

        if usage >= self._stop_percent:
            raise DiskThresholdError(usage, self._stop_percent)
        if usage >= self._warn_percent:
            logger.warning(
                f"Disk usage {usage:.1f}% is above warning threshold "
                f"{self._warn_percent}%"
            )
        return usage
