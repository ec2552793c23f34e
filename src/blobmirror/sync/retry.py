"""Retry policy for per-object downloads.

This module provides:
- DEFAULT_MAX_ATTEMPTS, DEFAULT_BASE_DELAY, DEFAULT_BACKOFF_MULTIPLIER:
  Default retry configuration
- compute_backoff: Delay before a given retry attempt
- wait_or_cancel: Backoff sleep that wakes up on cancellation
"""

from __future__ import annotations

import threading

# Default retry configuration
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0


def compute_backoff(
    attempt: int,
    base_delay: float = DEFAULT_BASE_DELAY,
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
) -> float:
    """Delay before retry attempt ``attempt`` (1-based).

    Attempt 1 waits ``base_delay``, attempt 2 twice that, and so on.
    Attempt 0 (the first try) never waits.
    """
    if attempt <= 0:
        return 0.0
    return base_delay * multiplier ** (attempt - 1)


def wait_or_cancel(cancel_event: threading.Event, delay: float) -> bool:
    """Sleep for ``delay`` seconds unless cancellation is requested.

    Returns:
        True if cancellation was requested (before or during the wait).
    """
    if delay <= 0:
        return cancel_event.is_set()
    return cancel_event.wait(delay)
