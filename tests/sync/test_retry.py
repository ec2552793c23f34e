"""Tests for retry backoff helpers."""

import threading

import pytest

from blobmirror.sync.retry import compute_backoff, wait_or_cancel


class TestComputeBackoff:
    """Tests for compute_backoff()."""

    def test_first_attempt_never_waits(self) -> None:
        """Attempt 0 has no delay."""
        assert compute_backoff(0) == 0.0

    def test_exponential(self) -> None:
        """Delay doubles with each retry."""
        assert [compute_backoff(a, 1.0) for a in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_custom_multiplier(self) -> None:
        """The multiplier is configurable."""
        assert compute_backoff(3, 0.5, 3.0) == pytest.approx(4.5)


class TestWaitOrCancel:
    """Tests for wait_or_cancel()."""

    def test_zero_delay(self) -> None:
        """A zero delay reports the current cancellation state."""
        event = threading.Event()
        assert wait_or_cancel(event, 0) is False
        event.set()
        assert wait_or_cancel(event, 0) is True

    def test_wakes_on_cancel(self) -> None:
        """A set event interrupts the wait immediately."""
        event = threading.Event()
        event.set()
        assert wait_or_cancel(event, 30.0) is True

    def test_times_out(self) -> None:
        """Without cancellation the wait runs out."""
        assert wait_or_cancel(threading.Event(), 0.01) is False
