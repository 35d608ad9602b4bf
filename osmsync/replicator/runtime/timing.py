"""
Adaptive polling policy.

The producer publishes a new sequence ID roughly once per expected
interval. After a successful batch the next check is aligned to that
cadence; before the first success a short fixed delay is used. When the
aligned delay has already run out, the Fetcher switches to a handful of
quick retries and then to slow retries until data shows up.

Everything here is a pure function of elapsed time and configuration.
"""

from __future__ import annotations

from dataclasses import dataclass


def cadence_delay(
    last_success: float | None,
    now: float,
    *,
    initial_delay: float,
    expected_interval: float,
    min_delay: float = 0.0,
) -> float:
    """Seconds to wait before the next check.

    Args:
        last_success: Clock reading of the last successful batch, or None
        now: Current clock reading
        initial_delay: Delay used before any batch succeeded
        expected_interval: Producer's publishing cadence
        min_delay: Lower bound for the aligned delay
    """
    if last_success is None:
        return initial_delay

    remaining = last_success + expected_interval - now
    return max(remaining, min_delay)


@dataclass(frozen=True)
class PollPolicy:
    """Timing configuration of one polling role.

    Attributes:
        initial_delay: First sleep before any batch succeeded
        expected_interval: Producer cadence used to align sleeps
        min_delay: Floor of the aligned sleep
        quick_retry_delay: Interval between quick retries
        quick_retry_count: Number of quick retries before slowing down
        slow_retry_delay: Interval once quick retries are exhausted
    """

    initial_delay: float
    expected_interval: float
    min_delay: float = 0.0
    quick_retry_delay: float = 1.0
    quick_retry_count: int = 10
    slow_retry_delay: float = 60.0

    def next_delay(self, last_success: float | None, now: float) -> float:
        return cadence_delay(
            last_success,
            now,
            initial_delay=self.initial_delay,
            expected_interval=self.expected_interval,
            min_delay=self.min_delay,
        )
