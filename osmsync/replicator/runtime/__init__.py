"""
Runtime helpers shared by the long-running roles.

This module provides:
- CancellationToken: cooperative shutdown for loops and timed waits
- PollPolicy / cadence_delay: adaptive polling delays
- PidLock: one running instance per role and directory
"""

from .cancellation import CancellationToken
from .lock import PidLock, pid_alive
from .timing import PollPolicy, cadence_delay

__all__ = [
    "CancellationToken",
    "PidLock",
    "pid_alive",
    "PollPolicy",
    "cadence_delay",
]
