"""
Contiguous sequence ID ranges.

A batch ``(start, end]`` is the unit of download and of application:
a role's cursor moves from ``start`` to ``end`` only after every ID in
the range was processed.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Batch:
    """Half-open range of sequence IDs, start exclusive, end inclusive.

    Example:
        >>> batch = Batch(2, 5)
        >>> list(batch.ids())
        [3, 4, 5]
    """

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start < 0 or self.end <= self.start:
            raise ValueError(f"Invalid batch ({self.start}, {self.end}]")

    @classmethod
    def bounded(cls, start: int, latest: int, max_size: int) -> Batch:
        """Largest batch after ``start`` that neither passes ``latest`` nor ``max_size``."""
        return cls(start, min(latest, start + max_size))

    @property
    def count(self) -> int:
        return self.end - self.start

    def ids(self) -> range:
        return range(self.start + 1, self.end + 1)

    def describe(self) -> str:
        if self.count == 1:
            return f"OSC file {self.end}"
        return f"{self.count} OSC files ({self.start + 1} to {self.end})"

    def __str__(self) -> str:
        return f"({self.start}, {self.end}]"
