# src/spike_hunter/ringbuffer.py
"""Fixed-size rolling window of float samples.

Used for the 60-sample system CPU average and the 20-sample per-process
averages. Storage is preallocated; nothing grows after construction.
"""

import math


class RollingWindow:
    """Circular buffer with a write cursor, saturating fill count and mean.

    The mean covers only the filled slots until the buffer wraps once,
    after which it covers the last `capacity` samples.
    """

    __slots__ = ("_samples", "_cursor", "_count", "_mean")

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._samples: list[float] = [0.0] * capacity
        self._cursor = 0
        self._count = 0
        self._mean = 0.0

    def __len__(self) -> int:
        """Return number of filled slots."""
        return self._count

    @property
    def capacity(self) -> int:
        """Return maximum number of samples the window can hold."""
        return len(self._samples)

    @property
    def count(self) -> int:
        """Number of filled slots (saturates at capacity)."""
        return self._count

    @property
    def mean(self) -> float:
        """Mean over the filled slots, 0.0 when empty."""
        return self._mean

    @property
    def is_empty(self) -> bool:
        """Return True if no sample has been pushed."""
        return self._count == 0

    @property
    def is_full(self) -> bool:
        """Return True once the window has wrapped."""
        return self._count == len(self._samples)

    @property
    def values(self) -> list[float]:
        """Filled samples, oldest first (returns a copy)."""
        if not self.is_full:
            return self._samples[: self._count]
        return self._samples[self._cursor :] + self._samples[: self._cursor]

    def push(self, value: float) -> None:
        """Overwrite the oldest slot with value and recompute the mean."""
        if not math.isfinite(value):
            raise ValueError(f"sample must be finite, got {value!r}")

        capacity = len(self._samples)
        self._samples[self._cursor] = value
        self._cursor = (self._cursor + 1) % capacity
        if self._count < capacity:
            self._count += 1

        self._mean = sum(self._samples[: self._count]) / self._count

    def clear(self) -> None:
        """Empty the window."""
        self._samples = [0.0] * len(self._samples)
        self._cursor = 0
        self._count = 0
        self._mean = 0.0
