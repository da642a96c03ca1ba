# src/spike_hunter/tracker.py
"""Bounded per-process CPU time table."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

import structlog

from spike_hunter.ringbuffer import RollingWindow

log = structlog.get_logger()

DEFAULT_CAPACITY = 200
DEFAULT_WINDOW_SIZE = 20


@dataclass
class ProcessRecord:
    """In-memory state for a tracked process."""

    pid: int
    name: str
    last_time: int  # Cumulative CPU ticks seen at the previous tick
    window: RollingWindow = field(default_factory=lambda: RollingWindow(DEFAULT_WINDOW_SIZE))
    start_time: int = 0  # Process start, ticks after boot

    @property
    def average(self) -> float:
        """Rolling average CPU percentage (0.0 with no samples)."""
        return self.window.mean

    @property
    def sample_count(self) -> int:
        """Samples folded into the average so far (saturates at window size)."""
        return self.window.count


class ProcessTimeTable:
    """Capacity-bounded mapping of pid to ProcessRecord.

    Dead processes are only evicted by compact(), which runs when an insert
    finds the table full. If compaction frees nothing, the new process is
    not tracked.
    """

    def __init__(
        self,
        pid_exists: Callable[[int], bool],
        capacity: int = DEFAULT_CAPACITY,
        window_size: int = DEFAULT_WINDOW_SIZE,
    ) -> None:
        """Initialize the table.

        Args:
            pid_exists: Existence check used by compaction
            capacity: Maximum number of records
            window_size: Samples per record's rolling window
        """
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._pid_exists = pid_exists
        self._capacity = capacity
        self._window_size = window_size
        self._records: dict[int, ProcessRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, pid: object) -> bool:
        return pid in self._records

    @property
    def capacity(self) -> int:
        """Maximum number of records."""
        return self._capacity

    @property
    def is_full(self) -> bool:
        return len(self._records) >= self._capacity

    @property
    def pids(self) -> list[int]:
        """Tracked pids in insertion order (returns a copy)."""
        return list(self._records)

    def get(self, pid: int) -> ProcessRecord | None:
        """Return the record for pid, or None."""
        return self._records.get(pid)

    def lookup_or_create(
        self, pid: int, initial_time: int, name: str, start_time: int = 0
    ) -> tuple[ProcessRecord | None, bool]:
        """Return (record, created) for pid.

        An existing record is returned untouched. Otherwise a new record is
        seeded with initial_time and an empty window, compacting first if the
        table is full. Returns (None, False) when there is still no room.
        """
        record = self._records.get(pid)
        if record is not None:
            return record, False

        if self.is_full:
            self.compact()
            if self.is_full:
                log.debug("process_table_full", pid=pid, name=name, capacity=self._capacity)
                return None, False

        record = ProcessRecord(
            pid=pid,
            name=name,
            last_time=initial_time,
            window=RollingWindow(self._window_size),
            start_time=start_time,
        )
        self._records[pid] = record
        return record, True

    def update(self, pid: int, new_time: int) -> int:
        """Store new_time for pid and return the previous cumulative time.

        Raises:
            KeyError: If pid is not tracked.
        """
        record = self._records[pid]
        previous = record.last_time
        record.last_time = new_time
        return previous

    def record_sample(self, pid: int, percent: float) -> None:
        """Fold a CPU percentage sample into pid's rolling window.

        Raises:
            KeyError: If pid is not tracked.
        """
        self._records[pid].window.push(percent)

    def reset(self, pid: int, new_time: int, name: str, start_time: int = 0) -> ProcessRecord:
        """Re-seed pid's record for a new process that reused the pid.

        Raises:
            KeyError: If pid is not tracked.
        """
        record = self._records[pid]
        record.name = name
        record.last_time = new_time
        record.start_time = start_time
        record.window.clear()
        return record

    def compact(self) -> int:
        """Remove records whose process no longer exists.

        Runs one existence check per record. Returns the number removed.
        """
        dead = [pid for pid in self._records if not self._pid_exists(pid)]
        for pid in dead:
            del self._records[pid]

        if dead:
            log.debug("process_table_compacted", removed=len(dead), remaining=len(self._records))
        return len(dead)
