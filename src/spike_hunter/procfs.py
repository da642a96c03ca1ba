"""Low-level procfs interface for Linux CPU accounting.

Reads the kernel's text files directly - no psutil overhead per process.

This module provides access to:
- /proc/stat: cumulative system-wide CPU ticks (all accounting buckets)
- /proc/<pid>/stat: cumulative per-process utime + stime
- /proc/<pid>/comm: process display name

All functions handle process disappearance gracefully by skipping or
returning None. The proc root is a parameter so tests can point at a
fake tree.
"""

from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

DEFAULT_PROC_ROOT = Path("/proc")
DEFAULT_MAX_SCAN = 500

# Fields after the closing paren of comm: state is index 0, utime index 11,
# stime index 12, starttime index 19 (fields 14, 15 and 22 of proc(5)).
_UTIME_INDEX = 11
_STIME_INDEX = 12
_STARTTIME_INDEX = 19

# Buckets summed for the system clock: user nice system idle iowait irq softirq
_CPU_BUCKETS = 7

UNKNOWN_NAME = "unknown"


@dataclass(frozen=True, slots=True)
class ProcessTimes:
    """One scanned process.

    start_time (ticks after boot) identifies the process across a pid's
    lifetime; a different value under the same pid means the pid was reused.
    """

    pid: int
    cpu_time: int  # utime + stime, in clock ticks
    name: str
    start_time: int = 0


def read_total_cpu_time(proc_root: Path = DEFAULT_PROC_ROOT) -> int | None:
    """Return cumulative system CPU ticks across all accounting buckets.

    Args:
        proc_root: procfs mount point

    Returns:
        Sum of user, nice, system, idle, iowait, irq and softirq ticks from
        the aggregate "cpu " line, or None if the file is unreadable, the
        line is missing or malformed, or the sum is zero.
    """
    try:
        with open(proc_root / "stat") as f:
            for line in f:
                if line.startswith("cpu "):
                    return _parse_cpu_line(line)
    except OSError:
        return None
    return None


def _parse_cpu_line(line: str) -> int | None:
    parts = line.split()[1 : 1 + _CPU_BUCKETS]
    if len(parts) < _CPU_BUCKETS:
        return None
    try:
        total = sum(int(p) for p in parts)
    except ValueError:
        return None
    return total or None


def parse_stat_line(line: str) -> tuple[int, int] | None:
    """Extract (utime + stime, starttime) from a /proc/<pid>/stat line.

    The comm field may contain spaces and parens, so fields are located
    relative to the LAST closing paren.

    Returns:
        Cumulative CPU ticks and start time, or None if the line is malformed.
    """
    paren_end = line.rfind(")")
    if paren_end < 0:
        return None
    fields = line[paren_end + 1 :].split()
    if len(fields) <= _STARTTIME_INDEX:
        return None
    try:
        cpu_time = int(fields[_UTIME_INDEX]) + int(fields[_STIME_INDEX])
        start_time = int(fields[_STARTTIME_INDEX])
    except ValueError:
        return None
    return cpu_time, start_time


def read_process_name(pid: int, proc_root: Path = DEFAULT_PROC_ROOT) -> str:
    """Get process display name from /proc/<pid>/comm.

    Returns:
        Name without trailing newline, or "unknown" if unreadable or empty.
    """
    try:
        name = (proc_root / str(pid) / "comm").read_text(errors="replace").strip()
    except OSError:
        return UNKNOWN_NAME
    return name or UNKNOWN_NAME


def read_process_times(pid: int, proc_root: Path = DEFAULT_PROC_ROOT) -> ProcessTimes | None:
    """Read cumulative CPU ticks and name for one process.

    Returns:
        ProcessTimes, or None if the process vanished, access was denied,
        or its stat line is malformed.
    """
    try:
        with open(proc_root / str(pid) / "stat") as f:
            line = f.readline()
    except OSError:
        return None

    parsed = parse_stat_line(line)
    if parsed is None:
        return None
    cpu_time, start_time = parsed
    return ProcessTimes(
        pid=pid,
        cpu_time=cpu_time,
        name=read_process_name(pid, proc_root),
        start_time=start_time,
    )


def list_pids(proc_root: Path = DEFAULT_PROC_ROOT) -> Iterator[int]:
    """Yield numeric entries of the proc root, in directory order."""
    try:
        for entry in proc_root.iterdir():
            name = entry.name
            if not name.isdigit():
                continue
            pid = int(name)
            if pid > 0:
                yield pid
    except OSError:
        return


def iter_processes(
    proc_root: Path = DEFAULT_PROC_ROOT,
    max_scan: int = DEFAULT_MAX_SCAN,
) -> Iterator[ProcessTimes]:
    """Lazily scan running processes.

    At most max_scan pid entries are visited per call (counted whether or
    not they could be read). Processes that exit mid-scan and malformed
    records are skipped. The iterator is single-use; call again next tick.
    """
    scanned = 0
    for pid in list_pids(proc_root):
        if scanned >= max_scan:
            break
        scanned += 1

        times = read_process_times(pid, proc_root)
        if times is not None:
            yield times


def pid_exists(pid: int, proc_root: Path = DEFAULT_PROC_ROOT) -> bool:
    """Return True if /proc/<pid>/stat exists."""
    return (proc_root / str(pid) / "stat").exists()
