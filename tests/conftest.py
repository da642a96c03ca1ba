"""Shared test fixtures for spike-hunter."""

import shutil
from collections import namedtuple
from pathlib import Path

import pytest

from spike_hunter.procfs import ProcessTimes
from spike_hunter.tracker import ProcessTimeTable

# Same field layout as psutil.cpu_times() on Linux
CpuTimes = namedtuple(
    "CpuTimes",
    "user nice system idle iowait irq softirq steal guest guest_nice",
)


def cpu_times_series(busy_step: float, idle_step: float, count: int = 50) -> list[CpuTimes]:
    """Cumulative psutil-style cpu times where each call adds busy/idle seconds.

    guest time is also advanced, as it is already counted in user.
    """
    return [
        CpuTimes(
            user=busy_step * i,
            nice=0.0,
            system=0.0,
            idle=idle_step * i,
            iowait=0.0,
            irq=0.0,
            softirq=0.0,
            steal=0.0,
            guest=busy_step * i / 2,
            guest_nice=0.0,
        )
        for i in range(count)
    ]


class FakeProcfs:
    """Writes a minimal procfs tree: /stat plus <pid>/stat and <pid>/comm."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def set_total(self, total: int) -> None:
        """Write an aggregate cpu line whose first seven buckets sum to total."""
        user = total // 2
        idle = total - user
        (self.root / "stat").write_text(
            f"cpu  {user} 0 0 {idle} 0 0 0 0 0 0\n"
            f"cpu0 {user} 0 0 {idle} 0 0 0 0 0 0\n"
            "intr 0\nctxt 0\nbtime 1706000000\n"
        )

    def add_process(
        self, pid: int, cpu_time: int, name: str = "proc", start_time: int = 12345
    ) -> None:
        """Create or overwrite a process with utime + stime == cpu_time."""
        utime = cpu_time - cpu_time // 3
        stime = cpu_time // 3
        proc_dir = self.root / str(pid)
        proc_dir.mkdir(exist_ok=True)
        (proc_dir / "stat").write_text(make_stat_line(pid, name, utime, stime, start_time))
        (proc_dir / "comm").write_text(f"{name}\n")

    def remove_process(self, pid: int) -> None:
        shutil.rmtree(self.root / str(pid))


def make_stat_line(pid: int, comm: str, utime: int, stime: int, start_time: int = 12345) -> str:
    """Build a /proc/<pid>/stat line with utime/stime at fields 14/15, starttime at 22."""
    return (
        f"{pid} ({comm}) S 1 {pid} {pid} 0 -1 4194560 120 0 3 0 "
        f"{utime} {stime} 0 0 20 0 1 0 {start_time} 1048576 256\n"
    )


class ScriptedSource:
    """Clock and scanner driven by test code instead of the OS.

    Set `total` and `procs`, then call engine.run().
    """

    def __init__(self) -> None:
        self.total: int | None = None
        self.procs: list[ProcessTimes] = []
        self.alive: set[int] = set()

    def clock(self) -> int | None:
        return self.total

    def scan(self) -> list[ProcessTimes]:
        return list(self.procs)

    def pid_exists(self, pid: int) -> bool:
        return pid in self.alive

    def set_procs(self, *procs: tuple) -> None:
        """Replace the process list; all alive.

        Each entry is (pid, cpu_time, name) or (pid, cpu_time, name, start_time).
        """
        self.procs = [ProcessTimes(*p) for p in procs]
        self.alive = {p[0] for p in procs}


class FakeEngine:
    """Records attribution calls made by the spike detector."""

    def __init__(self) -> None:
        self.calls: list[bool] = []
        self.table = ProcessTimeTable(lambda pid: True)

    def run(self, spike_mode: bool = False):
        self.calls.append(spike_mode)
        return None


@pytest.fixture
def fake_proc(tmp_path: Path) -> FakeProcfs:
    """Empty fake procfs rooted in tmp_path."""
    return FakeProcfs(tmp_path / "proc")


@pytest.fixture
def source() -> ScriptedSource:
    return ScriptedSource()
