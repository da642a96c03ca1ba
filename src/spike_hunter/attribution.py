"""Top-process CPU attribution from cumulative time snapshots."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from functools import partial
from pathlib import Path

import structlog

from spike_hunter import procfs
from spike_hunter.config import AttributionConfig
from spike_hunter.formatting import format_report_entry
from spike_hunter.procfs import ProcessTimes
from spike_hunter.tracker import ProcessTimeTable

log = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class RankedReportEntry:
    """One process in a ranked report.

    baseline is the rolling average from BEFORE this tick's sample, or None
    when the process has no established history ("new").
    """

    pid: int
    name: str
    cpu_percent: float
    baseline: float | None

    @property
    def is_new(self) -> bool:
        return self.baseline is None

    @property
    def ratio(self) -> float | None:
        """cpu_percent / baseline, or None for new processes."""
        if self.baseline is None:
            return None
        return self.cpu_percent / self.baseline


@dataclass(frozen=True)
class AttributionReport:
    """Result of one attribution pass."""

    spike_mode: bool
    total_delta: int  # System CPU ticks elapsed since the previous pass
    candidate_count: int
    entries: tuple[RankedReportEntry, ...]

    @property
    def is_empty(self) -> bool:
        return not self.entries


class AttributionEngine:
    """Attributes system CPU usage to processes between two passes.

    Each run() diffs the current cumulative times against the previous pass.
    The first successful pass only seeds state. Nothing here raises on bad
    input: unreadable counters and zero deltas produce no report.
    """

    def __init__(
        self,
        config: AttributionConfig | None = None,
        *,
        clock: Callable[[], int | None] | None = None,
        scanner: Callable[[], Iterable[ProcessTimes]] | None = None,
        table: ProcessTimeTable | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            config: Attribution settings (defaults if None)
            clock: Returns cumulative system CPU ticks or None
            scanner: Returns a fresh iterable of ProcessTimes per call
            table: Process table (built from config if None)
        """
        self.config = config or AttributionConfig()
        root = Path(self.config.proc_root)

        self._clock = clock or partial(procfs.read_total_cpu_time, root)
        self._scanner = scanner or partial(
            procfs.iter_processes, root, max_scan=self.config.max_scan
        )
        self.table = table if table is not None else ProcessTimeTable(
            partial(procfs.pid_exists, proc_root=root),
            capacity=self.config.table_capacity,
            window_size=self.config.window_size,
        )
        self._last_total: int | None = None

    @property
    def initialized(self) -> bool:
        """True once a pass has seeded the previous system total."""
        return self._last_total is not None

    def run(self, spike_mode: bool = False) -> AttributionReport | None:
        """Run one attribution pass.

        Args:
            spike_mode: Only surface processes running hotter than their
                own rolling average

        Returns:
            The ranked report, or None when the pass was aborted (unreadable
            counters, zero delta) or only seeded state.
        """
        total = self._clock()
        if total is None:
            log.debug("attribution_skipped", reason="cpu_time_unavailable")
            return None

        if self._last_total is None:
            self._seed(total)
            return None

        total_delta = total - self._last_total
        if total_delta <= 0:
            log.debug("attribution_skipped", reason="no_cpu_time_elapsed", delta=total_delta)
            self._last_total = total
            return None

        candidates = self._collect_candidates(total_delta, spike_mode)

        # sorted() is stable: equal percentages keep scan order
        ranked = sorted(candidates, key=lambda e: e.cpu_percent, reverse=True)
        report = AttributionReport(
            spike_mode=spike_mode,
            total_delta=total_delta,
            candidate_count=len(candidates),
            entries=tuple(ranked[: self.config.top_count]),
        )

        self._last_total = total

        if not report.is_empty:
            self._log_report(report)
        return report

    def _seed(self, total: int) -> None:
        """First pass: record every process's time, compute nothing."""
        for proc in self._scanner():
            name = proc.name[: self.config.name_length]
            self.table.lookup_or_create(proc.pid, proc.cpu_time, name, proc.start_time)
        self._last_total = total
        log.debug("attribution_seeded", tracked=len(self.table))

    def _collect_candidates(self, total_delta: int, spike_mode: bool) -> list[RankedReportEntry]:
        cfg = self.config
        candidates: list[RankedReportEntry] = []

        for proc in self._scanner():
            name = proc.name[: cfg.name_length]
            record, created = self.table.lookup_or_create(
                proc.pid, proc.cpu_time, name, proc.start_time
            )
            if record is None or created:
                # Untracked (table full) or seeded this tick: no delta yet
                continue

            if proc.cpu_time < record.last_time or proc.start_time != record.start_time:
                # Pid reused by a different process
                self.table.reset(proc.pid, proc.cpu_time, name, proc.start_time)
                continue

            # Same process, possibly renamed: history carries over
            record.name = name

            previous_time = self.table.update(proc.pid, proc.cpu_time)
            cpu_percent = 100.0 * (proc.cpu_time - previous_time) / total_delta

            prev_avg = record.average
            prev_count = record.sample_count

            if cpu_percent > cfg.noise_floor and (not spike_mode or cpu_percent > prev_avg):
                if prev_count >= cfg.min_baseline_samples and prev_avg > 0.0:
                    baseline: float | None = prev_avg
                else:
                    baseline = None
                candidates.append(
                    RankedReportEntry(
                        pid=proc.pid,
                        name=name,
                        cpu_percent=cpu_percent,
                        baseline=baseline,
                    )
                )

            self.table.record_sample(proc.pid, cpu_percent)

        return candidates

    def _log_report(self, report: AttributionReport) -> None:
        log.info(
            "top_cpu_processes",
            spike_mode=report.spike_mode,
            candidates=report.candidate_count,
            shown=len(report.entries),
        )
        for rank, entry in enumerate(report.entries, start=1):
            log.info(
                "top_cpu_process",
                rank=rank,
                pid=entry.pid,
                name=entry.name,
                cpu_percent=round(entry.cpu_percent, 2),
                avg=round(entry.baseline, 2) if entry.baseline is not None else None,
                line=format_report_entry(entry),
            )
