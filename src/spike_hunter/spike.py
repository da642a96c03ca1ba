"""System-wide CPU rolling average and spike policy."""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from spike_hunter.attribution import AttributionEngine, AttributionReport
from spike_hunter.config import SpikeConfig
from spike_hunter.formatting import format_spike
from spike_hunter.ringbuffer import RollingWindow

log = structlog.get_logger()


class SystemCpuBaseline:
    """Rolling mean of system CPU usage plus a lifetime tick counter."""

    def __init__(self, window_size: int = 60) -> None:
        self.window = RollingWindow(window_size)
        self.ticks = 0

    @property
    def mean(self) -> float:
        return self.window.mean

    @property
    def sample_count(self) -> int:
        return self.window.count

    def observe(self, usage: float) -> None:
        """Fold one valid reading into the baseline."""
        self.window.push(usage)
        self.ticks += 1


@dataclass
class TickResult:
    """Outcome of one detector tick."""

    usage: float | None
    average: float
    spike: bool = False
    reports: list[AttributionReport] = field(default_factory=list)

    @property
    def spike_report(self) -> AttributionReport | None:
        """The spike-mode report, if one was produced this tick."""
        for report in self.reports:
            if report.spike_mode:
                return report
        return None


class SpikeDetector:
    """Drives attribution from per-tick system CPU readings.

    Must be called from a single execution context; update() is one atomic
    step per tick.
    """

    def __init__(
        self,
        config: SpikeConfig | None = None,
        engine: AttributionEngine | None = None,
    ) -> None:
        self.config = config or SpikeConfig()
        self.engine = engine if engine is not None else AttributionEngine()
        self.baseline = SystemCpuBaseline(self.config.window_size)
        self.spike_count = 0

    def is_spike(self, usage: float) -> bool:
        """Relative AND absolute test against the current baseline."""
        cfg = self.config
        return (
            self.baseline.sample_count >= cfg.min_samples
            and usage > self.baseline.mean * cfg.threshold
            and usage > cfg.floor_percent
        )

    def update(self, usage: float | None) -> TickResult:
        """Process one system CPU reading (percent, or None if unknown).

        Unknown readings are ignored: no sample, no tick counted, no
        attribution. Otherwise the reading joins the rolling average, a
        non-spike attribution pass runs every refresh_every ticks, and a
        spike-mode pass runs on top of it when the reading is a spike.
        """
        if usage is None:
            return TickResult(usage=None, average=self.baseline.mean)

        self.baseline.observe(usage)
        result = TickResult(usage=usage, average=self.baseline.mean)

        if self.baseline.ticks % self.config.refresh_every == 0:
            report = self.engine.run(spike_mode=False)
            if report is not None:
                result.reports.append(report)

        if self.is_spike(usage):
            result.spike = True
            self.spike_count += 1
            mean = self.baseline.mean
            log.info(
                "cpu_spike_detected",
                usage=round(usage, 1),
                avg=round(mean, 1),
                factor=round(usage / mean, 1),
                line=format_spike(usage, mean),
            )
            report = self.engine.run(spike_mode=True)
            if report is not None:
                result.reports.append(report)

        return result
