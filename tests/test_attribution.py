"""Tests for the top-process attribution engine."""

import math

import pytest
from conftest import FakeProcfs, ScriptedSource

from spike_hunter.attribution import AttributionEngine, RankedReportEntry
from spike_hunter.config import AttributionConfig
from spike_hunter.tracker import ProcessTimeTable


def make_engine(source: ScriptedSource, **overrides) -> AttributionEngine:
    """Engine wired to a scripted clock/scanner."""
    config = AttributionConfig(**overrides)
    table = ProcessTimeTable(
        source.pid_exists,
        capacity=config.table_capacity,
        window_size=config.window_size,
    )
    return AttributionEngine(config, clock=source.clock, scanner=source.scan, table=table)


def step(engine, source, total, *procs, spike=False):
    """Set the scripted state and run one pass."""
    source.total = total
    source.set_procs(*procs)
    return engine.run(spike_mode=spike)


def pids(report) -> list[int]:
    return [e.pid for e in report.entries]


class TestConstruction:
    def test_uses_injected_empty_table(self, source):
        """An empty table is still the one the engine uses."""
        table = ProcessTimeTable(source.pid_exists, capacity=1)
        engine = AttributionEngine(
            AttributionConfig(), clock=source.clock, scanner=source.scan, table=table
        )

        assert engine.table is table
        assert engine.table.capacity == 1

    def test_default_table_from_config(self):
        engine = AttributionEngine(AttributionConfig(table_capacity=7))
        assert engine.table.capacity == 7


class TestSeedingAndAborts:
    """First pass, unreadable counters and zero deltas."""

    def test_first_pass_seeds_without_report(self, source):
        engine = make_engine(source)
        assert step(engine, source, 1000, (1, 100, "a"), (2, 200, "b")) is None
        assert engine.initialized
        assert len(engine.table) == 2
        assert engine.table.get(2).last_time == 200

    def test_unreadable_clock_aborts(self, source):
        engine = make_engine(source)
        assert step(engine, source, None, (1, 100, "a")) is None
        assert not engine.initialized
        assert len(engine.table) == 0

    def test_unreadable_clock_keeps_previous_total(self, source):
        """A skipped tick does not disturb the next delta."""
        engine = make_engine(source)
        step(engine, source, 1000, (1, 100, "a"))
        assert step(engine, source, None, (1, 300, "a")) is None

        report = step(engine, source, 2000, (1, 600, "a"))
        assert report.entries[0].cpu_percent == pytest.approx(50.0)

    def test_zero_delta_aborts_without_mutation(self, source):
        engine = make_engine(source)
        step(engine, source, 1000, (1, 100, "a"))

        assert step(engine, source, 1000, (1, 400, "a")) is None
        record = engine.table.get(1)
        assert record.last_time == 100
        assert record.sample_count == 0

    def test_no_bad_samples_stored(self, source):
        """Zero-delta ticks never leave NaN/Inf in any window."""
        engine = make_engine(source)
        step(engine, source, 1000, (1, 100, "a"))
        step(engine, source, 1000, (1, 150, "a"))
        step(engine, source, 2000, (1, 200, "a"))
        step(engine, source, 2000, (1, 250, "a"))

        values = engine.table.get(1).window.values
        assert values == [pytest.approx(10.0)]
        assert all(math.isfinite(v) for v in values)


class TestPercentages:
    def test_percent_of_total_delta(self, source):
        engine = make_engine(source)
        step(engine, source, 1000, (1, 100, "a"))
        report = step(engine, source, 2000, (1, 350, "a"))

        assert report.total_delta == 1000
        entry = report.entries[0]
        assert entry == RankedReportEntry(pid=1, name="a", cpu_percent=25.0, baseline=None)
        assert entry.is_new
        assert entry.ratio is None

    def test_process_seen_once_is_reported_new(self, source):
        """A process first observed last tick has no baseline."""
        engine = make_engine(source)
        step(engine, source, 1000, (1, 100, "a"))
        report = step(engine, source, 2000, (1, 100, "a"), (2, 500, "b"))
        assert pids(report) == []  # b was only seeded

        report = step(engine, source, 3000, (1, 100, "a"), (2, 700, "b"))
        assert pids(report) == [2]
        assert report.entries[0].is_new

    def test_constant_rate_converges(self, source):
        """Constant deltas give a stable percent and an average equal to it."""
        engine = make_engine(source)
        total, cpu = 1000, 100
        step(engine, source, total, (1, cpu, "a"))
        for _ in range(25):
            total += 1000
            cpu += 50
            report = step(engine, source, total, (1, cpu, "a"))
            assert report.entries[0].cpu_percent == pytest.approx(5.0)

        record = engine.table.get(1)
        assert record.sample_count == 20
        assert record.average == pytest.approx(5.0)

    def test_baseline_shown_after_five_samples(self, source):
        engine = make_engine(source)
        total, cpu = 1000, 0
        step(engine, source, total, (1, cpu, "a"))

        entries = []
        for _ in range(6):
            total += 1000
            cpu += 50
            entries.append(step(engine, source, total, (1, cpu, "a")).entries[0])

        assert all(e.is_new for e in entries[:5])
        assert entries[5].baseline == pytest.approx(5.0)
        assert entries[5].ratio == pytest.approx(1.0)

    def test_zero_average_is_new(self, source):
        """Five idle samples do not establish a baseline."""
        engine = make_engine(source)
        total = 1000
        step(engine, source, total, (1, 0, "a"))
        for _ in range(5):
            total += 1000
            step(engine, source, total, (1, 0, "a"))

        report = step(engine, source, total + 1000, (1, 100, "a"))
        assert report.entries[0].is_new

    def test_noise_floor(self, source):
        """Usage at or below 0.01% is not a candidate but is still sampled."""
        engine = make_engine(source)
        step(engine, source, 100_000, (1, 0, "a"))
        report = step(engine, source, 200_000, (1, 1, "a"))  # 0.001%

        assert report is not None
        assert report.is_empty
        assert report.candidate_count == 0
        assert engine.table.get(1).sample_count == 1


class TestSpikeMode:
    """Spike mode only surfaces processes hotter than their own baseline."""

    def _warm(self, engine, source):
        """Six passes: a and b at a steady 10%, c appears on the last pass."""
        total, a, b = 1000, 0, 0
        step(engine, source, total, (1, a, "a"), (2, b, "b"))
        for i in range(6):
            total += 1000
            a += 100
            b += 100
            procs = [(1, a, "a"), (2, b, "b")]
            if i == 5:
                procs.append((3, 0, "c"))
            step(engine, source, total, *procs)
        return total, a, b

    def test_spike_candidates(self, source):
        engine = make_engine(source)
        total, a, b = self._warm(engine, source)

        report = step(
            engine,
            source,
            total + 1000,
            (1, a + 100, "a"),  # 10%: equal to its average, excluded
            (2, b + 300, "b"),  # 30%: above its 10% average
            (3, 50, "c"),  # 5%: new, baseline treated as 0
            spike=True,
        )

        assert report.spike_mode
        assert pids(report) == [2, 3]
        assert report.entries[1].is_new

    def test_baseline_is_pre_update_average(self, source):
        """Displayed baseline excludes this tick's own sample."""
        engine = make_engine(source)
        total, a, b = self._warm(engine, source)

        report = step(engine, source, total + 1000, (2, b + 300, "b"), spike=True)

        entry = report.entries[0]
        assert entry.baseline == pytest.approx(10.0)
        assert entry.ratio == pytest.approx(3.0)
        # The sample is folded in afterwards
        assert engine.table.get(2).average == pytest.approx(90.0 / 7)

    def test_excluded_process_time_still_updated(self, source):
        """A process skipped in spike mode is not double-counted next tick."""
        engine = make_engine(source)
        total, a, b = self._warm(engine, source)

        step(engine, source, total + 1000, (1, a + 100, "a"), spike=True)
        report = step(engine, source, total + 2000, (1, a + 200, "a"))

        assert report.entries[0].cpu_percent == pytest.approx(10.0)

    def test_non_spike_includes_all_active(self, source):
        engine = make_engine(source)
        total, a, b = self._warm(engine, source)

        report = step(engine, source, total + 1000, (1, a + 100, "a"), (2, b + 50, "b"))
        assert sorted(pids(report)) == [1, 2]


class TestRanking:
    def test_sorted_descending_top_five(self, source):
        engine = make_engine(source)
        rates = [10, 30, 30, 5, 20, 40, 1]
        step(engine, source, 1000, *[(pid, 0, f"p{pid}") for pid in range(1, 8)])
        report = step(
            engine,
            source,
            2000,
            *[(pid, rate * 10, f"p{pid}") for pid, rate in zip(range(1, 8), rates)],
        )

        assert report.candidate_count == 7
        assert pids(report) == [6, 2, 3, 5, 1]

    def test_ties_keep_scan_order(self, source):
        engine = make_engine(source)
        order = [5, 3, 9, 1]
        step(engine, source, 1000, *[(pid, 0, "x") for pid in order])
        report = step(engine, source, 2000, *[(pid, 100, "x") for pid in order])
        assert pids(report) == order

    def test_top_count_configurable(self, source):
        engine = make_engine(source, top_count=2)
        step(engine, source, 1000, *[(pid, 0, "x") for pid in range(1, 5)])
        report = step(engine, source, 2000, *[(pid, pid * 10, "x") for pid in range(1, 5)])
        assert pids(report) == [4, 3]


class TestChurn:
    """Capacity limits and pid reuse."""

    def test_untracked_process_never_reported(self, source):
        engine = make_engine(source, table_capacity=2)
        step(engine, source, 1000, (1, 0, "a"), (2, 0, "b"), (3, 0, "c"))
        report = step(engine, source, 2000, (1, 100, "a"), (2, 100, "b"), (3, 900, "c"))

        assert len(engine.table) == 2
        assert 3 not in pids(report)

    def test_dead_process_evicted_for_new_one(self, source):
        engine = make_engine(source, table_capacity=2)
        step(engine, source, 1000, (1, 0, "a"), (2, 0, "b"))
        step(engine, source, 2000, (2, 100, "b"), (3, 0, "c"))  # 1 died, 3 seeded

        assert sorted(engine.table.pids) == [2, 3]
        report = step(engine, source, 3000, (2, 200, "b"), (3, 500, "c"))
        assert pids(report) == [3, 2]

    def test_pid_reuse_lower_time(self, source):
        """Cumulative time going backwards means a new process: reseed."""
        engine = make_engine(source)
        step(engine, source, 1000, (1, 500, "a"))
        report = step(engine, source, 2000, (1, 10, "a"))

        assert pids(report) == []
        assert engine.table.get(1).last_time == 10

        report = step(engine, source, 3000, (1, 110, "a"))
        assert report.entries[0].cpu_percent == pytest.approx(10.0)
        assert report.entries[0].is_new

    def test_pid_reuse_new_start_time(self, source):
        """Same pid with a different start time is a different process."""
        engine = make_engine(source)
        step(engine, source, 1000, (1, 100, "a", 50))
        for total in (2000, 3000, 4000):
            step(engine, source, total, (1, total // 10, "a", 50))

        report = step(engine, source, 5000, (1, 600, "b", 4900))

        assert pids(report) == []
        record = engine.table.get(1)
        assert record.name == "b"
        assert record.start_time == 4900
        assert record.sample_count == 0

    def test_rename_keeps_history(self, source):
        """exec or a new comm under the same start time is the same process."""
        engine = make_engine(source)
        step(engine, source, 1000, (1, 100, "bash", 50))
        for total in (2000, 3000, 4000):
            step(engine, source, total, (1, total // 10, "bash", 50))

        report = step(engine, source, 5000, (1, 500, "make", 50))

        assert report.entries[0].name == "make"
        assert report.entries[0].cpu_percent == pytest.approx(10.0)
        record = engine.table.get(1)
        assert record.name == "make"
        assert record.sample_count == 4

    def test_relabelling_worker_attributed(self, source):
        """A kernel worker that flips its comm every tick still builds a baseline."""
        engine = make_engine(source)
        labels = ["kworker/0:1-events", "kworker/0:1-mm_percpu_wq"]
        total, cpu = 1000, 0
        step(engine, source, total, (42, cpu, labels[0], 7))

        reports = []
        for i in range(8):
            total += 1000
            cpu += 900
            reports.append(step(engine, source, total, (42, cpu, labels[i % 2], 7), spike=True))

        # First delta has no baseline, so it passes the spike-mode check
        assert pids(reports[0]) == [42]
        assert reports[0].entries[0].cpu_percent == pytest.approx(90.0)
        assert engine.table.get(42).sample_count == 8
        assert engine.table.get(42).average == pytest.approx(90.0)

        # Outside spike mode it is reported with its own baseline
        report = step(engine, source, total + 1000, (42, cpu + 900, labels[0], 7))
        assert report.entries[0].baseline == pytest.approx(90.0)

    def test_name_truncated(self, source):
        engine = make_engine(source, name_length=4)
        step(engine, source, 1000, (1, 0, "firefox-esr"))
        report = step(engine, source, 2000, (1, 100, "firefox-esr"))
        assert report.entries[0].name == "fire"


def test_reads_procfs(fake_proc: FakeProcfs):
    """Default clock/scanner read the configured proc root."""
    engine = AttributionEngine(AttributionConfig(proc_root=str(fake_proc.root)))

    fake_proc.set_total(10_000)
    fake_proc.add_process(100, 300, "firefox")
    fake_proc.add_process(200, 30, "bash")
    assert engine.run() is None

    fake_proc.set_total(12_000)
    fake_proc.add_process(100, 900, "firefox")
    fake_proc.add_process(200, 40, "bash")
    report = engine.run()

    assert [(e.pid, e.name) for e in report.entries] == [(100, "firefox"), (200, "bash")]
    assert report.entries[0].cpu_percent == pytest.approx(30.0)
    assert report.entries[1].cpu_percent == pytest.approx(0.5)


def test_compaction_uses_procfs(fake_proc: FakeProcfs):
    engine = AttributionEngine(
        AttributionConfig(proc_root=str(fake_proc.root), table_capacity=1)
    )
    fake_proc.set_total(1000)
    fake_proc.add_process(1, 10, "a")
    engine.run()

    fake_proc.remove_process(1)
    fake_proc.add_process(2, 10, "b")
    fake_proc.set_total(2000)
    engine.run()

    assert engine.table.pids == [2]
