"""Background daemon for spike-hunter."""

import asyncio
import os
import resource
import signal
from dataclasses import dataclass
from datetime import datetime

import psutil
import structlog

from spike_hunter import logging as console
from spike_hunter.attribution import AttributionEngine
from spike_hunter.config import Config
from spike_hunter.sensors import CpuUsageSensor, SensorList, build_sensor_list
from spike_hunter.spike import SpikeDetector, TickResult

log = structlog.get_logger()


@dataclass
class DaemonState:
    """Runtime state of the daemon."""

    running: bool = False
    tick_count: int = 0
    last_tick_time: datetime | None = None
    current_usage: float | None = None

    def update_tick(self, usage: float | None) -> None:
        """Update state after a tick."""
        self.tick_count += 1
        if usage is not None:
            self.current_usage = usage
        self.last_tick_time = datetime.now()


class Daemon:
    """Main daemon class driving sensor ticks and spike detection.

    Ticks are strictly sequential: each one is awaited before the next is
    scheduled, so the detector never sees concurrent updates.
    """

    def __init__(self, config: Config, sensors: SensorList | None = None):
        self.config = config
        self.state = DaemonState()

        engine = AttributionEngine(config.attribution)
        self.detector = SpikeDetector(config.spike, engine)
        self.sensors = sensors if sensors is not None else build_sensor_list(config, self.detector)

        self._shutdown_event = asyncio.Event()

    @property
    def cpu_sensor(self) -> CpuUsageSensor | None:
        for sensor in self.sensors:
            if isinstance(sensor, CpuUsageSensor):
                return sensor
        return None

    async def start(self) -> None:
        """Start the daemon and run until shutdown."""
        from importlib.metadata import version

        log.info("daemon_starting", version=version("spike-hunter"))
        console.version_info("spike-hunter", version("spike-hunter"))

        spike = self.config.spike
        log.info(
            "daemon_config",
            sample_interval=self.config.system.sample_interval,
            window_size=spike.window_size,
            threshold=spike.threshold,
            floor_percent=spike.floor_percent,
            table_capacity=self.config.attribution.table_capacity,
        )
        console.config_summary(
            self.config.system.sample_interval,
            spike.window_size,
            spike.threshold,
            spike.floor_percent,
        )
        log.info("daemon_sensors", sensors=[s.id for s in self.sensors])
        for sensor in self.sensors:
            console.sensor_added(sensor.name, sensor.id)

        # Setup signal handlers
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))

        # Check for existing instance
        if self._check_already_running():
            log.error("daemon_already_running")
            console.already_running()
            raise RuntimeError("Daemon is already running")

        self._write_pid_file()

        # Create config file with defaults if it doesn't exist
        if not self.config.config_path.exists():
            self.config.save()
            log.info("config_created", path=str(self.config.config_path))
            console.config_created(str(self.config.config_path))

        self.state.running = True
        log.info("daemon_started")
        console.daemon_started()

        await self._main_loop()

    async def stop(self) -> None:
        """Stop the daemon gracefully."""
        log.info("daemon_stopping")
        console.daemon_stopping()
        self.state.running = False
        self._shutdown_event.set()
        self._remove_pid_file()
        log.info("daemon_stopped")
        console.daemon_stopped()

    def request_shutdown(self) -> None:
        """Ask the main loop to exit after the current tick."""
        self._shutdown_event.set()

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle shutdown signals."""
        log.info("signal_received", signal=sig.name)
        console.signal_received(sig.name)
        self._shutdown_event.set()

    def _write_pid_file(self) -> None:
        """Write PID file."""
        self.config.pid_path.parent.mkdir(parents=True, exist_ok=True)
        self.config.pid_path.write_text(str(os.getpid()))
        log.debug("pid_file_written", path=str(self.config.pid_path))

    def _remove_pid_file(self) -> None:
        """Remove PID file if it is ours."""
        path = self.config.pid_path
        if not path.exists():
            return
        try:
            owner = int(path.read_text().strip())
        except ValueError:
            owner = None
        if owner in (None, os.getpid()):
            path.unlink()
            log.debug("pid_file_removed")

    def _check_already_running(self) -> bool:
        """Check if daemon is already running.

        Verifies not just that a process with the PID exists, but that it's
        actually the spike-hunter daemon. This prevents false positives after
        a reboot when a different process may have the same PID.
        """
        if not self.config.pid_path.exists():
            return False

        try:
            pid = int(self.config.pid_path.read_text().strip())
        except ValueError:
            log.warning("pid_file_invalid", reason="not a number")
            self.config.pid_path.unlink()
            return False

        if pid == os.getpid():
            return False

        try:
            proc = psutil.Process(pid)
            cmdline = proc.cmdline()

            cmdline_str = " ".join(cmdline).lower()
            if "spike-hunter" in cmdline_str or "spike_hunter" in cmdline_str:
                log.info(
                    "daemon_already_running_verified",
                    pid=pid,
                    cmdline=" ".join(cmdline[:3]),
                )
                return True
            else:
                # Process exists but it's not the daemon - stale PID file
                log.warning(
                    "pid_file_stale",
                    reason="different process",
                    pid=pid,
                    actual_process=proc.name(),
                )
                self.config.pid_path.unlink()
                return False

        except psutil.NoSuchProcess:
            log.warning("pid_file_stale", reason="process not found", pid=pid)
            self.config.pid_path.unlink()
            return False
        except psutil.AccessDenied:
            # Can't inspect process - assume it's running to be safe
            log.warning("pid_check_access_denied", pid=pid)
            return True

    def tick(self) -> TickResult | None:
        """Run one synchronous tick: update every sensor.

        Returns the detector's result for this tick, or None when the CPU
        reading was unknown.
        """
        self.sensors.update()
        cpu = self.cpu_sensor
        result = cpu.last_result if cpu is not None else None

        self.state.update_tick(result.usage if result is not None else None)
        return result

    def _report(self, result: TickResult) -> None:
        """Echo a tick's spike notification and reports to the console."""
        if result.spike and result.usage is not None:
            console.cpu_spike(result.usage, result.average)
        for report in result.reports:
            console.top_processes(report)

    def _heartbeat(self) -> None:
        table = self.detector.engine.table
        rss_mb = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss / 1024
        average = self.detector.baseline.mean

        log.info(
            "daemon_heartbeat",
            ticks=self.state.tick_count,
            cpu_avg=round(average, 1),
            spikes=self.detector.spike_count,
            tracked=f"{len(table)}/{table.capacity}",
            rss_mb=round(rss_mb, 1),
        )
        console.heartbeat(
            self.state.tick_count,
            average,
            self.detector.spike_count,
            len(table),
            table.capacity,
            rss_mb,
        )

    async def _main_loop(self) -> None:
        """Main loop ticking at the configured interval.

        Each iteration:
        1. Run tick() in the default executor (procfs reads block)
        2. Echo spike notifications and reports to the console
        3. Emit a heartbeat every heartbeat_samples ticks
        4. Sleep for the remaining interval

        The loop runs until the shutdown event is set.
        """
        sample_interval = self.config.system.sample_interval
        heartbeat_interval = self.config.system.heartbeat_samples
        loop = asyncio.get_running_loop()

        while not self._shutdown_event.is_set():
            try:
                iteration_start = loop.time()

                result = await loop.run_in_executor(None, self.tick)

                if result is not None:
                    self._report(result)

                if heartbeat_interval > 0 and self.state.tick_count % heartbeat_interval == 0:
                    self._heartbeat()

                # Sleep for remaining interval (maintains consistent tick rate)
                elapsed = loop.time() - iteration_start
                sleep_time = sample_interval - elapsed
                if sleep_time > 0:
                    try:
                        await asyncio.wait_for(self._shutdown_event.wait(), timeout=sleep_time)
                        break  # Shutdown requested during sleep
                    except asyncio.TimeoutError:
                        pass  # Normal timeout, continue to next tick

            except asyncio.CancelledError:
                log.info("main_loop_cancelled")
                break
            except Exception as e:
                log.error("tick_failed", error=str(e))
                console.tick_failed(str(e))
                # Wait briefly before retry, but exit immediately if shutdown
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=1.0)
                    break
                except asyncio.TimeoutError:
                    pass


async def run_daemon(config: Config | None = None) -> None:
    """Run the daemon until shutdown.

    Args:
        config: Optional config, loads from file if not provided
    """
    from spike_hunter.logging import configure

    if config is None:
        config = Config.load()

    configure(config)

    daemon = Daemon(config)

    try:
        await daemon.start()
    except Exception as e:
        log.exception("daemon_crashed", error=str(e))
        raise
    finally:
        await daemon.stop()
