"""Sensor records and their providers.

A Sensor is a named metric with a bounded history of measures. Providers
subclass it and implement read(); update() stores a reading only when it is
known, so a failed read leaves the previous value in place.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterator
from pathlib import Path

import psutil
import structlog

from spike_hunter.config import Config
from spike_hunter.spike import SpikeDetector, TickResult

log = structlog.get_logger()

PROVIDER_NAME = "psutil"
PHONE_SENSOR_ID = "phone-sensor-battery"

# psutil fields that are already counted inside user/nice on Linux
_GUEST_FIELDS = ("guest", "guest_nice")


class Sensor:
    """Named metric record with a bounded measure history."""

    def __init__(
        self,
        sensor_id: str,
        name: str,
        chip: str,
        values_max_length: int = 120,
        min_value: float | None = None,
        max_value: float | None = None,
    ) -> None:
        self.id = sensor_id
        self.name = name
        self.chip = chip
        self.min = min_value
        self.max = max_value
        self.measures: deque[float] = deque(maxlen=values_max_length)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id!r} current={self.current}>"

    @property
    def current(self) -> float | None:
        """Most recent stored value, None before the first."""
        return self.measures[-1] if self.measures else None

    def set_current_value(self, value: float) -> None:
        """Append value to the history and make it current."""
        self.measures.append(value)

    def read(self) -> float | None:
        """Take one reading; None means no data this tick."""
        raise NotImplementedError

    def update(self) -> float | None:
        """Read and store; returns the reading (None leaves the record unchanged)."""
        value = self.read()
        if value is not None:
            self.set_current_value(value)
        return value


class SensorList:
    """Ordered collection of sensors, updated together each tick."""

    def __init__(self) -> None:
        self._sensors: list[Sensor] = []

    def __iter__(self) -> Iterator[Sensor]:
        return iter(self._sensors)

    def __len__(self) -> int:
        return len(self._sensors)

    def append(self, sensor: Sensor) -> None:
        """Register a sensor. Ids must be unique."""
        if self.get(sensor.id) is not None:
            raise ValueError(f"Duplicate sensor id: {sensor.id!r}")
        self._sensors.append(sensor)

    def get(self, sensor_id: str) -> Sensor | None:
        """Find a sensor by id."""
        for sensor in self._sensors:
            if sensor.id == sensor_id:
                return sensor
        return None

    def update(self) -> None:
        """Update every sensor in registration order."""
        for sensor in self._sensors:
            sensor.update()


class CpuUsageSensor(Sensor):
    """System CPU usage from psutil, forwarded to the spike detector.

    usage = 100 * d(user + nice + system) / d(all buckets) since the last
    read. The first read and reads with no elapsed time are unknown.
    """

    def __init__(
        self,
        detector: SpikeDetector | None = None,
        values_max_length: int = 120,
    ) -> None:
        super().__init__(
            f"{PROVIDER_NAME} cpu usage",
            "CPU usage",
            "CPU",
            values_max_length,
            min_value=0.0,
            max_value=100.0,
        )
        self.detector = detector
        self.last_result: TickResult | None = None
        self._last_used: float | None = None
        self._last_total = 0.0

    def read(self) -> float | None:
        times = psutil.cpu_times()
        used = times.user + getattr(times, "nice", 0.0) + times.system
        total = sum(times) - sum(getattr(times, f, 0.0) for f in _GUEST_FIELDS)

        usage: float | None = None
        if self._last_used is not None:
            dt = total - self._last_total
            if dt > 0:
                usage = 100.0 * (used - self._last_used) / dt

        self._last_used = used
        self._last_total = total
        return usage

    def update(self) -> float | None:
        value = super().update()
        if value is not None and self.detector is not None:
            self.last_result = self.detector.update(value)
        else:
            self.last_result = None
        return value


class MemFreeSensor(Sensor):
    """Free memory as a percentage of total, from psutil."""

    def __init__(self, values_max_length: int = 120) -> None:
        super().__init__(
            f"{PROVIDER_NAME} mem free",
            "free memory",
            "memory",
            values_max_length,
            min_value=0.0,
            max_value=100.0,
        )

    def read(self) -> float | None:
        mem = psutil.virtual_memory()
        if not mem.total:
            return None
        return mem.free * 100.0 / mem.total


class PhoneTemperatureSensor(Sensor):
    """Phone battery temperature written to a file by an external daemon.

    The file holds one integer in millidegrees Celsius. Non-positive values,
    unreadable files and unparsable content are "no data".
    """

    def __init__(self, path: Path, values_max_length: int = 120, max_temp: float = 60.0) -> None:
        super().__init__(
            PHONE_SENSOR_ID,
            "Phone Battery",
            "Phone",
            values_max_length,
            min_value=0.0,
            max_value=max_temp,
        )
        self.path = path

    @staticmethod
    def available(path: Path) -> bool:
        """Return True if the temperature file can be opened."""
        try:
            with open(path):
                return True
        except OSError:
            return False

    def read(self) -> float | None:
        try:
            text = self.path.read_text()
        except OSError:
            return None

        fields = text.split()
        if not fields:
            return None
        try:
            milli = int(fields[0])
        except ValueError:
            return None
        if milli <= 0:
            return None
        return milli / 1000.0


def build_sensor_list(config: Config, detector: SpikeDetector | None = None) -> SensorList:
    """Register the CPU, memory and (when its file exists) phone sensors."""
    length = config.system.measures_length
    sensors = SensorList()
    sensors.append(CpuUsageSensor(detector, values_max_length=length))

    if config.sensors.memory_enabled:
        sensors.append(MemFreeSensor(values_max_length=length))

    if config.sensors.phone_enabled:
        path = config.sensors.phone_path
        if PhoneTemperatureSensor.available(path):
            sensors.append(
                PhoneTemperatureSensor(
                    path, values_max_length=length, max_temp=config.sensors.phone_max_temp
                )
            )
            log.info("phone_sensor_added", path=str(path))
        else:
            log.debug("phone_sensor_unavailable", path=str(path))

    return sensors
