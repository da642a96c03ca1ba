"""Configuration system for spike-hunter."""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit


@dataclass
class SystemConfig:
    """Host loop configuration."""

    sample_interval: float = 1.0  # Seconds between ticks
    heartbeat_samples: int = 300  # Log heartbeat every N ticks (~5 min at 1Hz)
    measures_length: int = 120  # Values kept per sensor record
    # Log file rotation
    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


@dataclass
class SpikeConfig:
    """System-wide CPU spike detection.

    A spike needs min_samples readings in the window, usage above
    threshold x average AND above floor_percent.
    """

    window_size: int = 60  # System samples in the rolling average
    min_samples: int = 10  # Readings required before a spike can be declared
    threshold: float = 1.5  # Relative multiplier over the rolling average
    floor_percent: float = 10.0  # Absolute usage floor (percent)
    refresh_every: int = 10  # Non-spike attribution pass every N ticks


@dataclass
class AttributionConfig:
    """Per-process CPU attribution."""

    proc_root: str = "/proc"
    table_capacity: int = 200  # Max tracked processes
    window_size: int = 20  # Per-process samples in the rolling average
    max_scan: int = 500  # Max process entries read per pass
    noise_floor: float = 0.01  # CPU % a process must exceed to be a candidate
    top_count: int = 5  # Entries in a ranked report
    min_baseline_samples: int = 5  # Prior samples before an average is shown
    name_length: int = 15  # Display name truncation


@dataclass
class SensorsConfig:
    """Sensor providers."""

    memory_enabled: bool = True
    phone_enabled: bool = True
    phone_temp_path: str = "~/.local/share/phone-sensor/temp1_input"
    phone_max_temp: float = 60.0  # Reasonable max for a phone battery

    @property
    def phone_path(self) -> Path:
        """Expanded phone temperature file path."""
        return Path(self.phone_temp_path).expanduser()


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


@dataclass
class Config:
    """Main configuration container."""

    system: SystemConfig = field(default_factory=SystemConfig)
    spike: SpikeConfig = field(default_factory=SpikeConfig)
    attribution: AttributionConfig = field(default_factory=AttributionConfig)
    sensors: SensorsConfig = field(default_factory=SensorsConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "spike-hunter"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """State directory for logs."""
        return Path.home() / ".local" / "state" / "spike-hunter"

    @property
    def runtime_dir(self) -> Path:
        """Runtime directory for ephemeral files (PID file).

        Stored in /tmp/ so it's cleared on reboot.
        """
        return Path("/tmp/spike-hunter")

    @property
    def log_path(self) -> Path:
        """Daemon log path."""
        return self.state_dir / "daemon.log"

    @property
    def pid_path(self) -> Path:
        """PID file path."""
        return self.runtime_dir / "daemon.pid"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ("system", "spike", "attribution", "sensors"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions, so Config() and
        Config.load() on an empty file are identical.
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f)
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        return cls(
            system=_load_system_config(data.get("system", {})),
            spike=_load_spike_config(data.get("spike", {})),
            attribution=_load_attribution_config(data.get("attribution", {})),
            sensors=_load_sensors_config(data.get("sensors", {})),
        )


def _load_system_config(data: dict) -> SystemConfig:
    """Load system config from TOML data."""
    d = SystemConfig()
    sample_interval = data.get("sample_interval", d.sample_interval)
    if sample_interval <= 0:
        raise ValueError(f"sample_interval must be > 0, got {sample_interval}")

    measures_length = data.get("measures_length", d.measures_length)
    if measures_length < 1:
        raise ValueError(f"measures_length must be >= 1, got {measures_length}")

    return SystemConfig(
        sample_interval=sample_interval,
        heartbeat_samples=data.get("heartbeat_samples", d.heartbeat_samples),
        measures_length=measures_length,
        log_max_bytes=data.get("log_max_bytes", d.log_max_bytes),
        log_backup_count=data.get("log_backup_count", d.log_backup_count),
    )


def _load_spike_config(data: dict) -> SpikeConfig:
    """Load spike config from TOML data, using dataclass defaults for missing fields."""
    d = SpikeConfig()

    window_size = data.get("window_size", d.window_size)
    min_samples = data.get("min_samples", d.min_samples)
    refresh_every = data.get("refresh_every", d.refresh_every)
    threshold = data.get("threshold", d.threshold)

    if window_size < 1:
        raise ValueError(f"window_size must be >= 1, got {window_size}")
    if not 1 <= min_samples <= window_size:
        raise ValueError(
            f"min_samples must be between 1 and window_size ({window_size}), got {min_samples}"
        )
    if refresh_every < 1:
        raise ValueError(f"refresh_every must be >= 1, got {refresh_every}")
    if threshold <= 0:
        raise ValueError(f"threshold must be > 0, got {threshold}")

    return SpikeConfig(
        window_size=window_size,
        min_samples=min_samples,
        threshold=threshold,
        floor_percent=data.get("floor_percent", d.floor_percent),
        refresh_every=refresh_every,
    )


def _load_attribution_config(data: dict) -> AttributionConfig:
    """Load attribution config from TOML data."""
    d = AttributionConfig()

    table_capacity = data.get("table_capacity", d.table_capacity)
    window_size = data.get("window_size", d.window_size)
    max_scan = data.get("max_scan", d.max_scan)
    top_count = data.get("top_count", d.top_count)

    if table_capacity < 1:
        raise ValueError(f"table_capacity must be >= 1, got {table_capacity}")
    if window_size < 1:
        raise ValueError(f"window_size must be >= 1, got {window_size}")
    if max_scan < 1:
        raise ValueError(f"max_scan must be >= 1, got {max_scan}")
    if top_count < 1:
        raise ValueError(f"top_count must be >= 1, got {top_count}")

    return AttributionConfig(
        proc_root=data.get("proc_root", d.proc_root),
        table_capacity=table_capacity,
        window_size=window_size,
        max_scan=max_scan,
        noise_floor=data.get("noise_floor", d.noise_floor),
        top_count=top_count,
        min_baseline_samples=data.get("min_baseline_samples", d.min_baseline_samples),
        name_length=data.get("name_length", d.name_length),
    )


def _load_sensors_config(data: dict) -> SensorsConfig:
    """Load sensors config from TOML data."""
    d = SensorsConfig()
    return SensorsConfig(
        memory_enabled=data.get("memory_enabled", d.memory_enabled),
        phone_enabled=data.get("phone_enabled", d.phone_enabled),
        phone_temp_path=data.get("phone_temp_path", d.phone_temp_path),
        phone_max_temp=data.get("phone_max_temp", d.phone_max_temp),
    )
