"""Centralized console logging with Rich formatting.

This module provides:
1. Icon vocabulary (Icon class namespace)
2. Level-based styling
3. Core log functions (log, info, error)
4. Domain-specific helpers (cpu_spike, top_processes, heartbeat, etc.)
5. Structlog configuration (configure)

Console output uses Rich markup for colors. JSON file output via structlog
remains separate (machine-parseable, no colors).
"""

from __future__ import annotations

import logging
import logging.handlers
from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from rich.console import Console
from rich.markup import escape

from spike_hunter.formatting import format_report_entry, format_spike

if TYPE_CHECKING:
    from spike_hunter.attribution import AttributionReport
    from spike_hunter.config import Config

# Rich console for colorful human-readable output
_console = Console(highlight=False)


# ─────────────────────────────────────────────────────────────────────────────
# Icons
# ─────────────────────────────────────────────────────────────────────────────


class Icon:
    """Icon vocabulary for console output.

    Use via autocomplete: Icon.<TAB> to see all available icons.
    """

    OK = "[bold green]✓[/]"
    FAIL = "[bold red]✗[/]"
    WAIT = "⏳"
    SPIKE = "[bold bright_red]▲[/]"
    REPORT = "[cyan]≡[/]"
    HEARTBEAT = "[magenta]♡[/]"
    SIGNAL = "⚡"
    SENSOR = "[green]⬤[/]"


# ─────────────────────────────────────────────────────────────────────────────
# Level Styles
# ─────────────────────────────────────────────────────────────────────────────

_LEVEL_STYLES = {
    "info": "[bright_blue]\\[info][/]",
    "error": "[bold red]\\[err][/] ",
}


# ─────────────────────────────────────────────────────────────────────────────
# Core Functions
# ─────────────────────────────────────────────────────────────────────────────


def log(level: str, msg: str, icon: str = "") -> None:
    """Print a log message with timestamp and level.

    Args:
        level: Log level (info, error)
        msg: Message to print (can include Rich markup)
        icon: Optional icon to show after level (e.g., Icon.OK)
    """
    ts = datetime.now().strftime("%H:%M:%S")
    lvl = _LEVEL_STYLES.get(level, f"[{level}]")
    icon_part = f" {icon}" if icon else ""
    _console.print(f"[dim]{ts}[/] {lvl}{icon_part} {msg}")


def info(msg: str, icon: str = "") -> None:
    """Log an info message."""
    log("info", msg, icon)


def error(msg: str, icon: str = "") -> None:
    """Log an error message."""
    log("error", msg, icon)


# ─────────────────────────────────────────────────────────────────────────────
# Styling Helpers
# ─────────────────────────────────────────────────────────────────────────────


def percent_color(percent: float) -> str:
    """Return Rich color name based on CPU percentage."""
    if percent >= 50.0:
        return "bright_red"
    elif percent >= 10.0:
        return "bright_yellow"
    return "green"


# ─────────────────────────────────────────────────────────────────────────────
# Domain Helpers
# ─────────────────────────────────────────────────────────────────────────────


def daemon_started() -> None:
    """Log daemon startup complete."""
    info("Daemon started", Icon.OK)


def daemon_stopping() -> None:
    """Log daemon shutdown initiated."""
    info("Daemon stopping...", Icon.WAIT)


def daemon_stopped() -> None:
    """Log daemon shutdown complete."""
    info("Daemon stopped", Icon.OK)


def signal_received(name: str) -> None:
    """Log signal received."""
    info(f"Received [bold]{name}[/]", Icon.SIGNAL)


def cpu_spike(usage: float, average: float) -> None:
    """Log a CPU spike notification."""
    color = percent_color(usage)
    info(f"[{color}]{format_spike(usage, average)}[/]", Icon.SPIKE)


def top_processes(report: AttributionReport) -> None:
    """Log a ranked report: header line, then one line per process."""
    if report.is_empty:
        return
    info("Top CPU processes:", Icon.REPORT)
    for entry in report.entries:
        color = percent_color(entry.cpu_percent)
        info(f"  [{color}]{escape(format_report_entry(entry))}[/]")


def sensor_added(name: str, sensor_id: str) -> None:
    """Log a registered sensor."""
    info(f"{name} sensor added [dim]({sensor_id})[/]", Icon.SENSOR)


def heartbeat(
    ticks: int,
    average: float,
    spikes: int,
    tracked_count: int,
    table_capacity: int,
    rss_mb: float,
) -> None:
    """Log periodic heartbeat stats."""
    avg_c = percent_color(average)
    info(
        f"cpu avg [{avg_c}]{average:.1f}%[/], "
        f"[cyan]{spikes}[/] spikes, "
        f"[dim]{ticks} ticks, "
        f"{tracked_count}/{table_capacity} tracked, "
        f"{round(rss_mb, 1)}MB RSS[/]",
        Icon.HEARTBEAT,
    )


def tick_failed(error_msg: str) -> None:
    """Log tick failed."""
    error(f"Tick failed: {error_msg}", Icon.FAIL)


def already_running(pid: int | None = None) -> None:
    """Log daemon already running error."""
    if pid:
        error(f"Another daemon already running [dim](PID {pid})[/]", Icon.FAIL)
    else:
        error("Another daemon already running", Icon.FAIL)


def config_created(path: str) -> None:
    """Log config file created."""
    info(f"Created config at [cyan]{path}[/]")


def version_info(name: str, version: str) -> None:
    """Log version info."""
    info(f"[bold cyan]{name}[/] v{version}")


def config_summary(interval: float, window: int, threshold: float, floor: float) -> None:
    """Log config summary."""
    info(
        f"Config: interval=[cyan]{interval}s[/], window=[cyan]{window}[/], "
        f"spike>[cyan]{threshold}x[/] and >[cyan]{floor}%[/]"
    )


# ─────────────────────────────────────────────────────────────────────────────
# Structlog Configuration
# ─────────────────────────────────────────────────────────────────────────────


def _add_source(source: str) -> structlog.types.Processor:
    """Create a processor that adds a source field to log events."""

    def processor(
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: structlog.types.EventDict,
    ) -> structlog.types.EventDict:
        event_dict["source"] = source
        return event_dict

    return processor


def configure(config: Config, source: str = "daemon") -> None:
    """Configure structlog to write JSON Lines to a rotating log file.

    Uses local time to match console timestamps.

    Args:
        config: Application config with paths and rotation settings
        source: Value of the "source" field on every event
    """
    # Ensure state directory exists for log file
    config.state_dir.mkdir(parents=True, exist_ok=True)

    file_handler = logging.handlers.RotatingFileHandler(
        config.log_path,
        maxBytes=config.system.log_max_bytes,
        backupCount=config.system.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.INFO)

    stdlib_root = logging.getLogger()
    stdlib_root.setLevel(logging.INFO)

    # Clear any existing handlers
    stdlib_root.handlers.clear()

    file_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
                structlog.processors.add_log_level,
                _add_source(source),
                structlog.processors.format_exc_info,
            ],
        )
    )
    stdlib_root.addHandler(file_handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
            structlog.processors.add_log_level,
            _add_source(source),
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Console output is handled by Rich (see log functions above)
    # structlog only writes to JSON file for machine parsing
