"""CLI commands for spike-hunter."""

import click


@click.group()
@click.version_option(package_name="spike-hunter")
def main() -> None:
    """Catch CPU spikes and the processes behind them."""
    pass


@main.command()
def daemon() -> None:
    """Run the background sampler."""
    import asyncio

    from spike_hunter.daemon import run_daemon

    asyncio.run(run_daemon())


@main.command()
@click.option("--count", "-n", default=30, show_default=True, help="Number of ticks to run")
@click.option("--interval", "-i", type=float, default=None, help="Seconds between ticks")
@click.option(
    "--report-every",
    type=int,
    default=None,
    help="Non-spike report every N ticks (overrides config)",
)
def sample(count: int, interval: float | None, report_every: int | None) -> None:
    """Sample in the foreground and print spikes and top processes."""
    import time

    from spike_hunter.attribution import AttributionEngine
    from spike_hunter.config import Config
    from spike_hunter.formatting import format_percent, format_report_entry, format_spike
    from spike_hunter.sensors import CpuUsageSensor
    from spike_hunter.spike import SpikeDetector

    config = Config.load()
    if report_every is not None:
        if report_every < 1:
            raise click.BadParameter("must be >= 1", param_hint="--report-every")
        config.spike.refresh_every = report_every
    interval = interval if interval is not None else config.system.sample_interval

    detector = SpikeDetector(config.spike, AttributionEngine(config.attribution))
    sensor = CpuUsageSensor(detector, values_max_length=config.system.measures_length)

    sensor.update()  # Prime the usage delta
    for tick in range(1, count + 1):
        time.sleep(interval)
        usage = sensor.update()
        result = sensor.last_result
        click.echo(f"[{tick:>4}] cpu {format_percent(usage)}")
        if result is None:
            continue
        if result.spike and result.usage is not None:
            click.echo(format_spike(result.usage, result.average))
        for report in result.reports:
            if report.is_empty:
                continue
            click.echo("Top CPU processes:")
            for entry in report.entries:
                click.echo(f"  {format_report_entry(entry)}")

    click.echo(f"\n{detector.spike_count} spike(s) in {count} ticks")


@main.command()
def sensors() -> None:
    """Read every sensor once and print its value."""
    import time

    from spike_hunter.config import Config
    from spike_hunter.sensors import build_sensor_list

    config = Config.load()
    sensor_list = build_sensor_list(config)

    # CPU usage needs two reads to compute a delta
    sensor_list.update()
    time.sleep(0.5)
    sensor_list.update()

    click.echo(f"{'ID':28}  {'Name':16}  {'Chip':8}  {'Value':>10}")
    click.echo("-" * 68)
    for sensor in sensor_list:
        value = "n/a" if sensor.current is None else f"{sensor.current:.1f}"
        click.echo(f"{sensor.id:28}  {sensor.name:16}  {sensor.chip:8}  {value:>10}")


@main.command()
def status() -> None:
    """Quick health check."""
    import psutil

    from spike_hunter.config import Config

    config = Config.load()

    if not config.pid_path.exists():
        click.echo("Daemon: stopped")
        return

    try:
        pid = int(config.pid_path.read_text().strip())
    except ValueError:
        click.echo("Daemon: unknown (invalid PID file)")
        return

    if psutil.pid_exists(pid):
        click.echo(f"Daemon: running (PID {pid})")
    else:
        click.echo(f"Daemon: stopped (stale PID file for {pid})")
    click.echo(f"Log: {config.log_path}")


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    from dataclasses import fields

    from spike_hunter.config import Config

    cfg = Config.load()

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    for section in ("system", "spike", "attribution", "sensors"):
        values = getattr(cfg, section)
        click.echo()
        click.echo(f"[{section}]")
        for f in fields(values):
            click.echo(f"  {f.name} = {getattr(values, f.name)}")


@config.command("edit")
def config_edit() -> None:
    """Open config file in editor."""
    import os
    import subprocess

    from spike_hunter.config import Config

    cfg = Config.load()

    # Create config if it doesn't exist
    if not cfg.config_path.exists():
        cfg.save()
        click.echo(f"Created default config at {cfg.config_path}")

    editor = os.environ.get("EDITOR", "nano")
    subprocess.run([editor, str(cfg.config_path)])


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
def config_reset() -> None:
    """Reset configuration to defaults."""
    from spike_hunter.config import Config

    cfg = Config()
    cfg.save()
    click.echo(f"Config reset to defaults at {cfg.config_path}")
