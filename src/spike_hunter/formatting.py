"""Formatting utilities for consistent report text across log, CLI and console."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from spike_hunter.attribution import RankedReportEntry


def format_report_entry(entry: RankedReportEntry) -> str:
    """Format one ranked process line.

    Returns:
        - With a baseline: "PID 42 (firefox): 37.5% (avg=4.20%, 8.9x above avg)"
        - Without: "PID 42 (firefox): 37.5% (new)"
    """
    head = f"PID {entry.pid} ({entry.name}): {entry.cpu_percent:.1f}%"
    if entry.baseline is None:
        return f"{head} (new)"
    return f"{head} (avg={entry.baseline:.2f}%, {entry.ratio:.1f}x above avg)"


def format_spike(usage: float, average: float) -> str:
    """Format the spike notification line.

    Example: "CPU spike detected: usage=16.0% (avg=6.0%, 2.7x above avg)"
    """
    factor = usage / average if average > 0 else float("inf")
    return f"CPU spike detected: usage={usage:.1f}% (avg={average:.1f}%, {factor:.1f}x above avg)"


def format_percent(value: float | None) -> str:
    """Format a sensor percentage, "n/a" when unknown."""
    if value is None:
        return "n/a"
    return f"{value:.1f}%"
