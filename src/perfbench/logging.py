"""Centralized console logging with Rich formatting.

This module provides:
1. Icon vocabulary (Icon class namespace)
2. Core log functions (log, info, warn, error)
3. Domain-specific helpers (cpu_sample, mem_sample, app_exited, etc.)
4. Structlog JSON file configuration (configure)

Console output uses Rich markup for colors. JSON file output via structlog
remains separate (machine-parseable, no colors).
"""

from __future__ import annotations

import logging
import logging.handlers
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

import structlog
from rich.console import Console

if TYPE_CHECKING:
    from perfbench.config import Config
    from perfbench.leak import LeakAssessment
    from perfbench.samples import CpuSample, MemSample

# Rich console for colorful human-readable output
_console = Console(highlight=False)


# ─────────────────────────────────────────────────────────────────────────────
# Icons
# ─────────────────────────────────────────────────────────────────────────────


class Icon:
    """Icon vocabulary for console output."""

    OK = "[bold green]✓[/]"
    FAIL = "[bold red]✗[/]"
    CPU = "[cyan]◆[/]"
    MEM = "[magenta]◆[/]"
    SAVE = "💾"
    SIGNAL = "⚡"
    CONNECTED = "[green]⬤[/]"


_LEVEL_STYLES = {
    "info": "[bright_blue]\\[info][/]",
    "warn": "[yellow]\\[warn][/]",
    "error": "[bold red]\\[err][/] ",
}


# ─────────────────────────────────────────────────────────────────────────────
# Core Functions
# ─────────────────────────────────────────────────────────────────────────────


def log(level: str, msg: str, icon: str = "") -> None:
    """Print a log message with timestamp and level.

    Args:
        level: Log level (info, warn, error)
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


def warn(msg: str, icon: str = "") -> None:
    """Log a warning message."""
    log("warn", msg, icon)


def error(msg: str, icon: str = "") -> None:
    """Log an error message."""
    log("error", msg, icon)


# ─────────────────────────────────────────────────────────────────────────────
# Domain Helpers
# ─────────────────────────────────────────────────────────────────────────────


def run_started(package: str, duration_s: float, method: str) -> None:
    info(
        f"Test started: [cyan]{package}[/] for {duration_s:.0f}s "
        f"[dim](cpu method {method})[/]",
        Icon.OK,
    )


def run_finished(status: str) -> None:
    info(f"Test finished: [bold]{status}[/]", Icon.OK)


def device_selected(serial: str) -> None:
    info(f"Using device [cyan]{serial}[/]", Icon.CONNECTED)


def pids_detected(pids: tuple[int, ...]) -> None:
    info(f"Detected [cyan]{len(pids)}[/] process(es): {' '.join(str(p) for p in pids)}")


def cpu_sample(sample: CpuSample) -> None:
    """Log a CPU sample, dimmed when it carries a non-Valid reason."""
    text = f"CPU [{sample.elapsed}s]: {sample.cpu_percent:.2f}% → {sample.dmips} DMIPS"
    if sample.reason.value == "Valid":
        info(text, Icon.CPU)
    else:
        info(f"[dim]{text} ({sample.reason.value}, window {sample.window_ms}ms)[/]", Icon.CPU)


def mem_sample(sample: MemSample, process_count: int) -> None:
    info(
        f"Memory [{sample.elapsed}s]: PSS={sample.pss_mb:.2f} MB, RSS={sample.rss_mb:.2f} MB "
        f"[dim]({process_count} processes)[/]",
        Icon.MEM,
    )


def mem_sample_failed(elapsed: int) -> None:
    warn(f"Memory data extraction failed [dim](time {elapsed}s)[/]")


def app_missing(elapsed: int) -> None:
    warn(f"No matching processes [dim](time {elapsed}s)[/], re-checking...")


def app_exited() -> None:
    error("Application stopped running, ending test early", Icon.FAIL)


def signal_received(name: str) -> None:
    info(f"Received [bold]{name}[/], generating report...", Icon.SIGNAL)


def report_written(path: str) -> None:
    info(f"Report written to [cyan]{path}[/]", Icon.SAVE)


def leak_result(assessment: LeakAssessment) -> None:
    level = "warn" if assessment.trend.value == "Possible" else "info"
    log(level, f"Memory trend: {assessment.describe()}")


# ─────────────────────────────────────────────────────────────────────────────
# Structlog Configuration
# ─────────────────────────────────────────────────────────────────────────────


def _processors() -> list[structlog.types.Processor]:
    """Processors applied to both structlog events and plain logging records."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
        structlog.processors.add_log_level,
        structlog.processors.format_exc_info,
    ]


def configure(config: Config, level: int = logging.INFO) -> Path:
    """Send structlog events to config.log_path as JSON Lines.

    The file rotates at system.log_max_bytes. Events bound with
    structlog.contextvars (the runner binds test_id) appear on every line.
    Returns the log file path.
    """
    log_path = config.log_path
    log_path.parent.mkdir(parents=True, exist_ok=True)

    handler = logging.handlers.RotatingFileHandler(
        log_path,
        maxBytes=config.system.log_max_bytes,
        backupCount=config.system.log_backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=_processors(),
        )
    )

    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
        if isinstance(old, logging.handlers.RotatingFileHandler):
            old.close()
    root.addHandler(handler)
    root.setLevel(level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_processors(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return log_path
