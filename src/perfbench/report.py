"""Run summary and Markdown report.

The report carries two machine-readable blocks of KEY=value lines:

    <!-- PERFbench:CONFIG:BEGIN -->  collection method, intervals, thresholds
    <!-- PERFbench:STATS:BEGIN -->   derived statistics and sample counts

The CONFIG block is enough to regenerate the statistics from the CSV logs
with the same inclusion decisions the live run made.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Sequence

import structlog

from perfbench.aggregate import CpuAggregate, MemAggregate, aggregate_cpu, aggregate_memory
from perfbench.classify import SampleFilter
from perfbench.config import Config, LeakConfig
from perfbench.csvlog import CPU_LOG_NAME, MEM_LOG_NAME, read_cpu_log, read_mem_log
from perfbench.leak import LeakAssessment, LeakTrend, assess_leak
from perfbench.samples import CollectionMethod, CpuSample, MemSample

log = structlog.get_logger()

REPORT_NAME = "report.md"

CONFIG_BEGIN = "<!-- PERFbench:CONFIG:BEGIN -->"
CONFIG_END = "<!-- PERFbench:CONFIG:END -->"
STATS_BEGIN = "<!-- PERFbench:STATS:BEGIN -->"
STATS_END = "<!-- PERFbench:STATS:END -->"


class RunStatus(str, Enum):
    COMPLETED = "Normally Completed"
    INTERRUPTED = "User Interrupted"
    APP_EXITED = "Application Exited"


@dataclass(frozen=True)
class RunSettings:
    """Settings a run was collected with, as persisted in the CONFIG block."""

    method: CollectionMethod = CollectionMethod.PROCSTAT
    cpu_interval: float = 10.0
    mem_interval: float = 10.0
    min_cpu_percent: float = 0.0
    strict_window: bool = True
    window_min_ms: int = 5000
    window_max_ms: int = 30000
    leak_threshold: float = 0.005
    decline_threshold: float = 0.001
    single_core_dmips: int = 20599

    @classmethod
    def from_config(cls, config: Config) -> "RunSettings":
        return cls(
            method=config.sampling.method,
            cpu_interval=config.sampling.cpu_interval,
            mem_interval=config.sampling.mem_interval,
            min_cpu_percent=config.filter.min_cpu_percent,
            strict_window=config.filter.strict_window,
            window_min_ms=config.filter.window_min_ms,
            window_max_ms=config.filter.window_max_ms,
            leak_threshold=config.leak.leak_threshold,
            decline_threshold=config.leak.decline_threshold,
            single_core_dmips=config.device.single_core_dmips,
        )

    @classmethod
    def from_block(cls, values: dict[str, str], fallback: "RunSettings") -> "RunSettings":
        """Settings from CONFIG block values, missing keys taken from fallback.

        Raises:
            ValueError: If a present value cannot be parsed.
        """

        def get(key: str, default: Any, convert) -> Any:
            raw = values.get(key)
            if raw is None or raw == "":
                return default
            try:
                return convert(raw)
            except ValueError as e:
                raise ValueError(f"Invalid {key} in report: {raw!r}") from e

        # Decline threshold is a magnitude; a signed value is tolerated
        return cls(
            method=get("CPU_METHOD", fallback.method, CollectionMethod.parse),
            cpu_interval=get("CPU_INTERVAL", fallback.cpu_interval, float),
            mem_interval=get("MEM_INTERVAL", fallback.mem_interval, float),
            min_cpu_percent=get("MIN_CPU_PERCENT", fallback.min_cpu_percent, float),
            strict_window=get("STRICT_WINDOW", fallback.strict_window, _parse_flag),
            window_min_ms=get("DUMPSYS_WINDOW_MIN_MS", fallback.window_min_ms, int),
            window_max_ms=get("DUMPSYS_WINDOW_MAX_MS", fallback.window_max_ms, int),
            leak_threshold=get("MEM_LEAK_THRESHOLD_MBS", fallback.leak_threshold, float),
            decline_threshold=abs(
                get("MEM_DECLINE_THRESHOLD_MBS", fallback.decline_threshold, float)
            ),
            single_core_dmips=get("SINGLE_CORE_DMIPS", fallback.single_core_dmips, int),
        )

    @property
    def sample_filter(self) -> SampleFilter:
        return SampleFilter(
            method=self.method,
            min_cpu_percent=self.min_cpu_percent,
            strict_window=self.strict_window,
            window_min_ms=self.window_min_ms,
            window_max_ms=self.window_max_ms,
        )

    @property
    def leak(self) -> LeakConfig:
        return LeakConfig(
            leak_threshold=self.leak_threshold, decline_threshold=self.decline_threshold
        )

    def block_values(self) -> dict[str, str]:
        return {
            "CPU_METHOD": self.method.value,
            "CPU_INTERVAL": _num(self.cpu_interval),
            "MEM_INTERVAL": _num(self.mem_interval),
            "MIN_CPU_PERCENT": _num(self.min_cpu_percent),
            "STRICT_WINDOW": "1" if self.strict_window else "0",
            "DUMPSYS_WINDOW_MIN_MS": str(self.window_min_ms),
            "DUMPSYS_WINDOW_MAX_MS": str(self.window_max_ms),
            "MEM_LEAK_THRESHOLD_MBS": _num(self.leak_threshold),
            "MEM_DECLINE_THRESHOLD_MBS": _num(self.decline_threshold),
            "SINGLE_CORE_DMIPS": str(self.single_core_dmips),
        }


@dataclass(frozen=True)
class ReportMeta:
    """Descriptive run information shown in the report header."""

    test_id: str
    package: str
    status: RunStatus
    planned_minutes: float
    test_dir: Path
    settings: RunSettings
    finished_at: datetime | None = None


@dataclass(frozen=True)
class Summary:
    cpu: CpuAggregate
    memory: MemAggregate
    leak: LeakAssessment
    actual_seconds: int | None = None  # Elapsed time of the last CPU sample


def _num(value: float) -> str:
    """Compact number: 10.0 -> '10', 0.005 -> '0.005'."""
    return f"{value:g}"


def _parse_flag(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes"):
        return True
    if lowered in ("0", "false", "no"):
        return False
    raise ValueError(f"Not a flag: {value!r}")


def build_summary(
    cpu_samples: Sequence[CpuSample],
    mem_samples: Sequence[MemSample],
    sample_filter: SampleFilter,
    leak_config: LeakConfig,
) -> Summary:
    """Derive every statistic of a run from its two sample sequences."""
    return Summary(
        cpu=aggregate_cpu(cpu_samples, sample_filter),
        memory=aggregate_memory(mem_samples),
        leak=assess_leak(
            mem_samples,
            leak_threshold=leak_config.leak_threshold,
            decline_threshold=leak_config.decline_threshold,
        ),
        actual_seconds=cpu_samples[-1].elapsed if cpu_samples else None,
    )


def stats_values(summary: Summary) -> dict[str, str]:
    cpu, mem = summary.cpu, summary.memory
    return {
        "AVG_CPU": f"{cpu.avg_cpu:.2f}",
        "PEAK_CPU": f"{cpu.peak_cpu:.2f}",
        "MIN_CPU": f"{cpu.min_cpu:.2f}",
        "AVG_DMIPS": str(cpu.avg_dmips),
        "PEAK_DMIPS": str(cpu.peak_dmips),
        "MIN_DMIPS": str(cpu.min_dmips),
        "AVG_PSS_MB": f"{mem.avg_pss_mb:.2f}",
        "MAX_PSS_MB": f"{mem.max_pss_mb:.2f}",
        "MIN_PSS_MB": f"{mem.min_pss_mb:.2f}",
        "AVG_RSS_MB": f"{mem.avg_rss_mb:.2f}",
        "MAX_RSS_MB": f"{mem.max_rss_mb:.2f}",
        "MIN_RSS_MB": f"{mem.min_rss_mb:.2f}",
        "CPU_SAMPLES_TOTAL": str(cpu.total),
        "CPU_SAMPLES_VALID": str(cpu.included),
        "CPU_SAMPLES_FILTERED": str(cpu.excluded),
        "CPU_SAMPLES_UNKNOWN_WINDOW": str(cpu.unknown_window),
        "MEM_SAMPLES_TOTAL": str(mem.count),
        "MEM_SLOPE_MBS": f"{summary.leak.slope:.6f}",
        "MEM_LEAK_TREND": summary.leak.trend.value,
    }


def _block(begin: str, end: str, values: dict[str, str]) -> str:
    lines = [begin] + [f"{key}={value}" for key, value in values.items()] + [end]
    return "\n".join(lines)


def read_block(text: str, begin: str, end: str) -> dict[str, str]:
    """KEY=value pairs between two markers. Missing block gives an empty dict."""
    values: dict[str, str] = {}
    inside = False
    for raw in text.splitlines():
        line = raw.replace("\r", "").strip()
        if line == begin:
            inside = True
            continue
        if line == end:
            break
        if not inside or not line or line.startswith("<!--") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value.strip()
    return values


def read_config_block(text: str) -> dict[str, str]:
    return read_block(text, CONFIG_BEGIN, CONFIG_END)


def read_stats_block(text: str) -> dict[str, str]:
    return read_block(text, STATS_BEGIN, STATS_END)


def _change_display(mem: MemAggregate) -> str:
    if mem.pss_change_percent is None:
        return "N/A (Insufficient data)"
    direction = "Increase" if mem.pss_change_percent >= 0 else "Decrease"
    return f"{direction} {abs(mem.pss_change_percent):.2f}%"


def _leak_display(summary: Summary, planned_minutes: float) -> str:
    leak = summary.leak
    text = leak.describe()
    if leak.trend is LeakTrend.POSSIBLE:
        growth = leak.projected_growth_mb(planned_minutes * 60)
        text += f", Estimated {_num(planned_minutes)} minutes growth {growth:.2f} MB"
    elif leak.trend is LeakTrend.STABLE:
        text += f", Head-to-Tail {_change_display(summary.memory)}"
    return text


def render_markdown(summary: Summary, meta: ReportMeta) -> str:
    """Render the full report, machine-readable blocks included."""
    cpu, mem = summary.cpu, summary.memory
    settings = meta.settings
    finished = (meta.finished_at or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
    if summary.actual_seconds is None:
        actual = "N/A"
    else:
        actual = f"{summary.actual_seconds / 60:.1f} minutes ({summary.actual_seconds} seconds)"

    reason_rows = "\n".join(
        f"| {reason.value} | {count} |" for reason, count in cpu.reason_counts.items()
    )

    return f"""# Performance Test Report (Multi-Process Statistics)

{_block(CONFIG_BEGIN, CONFIG_END, settings.block_values())}

{_block(STATS_BEGIN, STATS_END, stats_values(summary))}

## Test Information

- **Test ID**: `{meta.test_id}`
- **Application Package Name**: `{meta.package}`
- **Process Matching Rule**: `^{meta.package}(:|_|$)` (includes :service and _zygote subprocesses)
- **Planned Duration**: {_num(meta.planned_minutes)} minutes
- **Actual Duration**: {actual}
- **Test Status**: {meta.status.value}
- **Test Completion Time**: {finished}

---

## Test Results

### CPU Performance (Same-Package Multi-Process Aggregate)

| Metric | Measured Value |
|------|--------|
| Average CPU | {cpu.avg_cpu:.2f}% ({cpu.avg_dmips} DMIPS) |
| Peak CPU | {cpu.peak_cpu:.2f}% ({cpu.peak_dmips} DMIPS) |
| Min CPU | {cpu.min_cpu:.2f}% ({cpu.min_dmips} DMIPS) |

- **CPU Method**: {settings.method.value}
- **CPU Sampling Count**: {cpu.total} times (every {_num(settings.cpu_interval)} seconds), \
{cpu.included} counted, {cpu.excluded} filtered, {cpu.unknown_window} with unknown window
- **Minimum CPU Counted**: {_num(settings.min_cpu_percent)}%
- **Description**:
  - CPU% is the sum over all matched same-package processes within the sampling window \
(may be > 100% on multi-core devices)
  - DMIPS is CPU% scaled by {settings.single_core_dmips} DMIPS per core, for horizontal \
comparison only

| Filter Reason | Samples |
|------|--------|
{reason_rows}

### Memory Performance (PID-by-PID Aggregate, Includes : Subprocesses)

#### PSS (Actual Memory Usage, Proportionally Shared Memory)

| Metric | Measured Value |
|------|--------|
| Max PSS | {mem.max_pss_mb:.2f} MB |
| Average PSS | {mem.avg_pss_mb:.2f} MB |
| Min PSS | {mem.min_pss_mb:.2f} MB |

#### RSS (Physical Memory Usage, Includes Shared Memory)

| Metric | Measured Value |
|------|--------|
| Max RSS | {mem.max_rss_mb:.2f} MB |
| Average RSS | {mem.avg_rss_mb:.2f} MB |
| Min RSS | {mem.min_rss_mb:.2f} MB |

#### Memory Leak Detection (Based on PSS Linear Regression)

- **Detection Result**: {_leak_display(summary, meta.planned_minutes)}
- **Memory Sampling Count**: {mem.count} times (every {_num(settings.mem_interval)} seconds)
- **PSS Change**: From {mem.first_pss_mb:.2f} MB to {mem.last_pss_mb:.2f} MB \
({_change_display(mem)})
- **Threshold**: {_num(settings.leak_threshold)} MB/second \
(≈ {settings.leak_threshold * 3600:.0f} MB/hour)

---

## Detailed Data

- **Test Result Directory**: `{meta.test_dir}`
- **CPU Data Log**: `{CPU_LOG_NAME}`
- **Memory Data Log**: `{MEM_LOG_NAME}`
"""


def write_report(summary: Summary, meta: ReportMeta) -> Path:
    path = meta.test_dir / REPORT_NAME
    path.write_text(render_markdown(summary, meta), encoding="utf-8")
    log.info("report_written", path=str(path), status=meta.status.value)
    return path


@dataclass(frozen=True)
class RunData:
    """A finished run as read back from its test directory."""

    test_dir: Path
    cpu_samples: list[CpuSample]
    mem_samples: list[MemSample]
    settings: RunSettings
    report_text: str = ""  # Empty when report.md is absent

    def summary(self) -> Summary:
        return build_summary(
            self.cpu_samples, self.mem_samples, self.settings.sample_filter, self.settings.leak
        )


def load_run(
    test_dir: Path,
    fallback: RunSettings,
    cpu_log: Path | None = None,
    mem_log: Path | None = None,
) -> RunData:
    """Read a run's CSV logs, and its report when there is one.

    Settings come from the report's CONFIG block when present, otherwise
    from the fallback. The logs default to the standard names in test_dir.

    Raises:
        FileNotFoundError: If the CPU or memory log is missing.
    """
    cpu_path = cpu_log or test_dir / CPU_LOG_NAME
    mem_path = mem_log or test_dir / MEM_LOG_NAME
    for path in (cpu_path, mem_path):
        if not path.exists():
            raise FileNotFoundError(f"Missing sample log: {path}")

    settings = fallback
    report_text = ""
    report_path = test_dir / REPORT_NAME
    if report_path.exists():
        report_text = report_path.read_text(encoding="utf-8")
        block = read_config_block(report_text)
        settings = RunSettings.from_block(block, fallback)
        log.info("report_config_recovered", path=str(report_path), keys=len(block))

    return RunData(
        test_dir=test_dir,
        cpu_samples=read_cpu_log(cpu_path),
        mem_samples=read_mem_log(mem_path),
        settings=settings,
        report_text=report_text,
    )


def regenerate(test_dir: Path, fallback: RunSettings) -> tuple[Summary, RunSettings]:
    """Recompute a run's statistics offline from its CSV logs.

    Raises:
        FileNotFoundError: If the CPU or memory log is missing.
    """
    run = load_run(test_dir, fallback)
    return run.summary(), run.settings


def read_report_field(text: str, label: str) -> str | None:
    """Value of a `- **Label**: value` line in a rendered report."""
    prefix = f"- **{label}**:"
    for line in text.splitlines():
        if line.startswith(prefix):
            return line[len(prefix) :].strip().strip("`") or None
    return None


def recover_meta(run: RunData, package: str, planned_minutes: float) -> ReportMeta:
    """Header fields of an earlier report, defaults where it has none."""
    text = run.report_text
    status = RunStatus.COMPLETED
    status_value = read_report_field(text, "Test Status")
    for candidate in RunStatus:
        if candidate.value == status_value:
            status = candidate

    planned = read_report_field(text, "Planned Duration")
    if planned:
        try:
            planned_minutes = float(planned.split()[0])
        except ValueError:
            log.warning("report_field_invalid", field="Planned Duration", value=planned)

    return ReportMeta(
        test_id=read_report_field(text, "Test ID") or run.test_dir.name.removeprefix("test_"),
        package=read_report_field(text, "Application Package Name") or package,
        status=status,
        planned_minutes=planned_minutes,
        test_dir=run.test_dir,
        settings=run.settings,
    )


def summary_to_dict(summary: Summary, settings: RunSettings | None = None) -> dict[str, Any]:
    """Plain-data view for JSON output."""
    cpu, mem, leak = summary.cpu, summary.memory, summary.leak
    data: dict[str, Any] = {
        "cpu": {
            "samples_total": cpu.total,
            "samples_included": cpu.included,
            "samples_excluded": cpu.excluded,
            "samples_unknown_window": cpu.unknown_window,
            "avg_percent": cpu.avg_cpu,
            "peak_percent": cpu.peak_cpu,
            "min_percent": cpu.min_cpu,
            "avg_dmips": cpu.avg_dmips,
            "peak_dmips": cpu.peak_dmips,
            "min_dmips": cpu.min_dmips,
            "reasons": {reason.value: count for reason, count in cpu.reason_counts.items()},
        },
        "memory": {
            "samples": mem.count,
            "avg_pss_mb": mem.avg_pss_mb,
            "max_pss_mb": mem.max_pss_mb,
            "min_pss_mb": mem.min_pss_mb,
            "avg_rss_mb": mem.avg_rss_mb,
            "max_rss_mb": mem.max_rss_mb,
            "min_rss_mb": mem.min_rss_mb,
            "first_pss_mb": mem.first_pss_mb,
            "last_pss_mb": mem.last_pss_mb,
            "pss_change_percent": mem.pss_change_percent,
        },
        "leak": {
            "trend": leak.trend.value,
            "slope_mb_per_s": leak.slope,
            "samples": leak.sample_count,
            "description": leak.describe(),
        },
        "actual_seconds": summary.actual_seconds,
    }
    if settings is not None:
        data["settings"] = settings.block_values()
    return data
