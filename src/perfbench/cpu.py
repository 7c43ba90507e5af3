"""CPU samplers: turn device counters into CpuSample records.

Two strategies share the CpuSampler protocol:
- ProcStatSampler: own deltas over /proc tick counters (precise window)
- DumpsysSampler: device-reported percentages over dumpsys's sliding window
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Protocol

import structlog

from perfbench.config import Config
from perfbench.device import Device, parse_cpuinfo
from perfbench.samples import (
    WINDOW_BASELINE,
    CollectionMethod,
    CpuSample,
    FilterReason,
    dmips_for,
)
from perfbench.ticks import TickReading, TickSource
from perfbench.window import SlidingWindowPolicy

log = structlog.get_logger()


class CpuSampler(Protocol):
    """Produces one CpuSample per scheduling tick."""

    method: CollectionMethod

    def sample(self, elapsed: int, pids: tuple[int, ...]) -> CpuSample: ...


@dataclass(frozen=True)
class CpuBaseline:
    """Counters of the previous observation. Replaced as a whole, never edited."""

    system_ticks: int
    process_ticks: dict[int, int] = field(default_factory=dict)
    wall_clock: float = 0.0
    core_count: int = 1

    @classmethod
    def from_reading(cls, reading: TickReading, core_count: int) -> "CpuBaseline":
        if reading.system_ticks is None:
            raise ValueError("Cannot build a baseline without system ticks")
        return cls(
            system_ticks=reading.system_ticks,
            process_ticks=dict(reading.process_ticks),
            wall_clock=reading.wall_clock,
            core_count=core_count,
        )

    def with_wall_clock(self, wall_clock: float) -> "CpuBaseline":
        """Same tick counters, later wall clock (after a failed tick read)."""
        return CpuBaseline(
            system_ticks=self.system_ticks,
            process_ticks=self.process_ticks,
            wall_clock=wall_clock,
            core_count=self.core_count,
        )

    def process_delta(self, process_ticks: dict[int, int]) -> int:
        """Sum of per-process tick deltas, clamped at 0.

        A PID absent from the baseline is first seen now and contributes 0.
        """
        total = 0
        for pid, ticks in process_ticks.items():
            prev = self.process_ticks.get(pid)
            if prev is None:
                continue
            total += max(0, ticks - prev)
        return total


def cpu_percent_from_deltas(process_delta: int, system_delta: int, core_count: int) -> float:
    """Share of one core used by the tracked processes over the window."""
    return round(100.0 * core_count * process_delta / system_delta, 2)


class ProcStatSampler:
    """Delta-based CPU engine over /proc/<pid>/stat and /proc/stat.

    Owns the CpuBaseline exclusively. The first sample of a run (elapsed
    below half the interval) only calibrates the baseline.
    """

    method = CollectionMethod.PROCSTAT

    def __init__(
        self,
        device: Device,
        cpu_interval: float,
        single_core_dmips: int,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], float] = time.time,
    ):
        self.device = device
        self.cpu_interval = cpu_interval
        self.single_core_dmips = single_core_dmips
        self.tick_source = TickSource(device, clock)
        self._now = now
        self._core_count: int | None = None
        self.baseline: CpuBaseline | None = None

    @property
    def core_count(self) -> int:
        if self._core_count is None:
            self._core_count = max(1, self.device.core_count())
        return self._core_count

    def sample(self, elapsed: int, pids: tuple[int, ...]) -> CpuSample:
        timestamp = int(self._now())
        reading = self.tick_source.read(pids)

        if self.baseline is None or elapsed < self.cpu_interval / 2:
            return self._calibrate(reading, timestamp, elapsed)

        if not pids:
            self._rebase_without_processes(reading)
            return CpuSample.zero(timestamp, elapsed, FilterReason.NO_PID)

        if reading.system_ticks is None:
            # Bound the next window, keep tick counters that were not re-read
            self.baseline = self.baseline.with_wall_clock(reading.wall_clock)
            log.warning("system_ticks_unavailable", elapsed=elapsed)
            return CpuSample.zero(timestamp, elapsed, FilterReason.READ_FAILED)

        prev = self.baseline
        window_ms = int(round((reading.wall_clock - prev.wall_clock) * 1000))
        system_delta = reading.system_ticks - prev.system_ticks
        process_delta = prev.process_delta(reading.process_ticks)
        self.baseline = CpuBaseline.from_reading(reading, self.core_count)

        if system_delta <= 0:
            log.warning(
                "cpu_invalid_delta",
                elapsed=elapsed,
                system_delta=system_delta,
                window_ms=window_ms,
            )
            return CpuSample.zero(timestamp, elapsed, FilterReason.INVALID_DELTA, window_ms)

        cpu_percent = cpu_percent_from_deltas(process_delta, system_delta, self.core_count)
        return CpuSample(
            timestamp=timestamp,
            elapsed=elapsed,
            cpu_percent=cpu_percent,
            dmips=dmips_for(cpu_percent, self.single_core_dmips),
            window_ms=window_ms,
            reason=FilterReason.VALID,
        )

    def _calibrate(self, reading: TickReading, timestamp: int, elapsed: int) -> CpuSample:
        """Seed the baseline and emit a Baseline sample whatever the measured delta."""
        if reading.system_ticks is not None:
            self.baseline = CpuBaseline.from_reading(reading, self.core_count)
            log.info(
                "cpu_baseline_established",
                elapsed=elapsed,
                processes=len(reading.process_ticks),
                cores=self.core_count,
            )
        else:
            log.warning("cpu_baseline_unavailable", elapsed=elapsed)
        return CpuSample.zero(timestamp, elapsed, FilterReason.BASELINE, WINDOW_BASELINE)

    def _rebase_without_processes(self, reading: TickReading) -> None:
        """No tracked processes: restart deltas from now, every PID becomes first-seen."""
        if reading.system_ticks is not None:
            self.baseline = CpuBaseline.from_reading(reading, self.core_count)
        elif self.baseline is not None:
            self.baseline = self.baseline.with_wall_clock(reading.wall_clock)


class DumpsysSampler:
    """Sliding-window CPU engine over `dumpsys cpuinfo`.

    The device measures over its own window, so no tick baseline is kept and
    the window length decides the FilterReason. The first sample of a run
    (elapsed below half the interval) is a Baseline and does not read cpuinfo.
    """

    method = CollectionMethod.DUMPSYS

    def __init__(
        self,
        device: Device,
        package: str,
        single_core_dmips: int,
        policy: SlidingWindowPolicy,
        cpu_interval: float = 10.0,
        now: Callable[[], float] = time.time,
    ):
        self.device = device
        self.package = package
        self.cpu_interval = cpu_interval
        self.single_core_dmips = single_core_dmips
        self.policy = policy
        self._now = now
        self._calibrated = False

    def sample(self, elapsed: int, pids: tuple[int, ...]) -> CpuSample:
        timestamp = int(self._now())
        if not self._calibrated or elapsed < self.cpu_interval / 2:
            self._calibrated = True
            log.info("cpuinfo_calibrated", elapsed=elapsed, pids=len(pids))
            return CpuSample.zero(timestamp, elapsed, FilterReason.BASELINE, WINDOW_BASELINE)

        if not pids:
            return CpuSample.zero(timestamp, elapsed, FilterReason.NO_PID)

        text = self.device.read_cpuinfo()
        if not text:
            log.warning("cpuinfo_unavailable", elapsed=elapsed)
            return CpuSample.zero(timestamp, elapsed, FilterReason.READ_FAILED)

        report = parse_cpuinfo(text, self.package)
        if report.matched_lines == 0:
            log.debug("cpuinfo_no_activity", elapsed=elapsed, window_ms=report.window_ms)

        return CpuSample(
            timestamp=timestamp,
            elapsed=elapsed,
            cpu_percent=report.cpu_percent,
            dmips=dmips_for(report.cpu_percent, self.single_core_dmips),
            window_ms=report.window_ms,
            reason=self.policy.reason_for(report.window_ms),
        )


def make_sampler(config: Config, device: Device) -> ProcStatSampler | DumpsysSampler:
    """Build the sampler for the configured collection method."""
    if config.sampling.method is CollectionMethod.PROCSTAT:
        return ProcStatSampler(
            device,
            cpu_interval=config.sampling.cpu_interval,
            single_core_dmips=config.device.single_core_dmips,
        )
    return DumpsysSampler(
        device,
        package=config.device.package,
        single_core_dmips=config.device.single_core_dmips,
        cpu_interval=config.sampling.cpu_interval,
        policy=SlidingWindowPolicy(
            window_min_ms=config.filter.window_min_ms,
            window_max_ms=config.filter.window_max_ms,
        ),
    )
