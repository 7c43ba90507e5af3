"""Benchmark runner: the cooperative sampling loop.

One run samples CPU and memory at independent intervals, checks that the
application is still alive, and always ends with a report written from the
samples collected so far (completed, interrupted or application exited).
"""

import asyncio
import signal
import time
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Callable, TypeVar

import structlog

from perfbench import logging as console
from perfbench.classify import SampleFilter
from perfbench.config import Config
from perfbench.cpu import CpuSampler, make_sampler
from perfbench.csvlog import SampleLog
from perfbench.device import Device, DeviceError
from perfbench.memory import MemoryCollector
from perfbench.report import (
    ReportMeta,
    RunSettings,
    RunStatus,
    Summary,
    build_summary,
    write_report,
)
from perfbench.samples import CpuSample, MemSample

log = structlog.get_logger()

T = TypeVar("T")

TEST_DIR_FORMAT = "test_%Y%m%d_%H%M%S"


def make_test_dir(base: Path, now: datetime | None = None) -> Path:
    """Create test_YYYYmmdd_HHMMSS under base, suffixed with the epoch if taken."""
    now = now or datetime.now()
    path = base / now.strftime(TEST_DIR_FORMAT)
    if path.exists():
        path = base / f"{now.strftime(TEST_DIR_FORMAT)}_{int(now.timestamp())}"
    path.mkdir(parents=True, exist_ok=False)
    return path


@dataclass
class RunState:
    """Mutable progress of a run, owned by the loop."""

    running: bool = False
    pids: tuple[int, ...] = ()
    cpu_samples: list[CpuSample] = field(default_factory=list)
    mem_samples: list[MemSample] = field(default_factory=list)
    status: RunStatus | None = None


@dataclass(frozen=True)
class RunResult:
    status: RunStatus
    test_dir: Path
    report_path: Path
    summary: Summary
    cpu_samples: tuple[CpuSample, ...]
    mem_samples: tuple[MemSample, ...]


class BenchRunner:
    """Drives one benchmark run against a device."""

    def __init__(
        self,
        config: Config,
        device: Device,
        output_dir: Path,
        *,
        sampler: CpuSampler | None = None,
        memory: MemoryCollector | None = None,
        clock: Callable[[], float] = time.monotonic,
        install_signal_handlers: bool = True,
    ):
        self.config = config
        self.device = device
        self.output_dir = output_dir
        self.sampler = sampler or make_sampler(config, device)
        self.memory = memory or MemoryCollector(device)
        self.sample_filter = SampleFilter.from_config(config)
        self.state = RunState()
        self.test_dir: Path | None = None

        self._clock = clock
        self._install_signal_handlers = install_signal_handlers
        self._shutdown_event = asyncio.Event()
        self._start: float = 0.0

    @property
    def package(self) -> str:
        return self.config.device.package

    def elapsed(self) -> float:
        return self._clock() - self._start

    def request_stop(self) -> None:
        """Stop scheduling samples; the run ends as Interrupted."""
        self._shutdown_event.set()

    def _handle_signal(self, sig: signal.Signals) -> None:
        log.info("signal_received", signal=sig.name)
        console.signal_received(sig.name)
        self.request_stop()

    async def _blocking(self, func: Callable[..., T], *args) -> T:
        """Run a device call off the event loop so signals stay responsive."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args))

    async def _discover(self) -> tuple[int, ...]:
        pids = await self._blocking(self.device.list_pids, self.package)
        if pids != self.state.pids:
            log.info("pids_changed", old=list(self.state.pids), new=list(pids))
        self.state.pids = pids
        return pids

    async def _sleep(self, seconds: float) -> bool:
        """Sleep unless shutdown is requested. Returns True on shutdown."""
        if seconds <= 0:
            return self._shutdown_event.is_set()
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def run(self) -> RunResult:
        """Run until the duration elapses, a signal arrives, or the app exits.

        Raises:
            DeviceError: If the application is not running at start.
        """
        pids = await self._discover()
        if not pids:
            raise DeviceError(
                f"Application {self.package} is not running. Start it before testing."
            )
        console.pids_detected(pids)

        self.test_dir = make_test_dir(self.output_dir)
        structlog.contextvars.bind_contextvars(test_id=self.test_dir.name.removeprefix("test_"))
        log.info("run_starting", package=self.package, test_dir=str(self.test_dir))

        loop = asyncio.get_running_loop()
        if self._install_signal_handlers:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))

        duration = self.config.sampling.duration_seconds
        console.run_started(self.package, duration, self.sampler.method.value)

        cpu_log = SampleLog.for_cpu(self.test_dir)
        mem_log = SampleLog.for_memory(self.test_dir)
        self.state.running = True
        try:
            self.state.status = await self._main_loop(cpu_log, mem_log)
        except Exception as e:
            log.exception("run_loop_failed", error=str(e))
            self.state.status = RunStatus.INTERRUPTED
        finally:
            self.state.running = False
            cpu_log.close()
            mem_log.close()
            if self._install_signal_handlers:
                for sig in (signal.SIGTERM, signal.SIGINT):
                    loop.remove_signal_handler(sig)

        try:
            return self._finish(self.state.status or RunStatus.INTERRUPTED)
        finally:
            structlog.contextvars.unbind_contextvars("test_id")

    async def _main_loop(self, cpu_log: SampleLog, mem_log: SampleLog) -> RunStatus:
        """Sample CPU and memory on their own cadence until a stop condition.

        Next due times are measured from when a sample was actually taken, so
        an overrunning device call shifts the schedule instead of queueing
        catch-up samples.
        """
        sampling = self.config.sampling
        duration = sampling.duration_seconds
        self._start = self._clock()

        for collect, sample_log in ((self._collect_cpu, cpu_log), (self._collect_memory, mem_log)):
            try:
                await collect(sample_log, 0.0)
            except Exception as e:
                log.error("sample_failed", error=str(e), elapsed=0.0)
        next_cpu = sampling.cpu_interval
        next_mem = sampling.mem_interval
        next_alive = sampling.alive_check_interval

        while not self._shutdown_event.is_set():
            elapsed = self.elapsed()
            if elapsed >= duration:
                log.info("run_duration_reached", elapsed=round(elapsed, 1))
                return RunStatus.COMPLETED

            try:
                if elapsed >= next_alive:
                    if not await self._check_alive(elapsed):
                        return RunStatus.APP_EXITED
                    next_alive = self.elapsed() + sampling.alive_check_interval
                    continue

                if elapsed >= next_cpu:
                    await self._collect_cpu(cpu_log, elapsed)
                    next_cpu = elapsed + sampling.cpu_interval

                if self._shutdown_event.is_set():
                    break

                if elapsed >= next_mem:
                    await self._collect_memory(mem_log, elapsed)
                    next_mem = elapsed + sampling.mem_interval
            except Exception as e:
                log.error("sample_failed", error=str(e), elapsed=round(elapsed, 1))
                next_cpu = max(next_cpu, elapsed + 1.0)
                next_mem = max(next_mem, elapsed + 1.0)

            wake = min(next_cpu, next_mem, next_alive, duration)
            if await self._sleep(wake - self.elapsed()):
                break

        log.info("run_interrupted", elapsed=round(self.elapsed(), 1))
        return RunStatus.INTERRUPTED

    async def _check_alive(self, elapsed: float) -> bool:
        """Re-check once after the grace period before declaring the app gone."""
        if await self._discover():
            return True

        console.app_missing(int(elapsed))
        log.warning("app_missing", elapsed=round(elapsed, 1))
        if await self._sleep(self.config.sampling.absence_grace_seconds):
            # Interrupted during the grace period; let the loop report it
            return True
        if await self._discover():
            log.info("app_returned", elapsed=round(self.elapsed(), 1))
            return True

        console.app_exited()
        log.warning("app_exited", elapsed=round(self.elapsed(), 1))
        return False

    async def _collect_cpu(self, cpu_log: SampleLog, elapsed: float) -> None:
        pids = await self._discover()
        sample = await self._blocking(self.sampler.sample, int(elapsed), pids)
        self.state.cpu_samples.append(sample)
        cpu_log.append(sample)
        log.info(
            "cpu_sample",
            elapsed=sample.elapsed,
            cpu_percent=sample.cpu_percent,
            window_ms=sample.window_ms,
            reason=sample.reason.value,
            pids=len(pids),
        )
        console.cpu_sample(sample)

    async def _collect_memory(self, mem_log: SampleLog, elapsed: float) -> None:
        pids = await self._discover()
        collection = await self._blocking(self.memory.collect, int(elapsed), pids)
        if collection.sample is None:
            console.mem_sample_failed(int(elapsed))
            return
        self.state.mem_samples.append(collection.sample)
        mem_log.append(collection.sample)
        log.info(
            "mem_sample",
            elapsed=collection.sample.elapsed,
            pss_mb=collection.sample.pss_mb,
            rss_mb=collection.sample.rss_mb,
            processes=collection.process_count,
        )
        console.mem_sample(collection.sample, collection.process_count)

    def _finish(self, status: RunStatus) -> RunResult:
        """Summarize whatever was collected and write the report."""
        assert self.test_dir is not None
        cpu_samples = tuple(self.state.cpu_samples)
        mem_samples = tuple(self.state.mem_samples)
        summary = build_summary(cpu_samples, mem_samples, self.sample_filter, self.config.leak)
        meta = ReportMeta(
            test_id=self.test_dir.name.removeprefix("test_"),
            package=self.package,
            status=status,
            planned_minutes=self.config.sampling.duration_minutes,
            test_dir=self.test_dir,
            settings=RunSettings.from_config(self.config),
            finished_at=datetime.now(),
        )
        report_path = write_report(summary, meta)

        log.info(
            "run_finished",
            status=status.value,
            cpu_samples=len(cpu_samples),
            mem_samples=len(mem_samples),
            included=summary.cpu.included,
            leak=summary.leak.trend.value,
        )
        console.leak_result(summary.leak)
        console.report_written(str(report_path))
        console.run_finished(status.value)

        return RunResult(
            status=status,
            test_dir=self.test_dir,
            report_path=report_path,
            summary=summary,
            cpu_samples=cpu_samples,
            mem_samples=mem_samples,
        )


async def run_bench(config: Config, device: Device, output_dir: Path) -> RunResult:
    """Run one benchmark with signal handling installed."""
    runner = BenchRunner(config, device, output_dir)
    try:
        return await runner.run()
    except DeviceError:
        raise
    except Exception as e:
        log.exception("run_crashed", error=str(e))
        raise
