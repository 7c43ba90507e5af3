"""Shared test fixtures for perfbench."""

from pathlib import Path

import pytest

from perfbench.config import Config
from perfbench.device import MemoryReading, ProcessTicks
from perfbench.samples import CpuSample, FilterReason, MemSample


class FakeDevice:
    """In-memory Device. Tests mutate the counters between samples.

    pid_script, when set, is consumed one result per list_pids call; the last
    entry repeats forever.
    """

    def __init__(self, pids: tuple[int, ...] = (100,), cores: int = 4):
        self.pids = tuple(pids)
        self.pid_script: list[tuple[int, ...]] | None = None
        self.process_ticks: dict[int, int] = {}
        self.system_ticks: int | None = 0
        self.memory: dict[int, MemoryReading] = {}
        self.cpuinfo: str | None = None
        self.cores = cores
        self.list_calls = 0

    def list_pids(self, package: str) -> tuple[int, ...]:
        self.list_calls += 1
        if self.pid_script:
            if len(self.pid_script) > 1:
                return self.pid_script.pop(0)
            return self.pid_script[0]
        return self.pids

    def read_process_ticks(self, pid: int) -> ProcessTicks | None:
        ticks = self.process_ticks.get(pid)
        if ticks is None:
            return None
        return ProcessTicks(user=ticks, system=0)

    def read_system_ticks(self) -> int | None:
        return self.system_ticks

    def read_memory(self, pid: int) -> MemoryReading | None:
        return self.memory.get(pid)

    def read_cpuinfo(self) -> str | None:
        return self.cpuinfo

    def core_count(self) -> int:
        return self.cores


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def device() -> FakeDevice:
    return FakeDevice()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point config and state directories at a temporary home."""
    monkeypatch.setenv("HOME", str(tmp_path))
    return tmp_path


@pytest.fixture
def fast_config() -> Config:
    """Config with sub-second intervals for runner tests."""
    config = Config()
    config.device.package = "com.example.app"
    config.sampling.duration_minutes = 0.3 / 60
    config.sampling.cpu_interval = 0.05
    config.sampling.mem_interval = 0.05
    config.sampling.alive_check_interval = 0.1
    config.sampling.absence_grace_seconds = 0.01
    return config


def make_cpu_sample(
    cpu: float = 10.0,
    window_ms: int = 10000,
    reason: FilterReason = FilterReason.VALID,
    elapsed: int = 10,
    timestamp: int = 1_700_000_000,
    dmips: int | None = None,
) -> CpuSample:
    """Create a CpuSample; DMIPS defaults to the 20599 scale."""
    return CpuSample(
        timestamp=timestamp,
        elapsed=elapsed,
        cpu_percent=cpu,
        dmips=dmips if dmips is not None else int(round(cpu * 20599 / 100)),
        window_ms=window_ms,
        reason=reason,
    )


def make_mem_sample(
    elapsed: int = 0,
    pss_mb: float = 100.0,
    rss_mb: float = 150.0,
    timestamp: int = 1_700_000_000,
) -> MemSample:
    """Create a MemSample with consistent KB totals."""
    return MemSample(
        timestamp=timestamp + elapsed,
        elapsed=elapsed,
        total_rss_kb=int(rss_mb * 1024),
        rss_mb=rss_mb,
        total_pss_kb=int(pss_mb * 1024),
        pss_mb=pss_mb,
    )
