"""Tests for the CPU samplers and tick source."""

import pytest

from perfbench.config import Config
from perfbench.cpu import (
    CpuBaseline,
    DumpsysSampler,
    ProcStatSampler,
    cpu_percent_from_deltas,
    make_sampler,
)
from perfbench.samples import WINDOW_BASELINE, WINDOW_UNKNOWN, FilterReason
from perfbench.ticks import TickReading, TickSource
from perfbench.window import SlidingWindowPolicy
from tests.conftest import FakeClock, FakeDevice

NOW = 1_700_000_000.0


def make_procstat(device: FakeDevice, clock: FakeClock, interval: float = 10.0) -> ProcStatSampler:
    return ProcStatSampler(
        device,
        cpu_interval=interval,
        single_core_dmips=20599,
        clock=clock,
        now=lambda: NOW,
    )


def test_cpu_percent_from_deltas():
    """systemDelta 1000, process delta 250, 4 cores -> 100%."""
    assert cpu_percent_from_deltas(250, 1000, 4) == 100.0
    assert cpu_percent_from_deltas(0, 1000, 8) == 0.0
    assert cpu_percent_from_deltas(1, 3, 1) == 33.33


def test_baseline_process_delta_first_seen_is_zero():
    baseline = CpuBaseline(system_ticks=100, process_ticks={1: 50}, wall_clock=0.0)
    assert baseline.process_delta({1: 80, 2: 5000}) == 30


def test_baseline_process_delta_clamps_negative():
    baseline = CpuBaseline(system_ticks=100, process_ticks={1: 500, 2: 10})
    assert baseline.process_delta({1: 100, 2: 40}) == 30


def test_baseline_requires_system_ticks():
    with pytest.raises(ValueError):
        CpuBaseline.from_reading(TickReading(wall_clock=0.0, system_ticks=None), core_count=4)


def test_tick_source_drops_unreadable_pids(device: FakeDevice, clock: FakeClock):
    device.system_ticks = 5000
    device.process_ticks = {100: 40}
    reading = TickSource(device, clock).read((100, 200))
    assert reading.system_ticks == 5000
    assert reading.process_ticks == {100: 40}
    assert reading.pids == (100, 200)
    assert reading.wall_clock == clock.now


class TestProcStatSampler:
    def test_first_sample_is_baseline(self, device: FakeDevice, clock: FakeClock):
        device.system_ticks = 1000
        device.process_ticks = {100: 10_000}  # long-lived process, large history
        sampler = make_procstat(device, clock)

        sample = sampler.sample(0, (100,))

        assert sample.reason is FilterReason.BASELINE
        assert sample.cpu_percent == 0.0
        assert sample.dmips == 0
        assert sample.window_ms == WINDOW_BASELINE
        assert sample.timestamp == int(NOW)
        assert sampler.baseline is not None

    def test_first_sample_is_baseline_even_without_pids(
        self, device: FakeDevice, clock: FakeClock
    ):
        device.system_ticks = None
        sampler = make_procstat(device, clock)
        assert sampler.sample(0, ()).reason is FilterReason.BASELINE

    def test_valid_sample_from_deltas(self, device: FakeDevice, clock: FakeClock):
        device.system_ticks = 1000
        device.process_ticks = {100: 50}
        sampler = make_procstat(device, clock)
        sampler.sample(0, (100,))

        clock.advance(10.0)
        device.system_ticks = 2000
        device.process_ticks = {100: 300}
        sample = sampler.sample(10, (100,))

        assert sample.reason is FilterReason.VALID
        assert sample.cpu_percent == 100.0
        assert sample.dmips == 20599
        assert sample.window_ms == 10000
        assert sample.elapsed == 10

    def test_new_pid_contributes_zero_then_counts(self, device: FakeDevice, clock: FakeClock):
        """A PID absent from the baseline is attributed nothing until its second sample."""
        device.system_ticks = 1000
        device.process_ticks = {100: 50}
        sampler = make_procstat(device, clock)
        sampler.sample(0, (100,))

        clock.advance(10.0)
        device.system_ticks = 2000
        device.process_ticks = {100: 50, 200: 90_000}
        first_seen = sampler.sample(10, (100, 200))
        assert first_seen.cpu_percent == 0.0
        assert first_seen.reason is FilterReason.VALID

        clock.advance(10.0)
        device.system_ticks = 3000
        device.process_ticks = {100: 50, 200: 90_100}
        counted = sampler.sample(20, (100, 200))
        assert counted.cpu_percent == 40.0

    def test_process_delta_never_negative(self, device: FakeDevice, clock: FakeClock):
        """A recycled PID with a smaller counter is clamped to 0."""
        device.system_ticks = 1000
        device.process_ticks = {100: 5000}
        sampler = make_procstat(device, clock)
        sampler.sample(0, (100,))

        clock.advance(10.0)
        device.system_ticks = 2000
        device.process_ticks = {100: 10}
        sample = sampler.sample(10, (100,))
        assert sample.cpu_percent == 0.0
        assert sample.reason is FilterReason.VALID

    def test_invalid_system_delta_advances_baseline(self, device: FakeDevice, clock: FakeClock):
        device.system_ticks = 1000
        device.process_ticks = {100: 50}
        sampler = make_procstat(device, clock)
        sampler.sample(0, (100,))

        clock.advance(10.0)
        device.system_ticks = 900
        device.process_ticks = {100: 80}
        sample = sampler.sample(10, (100,))
        assert sample.reason is FilterReason.INVALID_DELTA
        assert sample.cpu_percent == 0.0
        assert sample.window_ms == 10000
        assert sampler.baseline.system_ticks == 900
        assert sampler.baseline.process_ticks == {100: 80}

        clock.advance(10.0)
        device.system_ticks = 1900
        device.process_ticks = {100: 330}
        assert sampler.sample(20, (100,)).cpu_percent == 100.0

    def test_system_read_failure_keeps_ticks_and_bounds_window(
        self, device: FakeDevice, clock: FakeClock
    ):
        device.system_ticks = 1000
        device.process_ticks = {100: 50}
        sampler = make_procstat(device, clock)
        sampler.sample(0, (100,))

        clock.advance(10.0)
        device.system_ticks = None
        failed = sampler.sample(10, (100,))
        assert failed.reason is FilterReason.READ_FAILED
        assert failed.window_ms == WINDOW_UNKNOWN
        assert sampler.baseline.system_ticks == 1000
        assert sampler.baseline.process_ticks == {100: 50}

        clock.advance(10.0)
        device.system_ticks = 3000
        device.process_ticks = {100: 550}
        recovered = sampler.sample(20, (100,))
        # Ticks span 20 s but the window only counts from the failed read
        assert recovered.window_ms == 10000
        assert recovered.cpu_percent == 100.0

    def test_no_pids_rebases(self, device: FakeDevice, clock: FakeClock):
        device.system_ticks = 1000
        device.process_ticks = {100: 50}
        sampler = make_procstat(device, clock)
        sampler.sample(0, (100,))

        clock.advance(10.0)
        device.system_ticks = 2000
        missing = sampler.sample(10, ())
        assert missing.reason is FilterReason.NO_PID
        assert missing.cpu_percent == 0.0
        assert missing.window_ms == WINDOW_UNKNOWN

        clock.advance(10.0)
        device.system_ticks = 3000
        device.process_ticks = {100: 9999}
        returned = sampler.sample(20, (100,))
        assert returned.cpu_percent == 0.0  # first seen again after the gap
        assert returned.window_ms == 10000

    def test_early_sample_recalibrates(self, device: FakeDevice, clock: FakeClock):
        """Anything before half the interval is calibration."""
        device.system_ticks = 1000
        sampler = make_procstat(device, clock, interval=10.0)
        sampler.sample(0, (100,))
        clock.advance(4.0)
        device.system_ticks = 1400
        sample = sampler.sample(4, (100,))
        assert sample.reason is FilterReason.BASELINE
        assert sampler.baseline.system_ticks == 1400

    def test_core_count_read_once(self, device: FakeDevice, clock: FakeClock):
        device.cores = 8
        sampler = make_procstat(device, clock)
        assert sampler.core_count == 8
        device.cores = 2
        assert sampler.core_count == 8


CPUINFO = """\
CPU usage from {start}ms to {end}ms ago:
  12.5% 100/com.example.app: 10% user + 2.5% kernel
  2.5% 101/com.example.app:push: 2% user + 0.5% kernel
"""


class TestDumpsysSampler:
    def make(self, device: FakeDevice, calibrated: bool = True) -> DumpsysSampler:
        sampler = DumpsysSampler(
            device,
            package="com.example.app",
            single_core_dmips=20599,
            policy=SlidingWindowPolicy(window_min_ms=5000, window_max_ms=30000),
            cpu_interval=10.0,
            now=lambda: NOW,
        )
        if calibrated:
            sampler.sample(0, (100,))
        return sampler

    def test_first_sample_is_baseline(self, device: FakeDevice):
        device.cpuinfo = CPUINFO.format(start=11000, end=1000)
        sampler = self.make(device, calibrated=False)

        first = sampler.sample(0, (100, 101))
        assert first.reason is FilterReason.BASELINE
        assert first.cpu_percent == 0.0
        assert first.dmips == 0
        assert first.window_ms == WINDOW_BASELINE

        second = sampler.sample(10, (100, 101))
        assert second.reason is FilterReason.VALID
        assert second.cpu_percent == 15.0

    def test_late_first_call_still_calibrates(self, device: FakeDevice):
        device.cpuinfo = CPUINFO.format(start=11000, end=1000)
        sampler = self.make(device, calibrated=False)
        assert sampler.sample(30, (100,)).reason is FilterReason.BASELINE
        assert sampler.sample(40, (100,)).reason is FilterReason.VALID

    def test_valid_window(self, device: FakeDevice):
        device.cpuinfo = CPUINFO.format(start=11000, end=1000)
        sample = self.make(device).sample(10, (100, 101))
        assert sample.reason is FilterReason.VALID
        assert sample.cpu_percent == 15.0
        assert sample.dmips == 3090
        assert sample.window_ms == 10000

    @pytest.mark.parametrize(
        "start, end, reason",
        [
            (3000, 1000, FilterReason.WINDOW_TOO_SHORT),
            (61000, 1000, FilterReason.WINDOW_TOO_LONG),
            (5000, 0, FilterReason.VALID),
            (30000, 0, FilterReason.VALID),
        ],
    )
    def test_window_bounds(self, device: FakeDevice, start: int, end: int, reason):
        device.cpuinfo = CPUINFO.format(start=start, end=end)
        assert self.make(device).sample(10, (100,)).reason is reason

    def test_unparseable_window(self, device: FakeDevice):
        device.cpuinfo = "  12.5% 100/com.example.app: 10% user\n"
        sample = self.make(device).sample(10, (100,))
        assert sample.reason is FilterReason.WINDOW_UNKNOWN
        assert sample.window_ms == WINDOW_UNKNOWN
        assert sample.cpu_percent == 12.5

    def test_read_failure(self, device: FakeDevice):
        device.cpuinfo = None
        sample = self.make(device).sample(10, (100,))
        assert sample.reason is FilterReason.READ_FAILED

    def test_no_pids(self, device: FakeDevice):
        device.cpuinfo = CPUINFO.format(start=11000, end=1000)
        assert self.make(device).sample(10, ()).reason is FilterReason.NO_PID


def test_make_sampler_selects_strategy(device: FakeDevice):
    config = Config()
    assert isinstance(make_sampler(config, device), ProcStatSampler)

    config.sampling.cpu_method = "dumpsys"
    config.device.package = "com.example.app"
    sampler = make_sampler(config, device)
    assert isinstance(sampler, DumpsysSampler)
    assert sampler.policy.window_max_ms == 30000
