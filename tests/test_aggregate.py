"""Tests for CPU and memory aggregation."""

from perfbench.aggregate import (
    CpuAggregate,
    MemAggregate,
    aggregate_cpu,
    aggregate_memory,
    count_reasons,
)
from perfbench.classify import SampleFilter
from perfbench.samples import CollectionMethod, FilterReason
from tests.conftest import make_cpu_sample, make_mem_sample

PROCSTAT = SampleFilter(method=CollectionMethod.PROCSTAT)


def test_aggregate_cpu_over_included_subset():
    samples = [
        make_cpu_sample(cpu=0.0, window_ms=0, reason=FilterReason.BASELINE, elapsed=0),
        make_cpu_sample(cpu=10.0, elapsed=10),
        make_cpu_sample(cpu=20.0, elapsed=20),
        make_cpu_sample(cpu=0.0, window_ms=-1, reason=FilterReason.NO_PID, elapsed=30),
        make_cpu_sample(cpu=35.5, elapsed=40),
    ]
    agg = aggregate_cpu(samples, PROCSTAT)

    assert agg.total == 5
    assert agg.included == 3
    assert agg.excluded == 2
    assert agg.unknown_window == 0
    assert agg.avg_cpu == 21.83
    assert agg.peak_cpu == 35.5
    assert agg.min_cpu == 10.0
    assert agg.peak_dmips == 7313
    assert agg.min_dmips == 2060
    assert agg.avg_dmips == round((2060 + 4120 + 7313) / 3)


def test_aggregate_cpu_empty_included_set_is_zero():
    samples = [
        make_cpu_sample(cpu=0.0, window_ms=0, reason=FilterReason.BASELINE),
        make_cpu_sample(cpu=0.0, window_ms=-1, reason=FilterReason.READ_FAILED),
    ]
    agg = aggregate_cpu(samples, PROCSTAT)

    assert agg.total == 2
    assert agg.included == 0
    assert agg.excluded == 2
    assert agg.avg_cpu == 0.0
    assert agg.peak_cpu == 0.0
    assert agg.min_cpu == 0.0
    assert agg.avg_dmips == 0
    assert agg.peak_dmips == 0
    assert agg.min_dmips == 0


def test_unknown_window_counts_only_window_unknown_reason():
    """NoPID and ReadFailed share window -1 but are not unknown-window samples."""
    samples = [
        make_cpu_sample(cpu=0.0, window_ms=-1, reason=FilterReason.NO_PID),
        make_cpu_sample(cpu=0.0, window_ms=-1, reason=FilterReason.READ_FAILED),
        make_cpu_sample(cpu=12.0, window_ms=-1, reason=FilterReason.WINDOW_UNKNOWN),
        make_cpu_sample(cpu=0.0, window_ms=0, reason=FilterReason.BASELINE),
    ]
    agg = aggregate_cpu(samples, SampleFilter(method=CollectionMethod.DUMPSYS))
    assert agg.unknown_window == 1
    assert agg.reason_counts[FilterReason.NO_PID] == 1


def test_aggregate_cpu_no_samples():
    agg = aggregate_cpu([], PROCSTAT)
    assert agg.total == 0
    assert agg.avg_cpu == 0.0
    assert sum(agg.reason_counts.values()) == 0


def test_reason_counts_in_declaration_order():
    samples = [
        make_cpu_sample(reason=FilterReason.NO_PID),
        make_cpu_sample(reason=FilterReason.VALID),
        make_cpu_sample(reason=FilterReason.NO_PID),
    ]
    counts = count_reasons(samples)
    assert list(counts) == list(FilterReason)
    assert counts[FilterReason.NO_PID] == 2
    assert counts[FilterReason.VALID] == 1
    assert counts[FilterReason.BASELINE] == 0


def test_aggregate_cpu_is_idempotent():
    samples = tuple(make_cpu_sample(cpu=c, elapsed=i * 10) for i, c in enumerate([1.0, 2.5, 9.0]))
    assert aggregate_cpu(samples, PROCSTAT) == aggregate_cpu(samples, PROCSTAT)


def test_aggregate_memory():
    samples = [
        make_mem_sample(elapsed=0, pss_mb=100.0, rss_mb=150.0),
        make_mem_sample(elapsed=10, pss_mb=110.0, rss_mb=160.0),
        make_mem_sample(elapsed=20, pss_mb=120.5, rss_mb=149.0),
    ]
    agg = aggregate_memory(samples)

    assert agg.count == 3
    assert agg.avg_pss_mb == 110.17
    assert agg.max_pss_mb == 120.5
    assert agg.min_pss_mb == 100.0
    assert agg.avg_rss_mb == 153.0
    assert agg.max_rss_mb == 160.0
    assert agg.min_rss_mb == 149.0
    assert agg.first_pss_mb == 100.0
    assert agg.last_pss_mb == 120.5
    assert agg.pss_change_percent == 20.5


def test_aggregate_memory_empty():
    assert aggregate_memory([]) == MemAggregate()


def test_aggregate_memory_zero_first_pss_has_no_change():
    samples = [make_mem_sample(elapsed=0, pss_mb=0.0), make_mem_sample(elapsed=10, pss_mb=5.0)]
    assert aggregate_memory(samples).pss_change_percent is None


def test_default_aggregate_is_zero():
    agg = CpuAggregate()
    assert agg.avg_cpu == 0.0
    assert agg.included == 0
