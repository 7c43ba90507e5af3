"""Tests for window validation and the sample inclusion rule."""

import pytest

from perfbench.classify import SampleFilter, is_included, reason_ok
from perfbench.config import Config
from perfbench.samples import CollectionMethod, FilterReason
from perfbench.window import (
    PreciseWindowPolicy,
    SlidingWindowPolicy,
    policy_for,
    window_ok,
)
from tests.conftest import make_cpu_sample

PROCSTAT = SampleFilter(method=CollectionMethod.PROCSTAT)
DUMPSYS = SampleFilter(method=CollectionMethod.DUMPSYS)


class TestWindowPolicies:
    def test_precise_window(self):
        policy = PreciseWindowPolicy()
        assert policy.trustworthy(10000)
        assert policy.trustworthy(1)
        assert not policy.trustworthy(0)
        assert not policy.trustworthy(-1)

    def test_sliding_window_bounds_inclusive(self):
        policy = SlidingWindowPolicy(window_min_ms=5000, window_max_ms=30000)
        assert policy.trustworthy(5000)
        assert policy.trustworthy(30000)
        assert not policy.trustworthy(4999)
        assert not policy.trustworthy(30001)
        assert not policy.trustworthy(-1)

    def test_sliding_window_reasons(self):
        policy = SlidingWindowPolicy(window_min_ms=5000, window_max_ms=30000)
        assert policy.reason_for(-1) is FilterReason.WINDOW_UNKNOWN
        assert policy.reason_for(0) is FilterReason.WINDOW_TOO_SHORT
        assert policy.reason_for(40000) is FilterReason.WINDOW_TOO_LONG
        assert policy.reason_for(12000) is FilterReason.VALID

    def test_policy_for_method(self):
        assert isinstance(policy_for(CollectionMethod.PROCSTAT), PreciseWindowPolicy)
        sliding = policy_for(CollectionMethod.DUMPSYS, 1000, 2000)
        assert sliding == SlidingWindowPolicy(window_min_ms=1000, window_max_ms=2000)

    def test_unknown_window_admitted_only_when_relaxed(self):
        policy = SlidingWindowPolicy()
        assert not window_ok(policy, -1, strict_window=True)
        assert window_ok(policy, -1, strict_window=False)
        assert window_ok(PreciseWindowPolicy(), -1, strict_window=False)


class TestReasonOk:
    def test_valid_always_passes(self):
        assert reason_ok(FilterReason.VALID, strict_window=True)
        assert reason_ok(FilterReason.VALID, strict_window=False)

    def test_window_unknown_depends_on_strictness(self):
        assert not reason_ok(FilterReason.WINDOW_UNKNOWN, strict_window=True)
        assert reason_ok(FilterReason.WINDOW_UNKNOWN, strict_window=False)

    @pytest.mark.parametrize(
        "reason",
        [
            FilterReason.BASELINE,
            FilterReason.WINDOW_TOO_SHORT,
            FilterReason.WINDOW_TOO_LONG,
            FilterReason.NO_PID,
            FilterReason.READ_FAILED,
            FilterReason.INVALID_DELTA,
        ],
    )
    def test_other_reasons_never_pass(self, reason: FilterReason):
        assert not reason_ok(reason, strict_window=True)
        assert not reason_ok(reason, strict_window=False)

    def test_every_reason_is_handled(self):
        for reason in FilterReason:
            reason_ok(reason, strict_window=True)


class TestSampleFilter:
    def test_procstat_valid_sample(self):
        assert PROCSTAT.included(make_cpu_sample(cpu=12.0, window_ms=10000))

    def test_baseline_sample_excluded(self):
        sample = make_cpu_sample(cpu=0.0, window_ms=0, reason=FilterReason.BASELINE)
        assert not PROCSTAT.included(sample)
        relaxed = SampleFilter(method=CollectionMethod.PROCSTAT, strict_window=False)
        assert not relaxed.included(sample)

    def test_min_cpu_threshold(self):
        sample_filter = SampleFilter(min_cpu_percent=5.0)
        assert not sample_filter.included(make_cpu_sample(cpu=4.99))
        assert sample_filter.included(make_cpu_sample(cpu=5.0))

    def test_dumpsys_window_bounds(self):
        assert DUMPSYS.included(make_cpu_sample(window_ms=12000))
        assert not DUMPSYS.included(make_cpu_sample(window_ms=3000))

    def test_unknown_window_with_relaxed_strictness(self):
        sample = make_cpu_sample(window_ms=-1, reason=FilterReason.WINDOW_UNKNOWN)
        assert not DUMPSYS.included(sample)
        relaxed = SampleFilter(method=CollectionMethod.DUMPSYS, strict_window=False)
        assert relaxed.included(sample)

    def test_read_failed_excluded_even_relaxed(self):
        sample = make_cpu_sample(cpu=0.0, window_ms=-1, reason=FilterReason.READ_FAILED)
        relaxed = SampleFilter(method=CollectionMethod.DUMPSYS, strict_window=False)
        assert not relaxed.included(sample)

    def test_from_config(self):
        config = Config()
        config.sampling.cpu_method = "dumpsys"
        config.filter.min_cpu_percent = 1.5
        config.filter.strict_window = False
        sample_filter = SampleFilter.from_config(config)
        assert sample_filter == SampleFilter(
            method=CollectionMethod.DUMPSYS,
            min_cpu_percent=1.5,
            strict_window=False,
            window_min_ms=5000,
            window_max_ms=30000,
        )

    def test_filter_matches_pure_predicate(self):
        """The filter only depends on persisted sample fields."""
        samples = [
            make_cpu_sample(cpu=c, window_ms=w, reason=r)
            for c in (0.0, 3.0, 50.0)
            for w in (-1, 0, 4000, 10000, 40000)
            for r in FilterReason
        ]
        for sample_filter in (
            PROCSTAT,
            DUMPSYS,
            SampleFilter(method=CollectionMethod.DUMPSYS, strict_window=False, min_cpu_percent=2),
        ):
            for s in samples:
                assert sample_filter.included(s) == is_included(
                    s.cpu_percent,
                    s.window_ms,
                    s.reason,
                    method=sample_filter.method,
                    min_cpu_percent=sample_filter.min_cpu_percent,
                    strict_window=sample_filter.strict_window,
                    window_min_ms=sample_filter.window_min_ms,
                    window_max_ms=sample_filter.window_max_ms,
                )
