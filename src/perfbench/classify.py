"""CPU sample inclusion rule.

The decision depends only on fields stored in the CPU log plus the run's
thresholds, so a report regenerated later from cpu_log.csv includes exactly
the samples the live run included.
"""

from dataclasses import dataclass

from perfbench.config import Config
from perfbench.samples import CollectionMethod, CpuSample, FilterReason
from perfbench.window import policy_for, window_ok

_EXCLUDED_REASONS = frozenset(
    {
        FilterReason.BASELINE,
        FilterReason.WINDOW_TOO_SHORT,
        FilterReason.WINDOW_TOO_LONG,
        FilterReason.NO_PID,
        FilterReason.READ_FAILED,
        FilterReason.INVALID_DELTA,
    }
)


def reason_ok(reason: FilterReason, strict_window: bool) -> bool:
    """Valid always passes; WindowUnknown passes only when strictness is relaxed."""
    if reason is FilterReason.VALID:
        return True
    if reason is FilterReason.WINDOW_UNKNOWN:
        return not strict_window
    if reason in _EXCLUDED_REASONS:
        return False
    raise ValueError(f"Unhandled FilterReason: {reason!r}")


@dataclass(frozen=True)
class SampleFilter:
    """Thresholds of the inclusion rule, fixed for a run."""

    method: CollectionMethod = CollectionMethod.PROCSTAT
    min_cpu_percent: float = 0.0
    strict_window: bool = True
    window_min_ms: int = 5000
    window_max_ms: int = 30000

    @classmethod
    def from_config(cls, config: Config) -> "SampleFilter":
        f = config.filter
        return cls(
            method=config.sampling.method,
            min_cpu_percent=f.min_cpu_percent,
            strict_window=f.strict_window,
            window_min_ms=f.window_min_ms,
            window_max_ms=f.window_max_ms,
        )

    def included(self, sample: CpuSample) -> bool:
        return is_included(
            sample.cpu_percent,
            sample.window_ms,
            sample.reason,
            method=self.method,
            min_cpu_percent=self.min_cpu_percent,
            strict_window=self.strict_window,
            window_min_ms=self.window_min_ms,
            window_max_ms=self.window_max_ms,
        )


def is_included(
    cpu_percent: float,
    window_ms: int,
    reason: FilterReason,
    *,
    method: CollectionMethod,
    min_cpu_percent: float,
    strict_window: bool,
    window_min_ms: int,
    window_max_ms: int,
) -> bool:
    """Pure inclusion predicate over persisted sample fields."""
    policy = policy_for(method, window_min_ms, window_max_ms)
    return (
        window_ok(policy, window_ms, strict_window)
        and cpu_percent >= min_cpu_percent
        and reason_ok(reason, strict_window)
    )
