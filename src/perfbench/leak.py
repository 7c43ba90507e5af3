"""Memory leak detection by least-squares regression of PSS over time."""

from dataclasses import dataclass
from enum import Enum
from typing import Sequence

from perfbench.samples import MemSample

MIN_LEAK_SAMPLES = 3


class LeakTrend(str, Enum):
    INSUFFICIENT_DATA = "InsufficientData"
    POSSIBLE = "Possible"
    STABLE = "Stable"
    DECLINING = "Declining"


@dataclass(frozen=True)
class LeakAssessment:
    """Trend of PSS over the run.

    slope is in MB/second; it is 0.0 for InsufficientData and for a degenerate
    fit where every sample shares the same elapsed time.
    """

    slope: float
    trend: LeakTrend
    sample_count: int

    def projected_growth_mb(self, duration_seconds: float) -> float:
        """Growth over a duration if the slope held."""
        return round(self.slope * duration_seconds, 2)

    def describe(self) -> str:
        if self.trend is LeakTrend.INSUFFICIENT_DATA:
            return "Unable to determine (Insufficient data)"
        if self.trend is LeakTrend.POSSIBLE:
            return f"Possible (Growth rate {self.slope:.6f} MB/second)"
        if self.trend is LeakTrend.DECLINING:
            return f"No (Memory trending down, slope {self.slope:.6f} MB/second)"
        return f"No (Memory stable, slope {self.slope:.6f} MB/second)"


def regression_slope(points: Sequence[tuple[float, float]]) -> float:
    """Closed-form OLS slope; 0.0 when the x values do not vary."""
    n = len(points)
    sx = sum(x for x, _ in points)
    sy = sum(y for _, y in points)
    sxy = sum(x * y for x, y in points)
    sxx = sum(x * x for x, _ in points)
    denominator = n * sxx - sx * sx
    if denominator == 0:
        return 0.0
    return (n * sxy - sx * sy) / denominator


def classify_slope(slope: float, leak_threshold: float, decline_threshold: float) -> LeakTrend:
    if slope > leak_threshold:
        return LeakTrend.POSSIBLE
    if slope < -decline_threshold:
        return LeakTrend.DECLINING
    return LeakTrend.STABLE


def assess_leak(
    samples: Sequence[MemSample],
    leak_threshold: float = 0.005,
    decline_threshold: float = 0.001,
) -> LeakAssessment:
    """Regress PSS (MB) against elapsed seconds and classify the trend."""
    if len(samples) < MIN_LEAK_SAMPLES:
        return LeakAssessment(
            slope=0.0, trend=LeakTrend.INSUFFICIENT_DATA, sample_count=len(samples)
        )

    slope = regression_slope([(float(s.elapsed), s.pss_mb) for s in samples])
    return LeakAssessment(
        slope=slope,
        trend=classify_slope(slope, leak_threshold, decline_threshold),
        sample_count=len(samples),
    )
