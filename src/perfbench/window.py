"""Observation window validation, one policy per collection method."""

from dataclasses import dataclass
from typing import Protocol

from perfbench.samples import WINDOW_UNKNOWN, CollectionMethod, FilterReason


class WindowPolicy(Protocol):
    """Decides whether a sample's window length can be trusted."""

    def trustworthy(self, window_ms: int) -> bool: ...


@dataclass(frozen=True)
class PreciseWindowPolicy:
    """procstat: the window is our own wall-clock delta.

    0 is the calibration sample, negative values are clock anomalies.
    """

    def trustworthy(self, window_ms: int) -> bool:
        return window_ms > 0


@dataclass(frozen=True)
class SlidingWindowPolicy:
    """dumpsys: the device reports over its own window, which must fall within bounds."""

    window_min_ms: int = 5000
    window_max_ms: int = 30000

    def trustworthy(self, window_ms: int) -> bool:
        if window_ms == WINDOW_UNKNOWN:
            return False
        return self.window_min_ms <= window_ms <= self.window_max_ms

    def reason_for(self, window_ms: int) -> FilterReason:
        """Tag a freshly measured dumpsys window."""
        if window_ms == WINDOW_UNKNOWN:
            return FilterReason.WINDOW_UNKNOWN
        if window_ms < self.window_min_ms:
            return FilterReason.WINDOW_TOO_SHORT
        if window_ms > self.window_max_ms:
            return FilterReason.WINDOW_TOO_LONG
        return FilterReason.VALID


def policy_for(
    method: CollectionMethod, window_min_ms: int = 5000, window_max_ms: int = 30000
) -> PreciseWindowPolicy | SlidingWindowPolicy:
    if method is CollectionMethod.PROCSTAT:
        return PreciseWindowPolicy()
    return SlidingWindowPolicy(window_min_ms=window_min_ms, window_max_ms=window_max_ms)


def window_ok(policy: WindowPolicy, window_ms: int, strict_window: bool) -> bool:
    """Window check including the relaxed-strictness admission of unknown windows."""
    if window_ms == WINDOW_UNKNOWN and not strict_window:
        return True
    return policy.trustworthy(window_ms)
