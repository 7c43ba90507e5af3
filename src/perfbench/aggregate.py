"""Aggregate statistics over CPU and memory sample sequences.

Aggregates are derived on demand and never persisted as the source of truth.
"""

from dataclasses import dataclass, field
from typing import Iterable, Sequence

from perfbench.classify import SampleFilter
from perfbench.samples import CpuSample, FilterReason, MemSample


@dataclass(frozen=True)
class CpuAggregate:
    """CPU statistics over the included samples plus sample counts.

    All statistics are 0 when no sample is included.
    """

    total: int = 0
    included: int = 0
    excluded: int = 0
    unknown_window: int = 0
    avg_cpu: float = 0.0
    peak_cpu: float = 0.0
    min_cpu: float = 0.0
    avg_dmips: int = 0
    peak_dmips: int = 0
    min_dmips: int = 0
    reason_counts: dict[FilterReason, int] = field(default_factory=dict)


@dataclass(frozen=True)
class MemAggregate:
    """PSS/RSS statistics in MB over every accepted memory sample."""

    count: int = 0
    avg_pss_mb: float = 0.0
    max_pss_mb: float = 0.0
    min_pss_mb: float = 0.0
    avg_rss_mb: float = 0.0
    max_rss_mb: float = 0.0
    min_rss_mb: float = 0.0
    first_pss_mb: float = 0.0
    last_pss_mb: float = 0.0
    pss_change_percent: float | None = None  # None without data or with first PSS 0


def count_reasons(samples: Iterable[CpuSample]) -> dict[FilterReason, int]:
    """Histogram of FilterReason, in enum declaration order, zero counts included."""
    counts = {reason: 0 for reason in FilterReason}
    for sample in samples:
        counts[sample.reason] += 1
    return counts


def aggregate_cpu(samples: Sequence[CpuSample], sample_filter: SampleFilter) -> CpuAggregate:
    """Scan all CPU samples, aggregating the ones the filter includes."""
    included = [s for s in samples if sample_filter.included(s)]
    reasons = count_reasons(samples)
    # NoPID and ReadFailed also carry window -1; only WindowUnknown counts here
    unknown = reasons[FilterReason.WINDOW_UNKNOWN]

    if not included:
        return CpuAggregate(
            total=len(samples),
            included=0,
            excluded=len(samples),
            unknown_window=unknown,
            reason_counts=reasons,
        )

    cpu = [s.cpu_percent for s in included]
    dmips = [s.dmips for s in included]
    return CpuAggregate(
        total=len(samples),
        included=len(included),
        excluded=len(samples) - len(included),
        unknown_window=unknown,
        avg_cpu=round(sum(cpu) / len(cpu), 2),
        peak_cpu=round(max(cpu), 2),
        min_cpu=round(min(cpu), 2),
        avg_dmips=int(round(sum(dmips) / len(dmips))),
        peak_dmips=max(dmips),
        min_dmips=min(dmips),
        reason_counts=reasons,
    )


def aggregate_memory(samples: Sequence[MemSample]) -> MemAggregate:
    """Every accepted memory sample participates, no filtering."""
    if not samples:
        return MemAggregate()

    pss = [s.pss_mb for s in samples]
    rss = [s.rss_mb for s in samples]
    first, last = pss[0], pss[-1]
    change = round((last - first) / first * 100, 2) if first > 0 else None

    return MemAggregate(
        count=len(samples),
        avg_pss_mb=round(sum(pss) / len(pss), 2),
        max_pss_mb=round(max(pss), 2),
        min_pss_mb=round(min(pss), 2),
        avg_rss_mb=round(sum(rss) / len(rss), 2),
        max_rss_mb=round(max(rss), 2),
        min_rss_mb=round(min(rss), 2),
        first_pss_mb=first,
        last_pss_mb=last,
        pss_change_percent=change,
    )
