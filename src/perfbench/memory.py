"""Memory collector: sum per-process PSS/RSS into one MemSample."""

import time
from dataclasses import dataclass
from typing import Callable

import structlog

from perfbench.device import Device
from perfbench.samples import MemSample

log = structlog.get_logger()


@dataclass(frozen=True)
class MemoryCollection:
    """Result of one memory pass. sample is None when no PSS could be read."""

    sample: MemSample | None
    process_count: int


class MemoryCollector:
    """Reads every matched process PID by PID so `pkg:service` subprocesses are included.

    PSS is mandatory: a process without PSS is skipped entirely. RSS is best
    effort and counts as 0 when missing.
    """

    def __init__(self, device: Device, now: Callable[[], float] = time.time):
        self.device = device
        self._now = now

    def collect(self, elapsed: int, pids: tuple[int, ...]) -> MemoryCollection:
        timestamp = int(self._now())
        total_pss_kb = 0
        total_rss_kb = 0
        counted = 0

        for pid in pids:
            reading = self.device.read_memory(pid)
            if reading is None or reading.pss_kb <= 0:
                log.debug("memory_pid_skipped", pid=pid, elapsed=elapsed)
                continue
            total_pss_kb += reading.pss_kb
            if reading.rss_kb > 0:
                total_rss_kb += reading.rss_kb
            counted += 1

        if total_pss_kb == 0:
            log.warning("memory_sample_rejected", elapsed=elapsed, pids=len(pids))
            return MemoryCollection(sample=None, process_count=0)

        sample = MemSample.from_totals(
            timestamp=timestamp,
            elapsed=elapsed,
            total_rss_kb=total_rss_kb,
            total_pss_kb=total_pss_kb,
        )
        return MemoryCollection(sample=sample, process_count=counted)
