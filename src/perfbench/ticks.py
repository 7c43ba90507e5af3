"""Tick source: one raw counter read of the device per CPU sample."""

import time
from dataclasses import dataclass, field
from typing import Callable

import structlog

from perfbench.device import Device

log = structlog.get_logger()


@dataclass(frozen=True)
class TickReading:
    """Raw counters read at one instant.

    system_ticks is None when the system-wide counter could not be read.
    process_ticks holds only the PIDs whose counters were read successfully.
    """

    wall_clock: float
    system_ticks: int | None
    process_ticks: dict[int, int] = field(default_factory=dict)
    pids: tuple[int, ...] = ()


class TickSource:
    """Reads per-process and system-wide tick counters from a device."""

    def __init__(self, device: Device, clock: Callable[[], float] = time.monotonic):
        self.device = device
        self.clock = clock

    def read(self, pids: tuple[int, ...]) -> TickReading:
        wall_clock = self.clock()
        system_ticks = self.device.read_system_ticks()

        process_ticks: dict[int, int] = {}
        for pid in pids:
            ticks = self.device.read_process_ticks(pid)
            if ticks is None:
                # Process exited between discovery and read
                log.debug("process_ticks_unavailable", pid=pid)
                continue
            process_ticks[pid] = ticks.total

        return TickReading(
            wall_clock=wall_clock,
            system_ticks=system_ticks,
            process_ticks=process_ticks,
            pids=pids,
        )
