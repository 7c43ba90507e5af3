"""Sample records persisted to the CPU and memory CSV logs.

This is THE canonical schema for sample data. The CSV column order below is
shared by the live writer and the offline report regeneration path.
"""

from dataclasses import dataclass
from enum import Enum

CPU_LOG_HEADER = (
    "Timestamp",
    "Time(Seconds)",
    "CPU Percentage(%)",
    "DMIPS",
    "WindowMs",
    "FilterReason",
)
MEM_LOG_HEADER = (
    "Timestamp",
    "Time(Seconds)",
    "TOTAL_RSS(KB)",
    "RSS(MB)",
    "TOTAL_PSS(KB)",
    "PSS(MB)",
)

# windowMs sentinels
WINDOW_UNKNOWN = -1
WINDOW_BASELINE = 0


class FilterReason(str, Enum):
    """Why a CPU sample is (or is not) counted in aggregate statistics."""

    VALID = "Valid"
    BASELINE = "Baseline"
    WINDOW_TOO_SHORT = "WindowTooShort"
    WINDOW_TOO_LONG = "WindowTooLong"
    WINDOW_UNKNOWN = "WindowUnknown"
    NO_PID = "NoPID"
    READ_FAILED = "ReadFailed"
    INVALID_DELTA = "InvalidDelta"

    @classmethod
    def parse(cls, value: str) -> "FilterReason":
        """Parse a reason as written in the CPU log.

        Raises:
            ValueError: If the value is not a known reason.
        """
        try:
            return cls(value.strip())
        except ValueError:
            valid = [r.value for r in cls]
            raise ValueError(f"Unknown FilterReason: {value!r}. Valid: {valid}") from None


class CollectionMethod(str, Enum):
    """How CPU usage is measured on the device."""

    PROCSTAT = "procstat"  # Own deltas over /proc counters, precise window
    DUMPSYS = "dumpsys"  # Device-reported sliding window from dumpsys cpuinfo

    @classmethod
    def parse(cls, value: str) -> "CollectionMethod":
        try:
            return cls(value.strip().lower())
        except ValueError:
            valid = [m.value for m in cls]
            raise ValueError(f"Unknown cpu_method: {value!r}. Valid: {valid}") from None


def dmips_for(cpu_percent: float, single_core_dmips: int) -> int:
    """Scale a CPU percentage to DMIPS, rounded to the nearest integer."""
    return int(round(cpu_percent * single_core_dmips / 100))


@dataclass(frozen=True)
class CpuSample:
    """One CPU observation of the whole application (all matched processes)."""

    timestamp: int  # Unix seconds
    elapsed: int  # Seconds since run start
    cpu_percent: float
    dmips: int
    window_ms: int
    reason: FilterReason

    def to_row(self) -> list[str]:
        """Serialize to a CSV row in CPU_LOG_HEADER order."""
        return [
            str(self.timestamp),
            str(self.elapsed),
            f"{self.cpu_percent:.2f}",
            str(self.dmips),
            str(self.window_ms),
            self.reason.value,
        ]

    @classmethod
    def from_row(cls, row: list[str]) -> "CpuSample":
        """Deserialize from a CSV row.

        Raises:
            ValueError: On a short row or unparseable field.
        """
        if len(row) < len(CPU_LOG_HEADER):
            raise ValueError(f"CPU row has {len(row)} fields, expected {len(CPU_LOG_HEADER)}")
        return cls(
            timestamp=int(float(row[0])),
            elapsed=int(float(row[1])),
            cpu_percent=float(row[2]),
            dmips=int(round(float(row[3]))),
            window_ms=int(float(row[4])),
            reason=FilterReason.parse(row[5]),
        )

    @classmethod
    def zero(
        cls, timestamp: int, elapsed: int, reason: FilterReason, window_ms: int = WINDOW_UNKNOWN
    ) -> "CpuSample":
        """Build a zero-valued sample tagged with the given reason."""
        return cls(
            timestamp=timestamp,
            elapsed=elapsed,
            cpu_percent=0.0,
            dmips=0,
            window_ms=window_ms,
            reason=reason,
        )


@dataclass(frozen=True)
class MemSample:
    """Summed memory of all matched processes at one point in time."""

    timestamp: int
    elapsed: int
    total_rss_kb: int
    rss_mb: float
    total_pss_kb: int
    pss_mb: float

    @classmethod
    def from_totals(
        cls, timestamp: int, elapsed: int, total_rss_kb: int, total_pss_kb: int
    ) -> "MemSample":
        """Derive the MB columns from KB totals."""
        return cls(
            timestamp=timestamp,
            elapsed=elapsed,
            total_rss_kb=total_rss_kb,
            rss_mb=round(total_rss_kb / 1024, 2),
            total_pss_kb=total_pss_kb,
            pss_mb=round(total_pss_kb / 1024, 2),
        )

    def to_row(self) -> list[str]:
        return [
            str(self.timestamp),
            str(self.elapsed),
            str(self.total_rss_kb),
            f"{self.rss_mb:.2f}",
            str(self.total_pss_kb),
            f"{self.pss_mb:.2f}",
        ]

    @classmethod
    def from_row(cls, row: list[str]) -> "MemSample":
        if len(row) < len(MEM_LOG_HEADER):
            raise ValueError(f"Memory row has {len(row)} fields, expected {len(MEM_LOG_HEADER)}")
        return cls(
            timestamp=int(float(row[0])),
            elapsed=int(float(row[1])),
            total_rss_kb=int(float(row[2])),
            rss_mb=float(row[3]),
            total_pss_kb=int(float(row[4])),
            pss_mb=float(row[5]),
        )
