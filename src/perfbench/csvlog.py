"""Append-only CSV sample logs.

Each run writes cpu_log.csv and mem_log.csv with a header row first. Rows are
flushed as they are written so an interrupted run leaves complete lines.
"""

import csv
from pathlib import Path
from typing import Callable, Iterator, Sequence, TypeVar

import structlog

from perfbench.samples import CPU_LOG_HEADER, MEM_LOG_HEADER, CpuSample, MemSample

log = structlog.get_logger()

CPU_LOG_NAME = "cpu_log.csv"
MEM_LOG_NAME = "mem_log.csv"

T = TypeVar("T")


class SampleLog:
    """Single-writer CSV log. Use as a context manager or call close()."""

    def __init__(self, path: Path, header: Sequence[str]):
        self.path = path
        self.rows_written = 0
        self._file = open(path, "w", newline="", encoding="utf-8")
        self._writer = csv.writer(self._file, lineterminator="\n")
        self._writer.writerow(header)
        self._file.flush()

    @classmethod
    def for_cpu(cls, output_dir: Path) -> "SampleLog":
        return cls(output_dir / CPU_LOG_NAME, CPU_LOG_HEADER)

    @classmethod
    def for_memory(cls, output_dir: Path) -> "SampleLog":
        return cls(output_dir / MEM_LOG_NAME, MEM_LOG_HEADER)

    def append(self, sample: CpuSample | MemSample) -> None:
        self._writer.writerow(sample.to_row())
        self._file.flush()
        self.rows_written += 1

    def close(self) -> None:
        if not self._file.closed:
            self._file.close()

    def __enter__(self) -> "SampleLog":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def _read_rows(path: Path, parse: Callable[[list[str]], T]) -> Iterator[T]:
    with open(path, newline="", encoding="utf-8") as f:
        reader = csv.reader(f)
        next(reader, None)  # header
        for line_no, row in enumerate(reader, start=2):
            if not row or all(not cell.strip() for cell in row):
                continue
            try:
                yield parse(row)
            except ValueError as e:
                log.warning("csv_row_skipped", path=str(path), line=line_no, error=str(e))


def read_cpu_log(path: Path) -> list[CpuSample]:
    """Reconstruct the CPU sample sequence, skipping malformed rows."""
    return list(_read_rows(path, CpuSample.from_row))


def read_mem_log(path: Path) -> list[MemSample]:
    """Reconstruct the memory sample sequence, skipping malformed rows."""
    return list(_read_rows(path, MemSample.from_row))
