"""Device access: process discovery and raw counter reads.

Two backends share the Device protocol:
- AdbDevice: an Android device reached through `adb shell`
- LocalDevice: this host, read through psutil (dry runs without a phone)

Every read returns None on failure. Failures are classified by the samplers,
never raised from here. DeviceError is reserved for setup problems.
"""

import os
import re
import shutil
import subprocess
from dataclasses import dataclass
from typing import Protocol

import psutil
import structlog

log = structlog.get_logger()

_CPU_USAGE_RE = re.compile(r"CPU usage from (-?\d+)ms to (-?\d+)ms ago")
_PERCENT_RE = re.compile(r"^[+-]?(\d+(?:\.\d+)?)%$")


class DeviceError(RuntimeError):
    """Device setup failed (adb missing, no device online, unknown serial)."""


@dataclass(frozen=True)
class ProcessTicks:
    """Cumulative scheduler ticks of one process."""

    user: int
    system: int

    @property
    def total(self) -> int:
        return self.user + self.system


@dataclass(frozen=True)
class MemoryReading:
    """Memory of one process in KB. RSS is 0 when the device did not report it."""

    pss_kb: int
    rss_kb: int


class Device(Protocol):
    """Read-only view of the device running the application under test."""

    def list_pids(self, package: str) -> tuple[int, ...]: ...

    def read_process_ticks(self, pid: int) -> ProcessTicks | None: ...

    def read_system_ticks(self) -> int | None: ...

    def read_memory(self, pid: int) -> MemoryReading | None: ...

    def read_cpuinfo(self) -> str | None: ...

    def core_count(self) -> int: ...


# ─────────────────────────────────────────────────────────────────────────────
# Parsers (pure, text in / values out)
# ─────────────────────────────────────────────────────────────────────────────


def process_name_pattern(package: str) -> re.Pattern[str]:
    """Match the main process and its `pkg:service` / `pkg_zygote` subprocesses."""
    return re.compile(rf"^{re.escape(package)}(:|_|$)")


def parse_ps_pids(output: str, package: str) -> tuple[int, ...]:
    """Extract PIDs of the package's processes from `ps` output.

    The PID column is located from the header row when present; otherwise the
    first numeric column among the first three is used. The process name is
    the last column.
    """
    pattern = process_name_pattern(package)
    pid_col = 1
    found_pid_col = False
    pids: set[int] = set()

    for line in output.splitlines():
        parts = line.replace("\r", "").split()
        if not parts:
            continue
        if not found_pid_col and "PID" in parts:
            pid_col = parts.index("PID")
            found_pid_col = True
            continue
        if not found_pid_col and len(parts) > 2:
            for i, part in enumerate(parts[:3]):
                if part.isdigit():
                    pid_col = i
                    break
            found_pid_col = True

        if len(parts) <= pid_col or not pattern.match(parts[-1]):
            continue
        if parts[pid_col].isdigit():
            pids.add(int(parts[pid_col]))

    return tuple(sorted(pids))


def parse_proc_stat_total(text: str) -> int | None:
    """Sum all tick fields of the aggregate `cpu` line of /proc/stat."""
    for line in text.splitlines():
        parts = line.split()
        if parts and parts[0] == "cpu":
            values = [int(p) for p in parts[1:] if p.isdigit()]
            return sum(values) if values else None
    return None


def parse_pid_stat_ticks(text: str) -> ProcessTicks | None:
    """Read utime/stime (fields 14 and 15) from /proc/<pid>/stat.

    Fields are counted after the last ')' because comm may contain spaces.
    """
    end = text.rfind(")")
    if end < 0:
        return None
    fields = text[end + 1 :].split()
    # fields[0] is field 3 (state), so utime/stime sit at 11 and 12
    if len(fields) < 13 or not (fields[11].isdigit() and fields[12].isdigit()):
        return None
    return ProcessTicks(user=int(fields[11]), system=int(fields[12]))


def parse_online_cpus(text: str) -> int | None:
    """Count CPUs in a range list such as `0-3,6`."""
    count = 0
    for chunk in text.strip().split(","):
        if not chunk:
            continue
        start, _, end = chunk.partition("-")
        if not start.isdigit() or (end and not end.isdigit()):
            return None
        count += (int(end) - int(start) + 1) if end else 1
    return count or None


def count_stat_cpus(text: str) -> int | None:
    """Count per-core `cpuN` lines of /proc/stat."""
    count = sum(1 for line in text.splitlines() if re.match(r"^cpu\d+\s", line))
    return count or None


def _meminfo_total(text: str, label: str) -> int | None:
    """Find `TOTAL <label>:` in dumpsys meminfo output.

    Prefers the number right after the label; falls back to the first number
    of 3+ digits on the line.
    """
    for line in text.splitlines():
        if f"TOTAL {label}" not in line.upper():
            continue
        parts = line.split()
        for i, part in enumerate(parts[1:], start=1):
            if part.isdigit() and parts[i - 1].upper().rstrip(":") == label:
                return int(part)
        fallback = re.search(r"\d{3,}", line)
        return int(fallback.group()) if fallback else None
    return None


def parse_meminfo(text: str) -> MemoryReading | None:
    """Extract TOTAL PSS (mandatory) and TOTAL RSS (optional) in KB."""
    pss = _meminfo_total(text, "PSS")
    if pss is None:
        return None
    rss = _meminfo_total(text, "RSS") or 0
    return MemoryReading(pss_kb=pss, rss_kb=rss)


@dataclass(frozen=True)
class CpuInfoReport:
    """Parsed `dumpsys cpuinfo` output for one package."""

    window_ms: int  # -1 when the header could not be parsed
    cpu_percent: float
    matched_lines: int


def parse_cpuinfo(text: str, package: str) -> CpuInfoReport:
    """Sum the CPU share of the package's processes in `dumpsys cpuinfo`.

    Process lines look like `  12% 1234/com.example:remote: 8% user + 4% kernel`.
    Only the first `CPU usage from ...` section is read.
    """
    window_ms = -1
    header_seen = False
    pattern = re.compile(rf"/{re.escape(package)}(:|_|\s|$)")
    total = 0.0
    matched = 0

    for line in text.splitlines():
        header = _CPU_USAGE_RE.search(line)
        if header:
            if header_seen:
                break
            header_seen = True
            window_ms = int(header.group(1)) - int(header.group(2))
            continue
        if not pattern.search(line):
            continue
        parts = line.split()
        if not parts:
            continue
        percent = _PERCENT_RE.match(parts[0])
        if percent:
            total += float(percent.group(1))
            matched += 1

    return CpuInfoReport(window_ms=window_ms, cpu_percent=round(total, 2), matched_lines=matched)


def parse_adb_devices(output: str) -> list[str]:
    """Serials of devices in the `device` state from `adb devices`."""
    serials = []
    for line in output.splitlines()[1:]:
        parts = line.split()
        if len(parts) >= 2 and parts[1] == "device":
            serials.append(parts[0])
    return serials


# ─────────────────────────────────────────────────────────────────────────────
# Backends
# ─────────────────────────────────────────────────────────────────────────────


class AdbDevice:
    """Android device reached through `adb shell`.

    Calls block until adb returns; no timeout is imposed.
    """

    def __init__(self, serial: str = "", adb_path: str = "adb"):
        self.serial = serial
        self.adb_path = adb_path
        self._core_count: int | None = None

    def _command(self, *args: str) -> list[str]:
        cmd = [self.adb_path]
        if self.serial:
            cmd += ["-s", self.serial]
        return cmd + list(args)

    def shell(self, command: str) -> str | None:
        """Run a shell command on the device, returning stdout or None."""
        try:
            completed = subprocess.run(
                self._command("shell", command),
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
            )
        except OSError as e:
            log.warning("adb_shell_failed", command=command, error=str(e))
            return None
        if completed.returncode != 0 or not completed.stdout.strip():
            return None
        return completed.stdout.replace("\r", "")

    def list_pids(self, package: str) -> tuple[int, ...]:
        output = self.shell("ps -A") or self.shell("ps")
        if not output:
            return ()
        return parse_ps_pids(output, package)

    def read_process_ticks(self, pid: int) -> ProcessTicks | None:
        text = self.shell(f"cat /proc/{pid}/stat")
        return parse_pid_stat_ticks(text) if text else None

    def read_system_ticks(self) -> int | None:
        text = self.shell("cat /proc/stat")
        return parse_proc_stat_total(text) if text else None

    def read_memory(self, pid: int) -> MemoryReading | None:
        text = self.shell(f"dumpsys meminfo {pid}")
        return parse_meminfo(text) if text else None

    def read_cpuinfo(self) -> str | None:
        return self.shell("dumpsys cpuinfo")

    def core_count(self) -> int:
        """Online core count, read once and fixed for the run."""
        if self._core_count is None:
            online = self.shell("cat /sys/devices/system/cpu/online")
            count = parse_online_cpus(online) if online else None
            if count is None:
                stat = self.shell("cat /proc/stat")
                count = count_stat_cpus(stat) if stat else None
            self._core_count = count or 1
            log.info("core_count", cores=self._core_count, serial=self.serial)
        return self._core_count


def _clock_ticks_per_second() -> int:
    if hasattr(os, "sysconf"):
        return os.sysconf("SC_CLK_TCK")
    return 100


class LocalDevice:
    """This host, read through psutil. Process names match like on Android."""

    def __init__(self) -> None:
        self._hz = _clock_ticks_per_second()

    def list_pids(self, package: str) -> tuple[int, ...]:
        pattern = process_name_pattern(package)
        pids = []
        for proc in psutil.process_iter(["pid", "name"]):
            name = proc.info.get("name") or ""
            if pattern.match(name):
                pids.append(proc.info["pid"])
        return tuple(sorted(pids))

    def read_process_ticks(self, pid: int) -> ProcessTicks | None:
        try:
            times = psutil.Process(pid).cpu_times()
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return None
        return ProcessTicks(
            user=round(times.user * self._hz), system=round(times.system * self._hz)
        )

    def read_system_ticks(self) -> int | None:
        return round(sum(psutil.cpu_times()) * self._hz)

    def read_memory(self, pid: int) -> MemoryReading | None:
        try:
            mem = psutil.Process(pid).memory_full_info()
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return None
        pss = getattr(mem, "pss", 0)
        return MemoryReading(pss_kb=pss // 1024, rss_kb=mem.rss // 1024)

    def read_cpuinfo(self) -> str | None:
        return None

    def core_count(self) -> int:
        return psutil.cpu_count() or 1


def list_adb_devices(adb_path: str = "adb") -> list[str]:
    """Serials of online devices.

    Raises:
        DeviceError: If adb is not installed.
    """
    if shutil.which(adb_path) is None:
        raise DeviceError(
            f"{adb_path} not found. Install it with: brew install --cask android-platform-tools"
        )
    completed = subprocess.run(
        [adb_path, "devices"], stdin=subprocess.DEVNULL, capture_output=True, text=True
    )
    return parse_adb_devices(completed.stdout)


def resolve_serial(serial: str, adb_path: str = "adb") -> str:
    """Pick the device to test: the configured serial, or the first online one.

    Raises:
        DeviceError: If no device is online or the serial is not online.
    """
    online = list_adb_devices(adb_path)
    if not online:
        raise DeviceError("No online Android devices detected (device state)")
    if serial:
        if serial not in online:
            raise DeviceError(
                f"Device {serial!r} does not exist or is not online. Online: {online}"
            )
        return serial
    if len(online) > 1:
        log.warning("multiple_devices", devices=online, selected=online[0])
    return online[0]
