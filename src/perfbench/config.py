"""Configuration system for perfbench."""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit

from perfbench.samples import CollectionMethod

VALID_BACKENDS = {"adb", "local"}


@dataclass
class DeviceConfig:
    """Target device and application."""

    package: str = "com.xxx.yyy"  # Main process name; subprocesses match pkg:* and pkg_*
    serial: str = ""  # adb serial, empty = first online device
    backend: str = "adb"  # "adb" (remote device) or "local" (this host, via psutil)
    single_core_dmips: int = 20599  # Single core at 100% CPU ≈ this many DMIPS


@dataclass
class SamplingConfig:
    """Scheduling of the collection loop."""

    duration_minutes: float = 5.0
    cpu_interval: float = 10.0  # Seconds between CPU samples
    mem_interval: float = 10.0  # Seconds between memory samples
    alive_check_interval: float = 10.0  # Seconds between app liveness checks
    absence_grace_seconds: float = 2.0  # Re-check delay before declaring the app gone
    cpu_method: str = "procstat"  # "procstat" or "dumpsys"

    @property
    def duration_seconds(self) -> float:
        return self.duration_minutes * 60

    @property
    def method(self) -> CollectionMethod:
        return CollectionMethod.parse(self.cpu_method)


@dataclass
class FilterConfig:
    """Thresholds of the CPU sample inclusion rule."""

    min_cpu_percent: float = 0.0
    strict_window: bool = True  # False admits WindowUnknown samples
    window_min_ms: int = 5000  # dumpsys window bounds
    window_max_ms: int = 30000


@dataclass
class LeakConfig:
    """Memory trend classification thresholds (MB/second)."""

    leak_threshold: float = 0.005  # ≈ 300 MB/hour
    decline_threshold: float = 0.001


@dataclass
class SystemConfig:
    """Log file rotation."""

    log_max_bytes: int = 5 * 1024 * 1024
    log_backup_count: int = 3


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


SECTIONS = ("device", "sampling", "filter", "leak", "system")


@dataclass
class Config:
    """Main configuration container."""

    device: DeviceConfig = field(default_factory=DeviceConfig)
    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    filter: FilterConfig = field(default_factory=FilterConfig)
    leak: LeakConfig = field(default_factory=LeakConfig)
    system: SystemConfig = field(default_factory=SystemConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "perfbench"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """State directory for logs."""
        return Path.home() / ".local" / "state" / "perfbench"

    @property
    def log_path(self) -> Path:
        """JSON Lines log path."""
        return self.state_dir / "perfbench.log"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in SECTIONS:
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions, so Config() and
        Config.load() of an empty file are identical.

        Raises:
            ValueError: If the file cannot be parsed or a value is invalid.
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f).unwrap()
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        config = cls(
            device=_load_section(DeviceConfig, data.get("device", {})),
            sampling=_load_section(SamplingConfig, data.get("sampling", {})),
            filter=_load_section(FilterConfig, data.get("filter", {})),
            leak=_load_section(LeakConfig, data.get("leak", {})),
            system=_load_section(SystemConfig, data.get("system", {})),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Check cross-field constraints.

        Raises:
            ValueError: Naming the first offending key.
        """
        if self.device.backend not in VALID_BACKENDS:
            raise ValueError(
                f"Invalid device.backend: {self.device.backend!r}. "
                f"Must be one of {sorted(VALID_BACKENDS)}"
            )
        if self.device.single_core_dmips <= 0:
            raise ValueError(
                f"device.single_core_dmips must be > 0, got {self.device.single_core_dmips}"
            )
        s = self.sampling
        method = CollectionMethod.parse(s.cpu_method)
        if method is CollectionMethod.DUMPSYS and self.device.backend == "local":
            raise ValueError("sampling.cpu_method 'dumpsys' requires device.backend 'adb'")
        for key in ("duration_minutes", "cpu_interval", "mem_interval", "alive_check_interval"):
            value = getattr(s, key)
            if value <= 0:
                raise ValueError(f"sampling.{key} must be > 0, got {value}")
        if s.absence_grace_seconds < 0:
            raise ValueError(
                f"sampling.absence_grace_seconds must be >= 0, got {s.absence_grace_seconds}"
            )

        f = self.filter
        if f.min_cpu_percent < 0:
            raise ValueError(f"filter.min_cpu_percent must be >= 0, got {f.min_cpu_percent}")
        if f.window_min_ms < 0:
            raise ValueError(f"filter.window_min_ms must be >= 0, got {f.window_min_ms}")
        if f.window_min_ms > f.window_max_ms:
            raise ValueError(
                f"filter.window_min_ms ({f.window_min_ms}) must be <= "
                f"filter.window_max_ms ({f.window_max_ms})"
            )

        if self.leak.leak_threshold < 0:
            raise ValueError(f"leak.leak_threshold must be >= 0, got {self.leak.leak_threshold}")
        if self.leak.decline_threshold < 0:
            raise ValueError(
                f"leak.decline_threshold must be >= 0, got {self.leak.decline_threshold}"
            )


def _load_section(cls: type, data: dict):
    """Build a section dataclass from TOML data, using dataclass defaults for missing keys.

    Unknown keys are ignored so older config files keep loading.
    """
    defaults = cls()
    kwargs = {}
    for f in fields(cls):
        value = data.get(f.name, getattr(defaults, f.name))
        default = getattr(defaults, f.name)
        # TOML ints are valid for float fields
        if isinstance(default, float) and isinstance(value, int) and not isinstance(value, bool):
            value = float(value)
        kwargs[f.name] = value
    return cls(**kwargs)
