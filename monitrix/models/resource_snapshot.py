"""Dataclasses representing resource usage snapshots."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import ClassVar

from .process_info import ProcessInfo

UNKNOWN = "Unknown"


@dataclass(slots=True)
class CpuIdentity:
    architecture: str = UNKNOWN
    model_name: str = ""
    vendor_id: str = ""
    core_count: int = 0
    thread_count: int = 0
    hyper_threading: bool = field(init=False, default=False)

    def __post_init__(self) -> None:
        self.hyper_threading = self.thread_count > self.core_count


@dataclass(slots=True)
class CpuUtilization:
    max_frequency_mhz: float = 0.0
    current_frequency_mhz: float = 0.0
    usage_percent: float = 0.0
    per_core_usage_percent: list[float] = field(default_factory=list)
    per_core_frequency_mhz: list[float] = field(default_factory=list)


@dataclass(slots=True)
class CpuSnapshot:
    identity: CpuIdentity
    utilization: CpuUtilization


@dataclass(slots=True)
class MemoryUsage:
    derived_fields: ClassVar[tuple[str, ...]] = ("used_percent", "free_percent")

    total_bytes: int = 0
    used_bytes: int = 0
    free_bytes: int = 0

    @property
    def used_percent(self) -> float:
        return self.used_bytes / self.total_bytes * 100.0 if self.total_bytes else 0.0

    @property
    def free_percent(self) -> float:
        return self.free_bytes / self.total_bytes * 100.0 if self.total_bytes else 0.0


@dataclass(slots=True)
class NetworkInterface:
    name: str
    ip_addresses: list[str] = field(default_factory=list)
    mac_address: str = UNKNOWN
    status: str = UNKNOWN  # Up, Down, Connected, Disconnected, Dormant, Unknown
    speed_mbs: int = 0


@dataclass(slots=True)
class GpuDevice:
    model: str
    vendor: str = UNKNOWN  # NVIDIA, AMD, Intel, Unknown
    memory_mb: int = 0
    core_count: int = 0


@dataclass(slots=True)
class GpuUtilization:
    derived_fields: ClassVar[tuple[str, ...]] = ("memory_used_percent",)

    model: str
    vendor: str = UNKNOWN
    memory_used_mb: float = 0.0
    memory_free_mb: float = 0.0
    core_usage_percent: float = 0.0

    @property
    def memory_used_percent(self) -> float:
        total = self.memory_used_mb + self.memory_free_mb
        if total <= 0:
            return 0.0
        return self.memory_used_mb / total * 100.0


@dataclass(slots=True)
class GpuSnapshot:
    devices: list[GpuDevice] = field(default_factory=list)
    utilization: list[GpuUtilization] = field(default_factory=list)


@dataclass(slots=True)
class SystemSnapshot:
    """Aggregate result; a section is ``None`` when its collector failed."""

    timestamp: float
    cpu: CpuSnapshot | None
    gpu: GpuSnapshot | None
    memory: MemoryUsage | None
    processes: list[ProcessInfo] | None
    network_interfaces: list[NetworkInterface] | None
