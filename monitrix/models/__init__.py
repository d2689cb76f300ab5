"""Data models exposed by Monitrix."""

from .process_info import ProcessInfo
from .resource_snapshot import (
    UNKNOWN,
    CpuIdentity,
    CpuSnapshot,
    CpuUtilization,
    GpuDevice,
    GpuSnapshot,
    GpuUtilization,
    MemoryUsage,
    NetworkInterface,
    SystemSnapshot,
)

__all__ = [
    "UNKNOWN",
    "CpuIdentity",
    "CpuSnapshot",
    "CpuUtilization",
    "GpuDevice",
    "GpuSnapshot",
    "GpuUtilization",
    "MemoryUsage",
    "NetworkInterface",
    "ProcessInfo",
    "SystemSnapshot",
]
