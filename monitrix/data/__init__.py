"""Data collectors reading procfs, sysfs and vendor tools."""

from .cpu import CpuCollector, compute_usage_percent, parse_cpuinfo, parse_proc_stat
from .gpu import GpuCollector
from .memory import RamCollector, parse_meminfo
from .network import NetworkCollector, parse_ip_addr_output
from .processes import ProcessCollector, parse_process_stat, process_cpu_percent

__all__ = [
    "CpuCollector",
    "GpuCollector",
    "NetworkCollector",
    "ProcessCollector",
    "RamCollector",
    "compute_usage_percent",
    "parse_cpuinfo",
    "parse_ip_addr_output",
    "parse_meminfo",
    "parse_proc_stat",
    "parse_process_stat",
    "process_cpu_percent",
]
