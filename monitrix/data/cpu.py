"""CPU identity and utilization collection from /proc and sysfs."""

from __future__ import annotations

import logging
import platform
import re
import statistics
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Sequence

import psutil

from monitrix.core.commands import CommandRunner
from monitrix.core.config import CONFIG, EngineConfig
from monitrix.core.errors import CollectionCancelled, SourceUnavailableError
from monitrix.core.samples import CPU_TICK_FIELDS, CpuCounterSample, SampleCache
from monitrix.models import UNKNOWN, CpuIdentity, CpuSnapshot, CpuUtilization

from ._sysfs import list_dirs, read_float, read_lines, read_text

logger = logging.getLogger(__name__)

_CPU_DIR_RE = re.compile(r"^cpu(\d+)$")
_TICK_COUNT = len(CPU_TICK_FIELDS)
_IDLE_INDEX = CPU_TICK_FIELDS.index("idle")
_IOWAIT_INDEX = CPU_TICK_FIELDS.index("iowait")

_VENDOR_FAMILY_PREFIX = {
    "GenuineIntel": "Intel Family",
    "AuthenticAMD": "AMD Family",
}


@dataclass(slots=True)
class CpuInfoTable:
    """The fields of /proc/cpuinfo the collector cares about."""

    model_name: str = ""
    vendor_id: str = ""
    family: str = ""
    thread_count: int = 0
    core_pairs: set[tuple[str, str]] = field(default_factory=set)
    mhz: list[float] = field(default_factory=list)

    @property
    def architecture(self) -> str | None:
        if not self.family:
            return None
        prefix = _VENDOR_FAMILY_PREFIX.get(self.vendor_id, "Family")
        return f"{prefix} {self.family}"


def parse_cpuinfo(lines: Sequence[str]) -> CpuInfoTable:
    """Parse /proc/cpuinfo; the first ``model name``/``vendor_id`` win."""

    table = CpuInfoTable()
    physical_id: str | None = None
    for line in lines:
        key, sep, value = line.partition(":")
        if not sep:
            continue
        key = key.strip()
        value = value.strip()
        if key == "processor":
            physical_id = None
            try:
                table.thread_count = max(table.thread_count, int(value) + 1)
            except ValueError:
                logger.debug("Ignoring malformed processor index %r", value)
        elif key == "model name":
            table.model_name = table.model_name or value
        elif key == "vendor_id":
            table.vendor_id = table.vendor_id or value
        elif key == "cpu family":
            table.family = table.family or value
        elif key == "physical id":
            physical_id = value
        elif key == "core id":
            if physical_id is not None:
                table.core_pairs.add((physical_id, value))
        elif key == "cpu MHz":
            try:
                table.mhz.append(float(value))
            except ValueError:
                logger.debug("Ignoring malformed cpu MHz %r", value)
    return table


def parse_proc_stat(lines: Sequence[str]) -> dict[str, tuple[int, ...]]:
    """Extract the 7 tick counters of every ``cpu``/``cpuN`` line."""

    counters: dict[str, tuple[int, ...]] = {}
    for line in lines:
        if not line.startswith("cpu"):
            continue
        parts = line.split()
        if len(parts) < _TICK_COUNT + 1:
            continue
        try:
            counters[parts[0]] = tuple(int(value) for value in parts[1 : _TICK_COUNT + 1])
        except ValueError:
            logger.debug("Skipping malformed tick line %r", line)
    return counters


def compute_usage_percent(
    previous: Sequence[int] | None, current: Sequence[int] | None
) -> float:
    """Busy share of the ticks elapsed between two samples, clamped to [0, 100]."""

    if previous is None or current is None:
        return 0.0
    total_diff = sum(current) - sum(previous)
    if total_diff <= 0:
        return 0.0
    idle_diff = (current[_IDLE_INDEX] + current[_IOWAIT_INDEX]) - (
        previous[_IDLE_INDEX] + previous[_IOWAIT_INDEX]
    )
    usage = (total_diff - idle_diff) / total_diff * 100.0
    return max(0.0, min(100.0, usage))


class CpuCollector:
    """Reads CPU topology and computes utilization from tick deltas."""

    def __init__(
        self,
        cache: SampleCache,
        config: EngineConfig = CONFIG,
        runner: CommandRunner | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cache = cache
        self._config = config
        self._runner = runner or CommandRunner(config.command_timeout)
        self._clock = clock

    @property
    def _cpuinfo_path(self) -> Path:
        return self._config.proc_root / "cpuinfo"

    @property
    def _stat_path(self) -> Path:
        return self._config.proc_root / "stat"

    @property
    def _cpu_sys_dir(self) -> Path:
        return self._config.sys_root / "devices" / "system" / "cpu"

    # identity -------------------------------------------------------------

    def _read_cpuinfo(self) -> CpuInfoTable:
        lines = read_lines(self._cpuinfo_path)
        if lines is None:
            logger.warning("CPU info file not found at %s", self._cpuinfo_path)
            return CpuInfoTable()
        return parse_cpuinfo(lines)

    def _cpu_dirs(self) -> list[Path]:
        dirs = [entry for entry in list_dirs(self._cpu_sys_dir) if _CPU_DIR_RE.match(entry.name)]
        return sorted(dirs, key=lambda entry: int(entry.name[3:]))

    def _core_count_from_topology(self) -> int:
        cpu_dirs = self._cpu_dirs()
        pairs: set[tuple[str, str]] = set()
        for cpu_dir in cpu_dirs:
            core_id = read_text(cpu_dir / "topology" / "core_id")
            package_id = read_text(cpu_dir / "topology" / "physical_package_id")
            if core_id is not None and package_id is not None:
                pairs.add((package_id, core_id))
        return len(pairs) if pairs else len(cpu_dirs)

    def _thread_count_fallback(self) -> int:
        count = len(self._cpu_dirs())
        if count:
            return count
        return psutil.cpu_count(logical=True) or 0

    def _architecture_fallback(self, cancel: threading.Event | None) -> str:
        result = self._runner.run(["uname", "-m"], cancel=cancel)
        if result.ok and result.stdout.strip():
            return result.stdout.strip()
        logger.debug("Could not get architecture from uname: %s", result.describe())
        return platform.machine() or UNKNOWN

    def read_identity(self, cancel: threading.Event | None = None) -> CpuIdentity:
        table = self._read_cpuinfo()

        thread_count = table.thread_count or self._thread_count_fallback()
        core_count = len(table.core_pairs)
        if not core_count:
            core_count = self._core_count_from_topology() or thread_count
        if thread_count:
            core_count = min(core_count, thread_count)

        architecture = table.architecture or self._architecture_fallback(cancel)
        if cancel is not None and cancel.is_set():
            raise CollectionCancelled("CPU identity collection cancelled")

        return CpuIdentity(
            architecture=architecture,
            model_name=table.model_name,
            vendor_id=table.vendor_id,
            core_count=core_count,
            thread_count=thread_count,
        )

    # utilization ----------------------------------------------------------

    def _read_counters(self) -> CpuCounterSample:
        lines = read_lines(self._stat_path)
        if lines is None:
            raise SourceUnavailableError(str(self._stat_path), "tick-counter table is unreadable")
        counters = parse_proc_stat(lines)
        if "cpu" not in counters:
            raise SourceUnavailableError(str(self._stat_path), "no aggregate cpu line")
        return CpuCounterSample(counters=counters, timestamp=self._clock())

    def _wait_for_bootstrap(self, cancel: threading.Event | None) -> None:
        delay = self._config.cpu_bootstrap_delay
        logger.debug("No previous CPU sample, taking a second one in %.2fs", delay)
        if cancel is None:
            time.sleep(delay)
        elif cancel.wait(delay):
            raise CollectionCancelled("CPU bootstrap sampling cancelled")

    def _frequencies(self) -> tuple[float, float, list[float]]:
        per_core: list[float] = []
        max_values: list[float] = []
        for cpu_dir in self._cpu_dirs():
            freq_dir = cpu_dir / "cpufreq"
            current = read_float(freq_dir / "scaling_cur_freq", scale=1000)
            if current is not None:
                per_core.append(current)
            maximum = read_float(freq_dir / "cpuinfo_max_freq", scale=1000)
            if maximum is None:
                maximum = read_float(freq_dir / "scaling_max_freq", scale=1000)
            if maximum is not None:
                max_values.append(maximum)

        current_mhz = statistics.fmean(per_core) if per_core else 0.0
        max_mhz = max(max_values) if max_values else 0.0
        if current_mhz and max_mhz:
            return max_mhz, current_mhz, per_core

        advertised = self._read_cpuinfo().mhz
        if advertised:
            current_mhz = current_mhz or statistics.fmean(advertised)
            max_mhz = max_mhz or max(advertised)
        return max_mhz, current_mhz, per_core

    def read_utilization(self, cancel: threading.Event | None = None) -> CpuUtilization:
        with self._cache.cpu_lock:
            current = self._read_counters()
            previous = self._cache.cpu
            if previous is None:
                self._wait_for_bootstrap(cancel)
                previous, current = current, self._read_counters()

            total = compute_usage_percent(previous.get("cpu"), current.get("cpu"))
            per_core: list[float] = []
            index = 0
            while f"cpu{index}" in current.counters:
                label = f"cpu{index}"
                per_core.append(compute_usage_percent(previous.get(label), current.get(label)))
                index += 1
            self._cache.cpu = current

        max_mhz, current_mhz, per_core_mhz = self._frequencies()
        return CpuUtilization(
            max_frequency_mhz=max_mhz,
            current_frequency_mhz=current_mhz,
            usage_percent=total,
            per_core_usage_percent=per_core,
            per_core_frequency_mhz=per_core_mhz,
        )

    def read_snapshot(self, cancel: threading.Event | None = None) -> CpuSnapshot:
        identity = self.read_identity(cancel)
        utilization = self.read_utilization(cancel)
        return CpuSnapshot(identity=identity, utilization=utilization)
