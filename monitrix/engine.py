"""Snapshot orchestration: the single entry point used by callers."""

from __future__ import annotations

import enum
import logging
import threading
import time
from collections import defaultdict
from dataclasses import fields, is_dataclass
from typing import Any, Callable

from monitrix.core.commands import CommandRunner
from monitrix.core.config import CONFIG, EngineConfig
from monitrix.core.errors import CollectionCancelled
from monitrix.core.samples import SampleCache
from monitrix.data import gpu as gpu_module
from monitrix.data.cpu import CpuCollector
from monitrix.data.gpu import GpuCollector
from monitrix.data.memory import RamCollector
from monitrix.data.network import AddressSource, NetworkCollector
from monitrix.data.processes import ProcessCollector
from monitrix.models import (
    CpuSnapshot,
    GpuSnapshot,
    MemoryUsage,
    NetworkInterface,
    ProcessInfo,
    SystemSnapshot,
)

_PRIMITIVE_TYPES = (int, float, str, bool)
logger = logging.getLogger(__name__)

SECTIONS = ("cpu", "memory", "processes", "gpu", "network")


def snapshot_to_dict(snapshot: Any) -> Any:
    """Convert dataclass snapshots into plain serialisable dictionaries."""

    if snapshot is None:
        return None
    if isinstance(snapshot, enum.Enum):
        return snapshot.value
    if isinstance(snapshot, _PRIMITIVE_TYPES):
        return snapshot
    if is_dataclass(snapshot) and not isinstance(snapshot, type):
        data = {f.name: snapshot_to_dict(getattr(snapshot, f.name)) for f in fields(snapshot)}
        for name in getattr(snapshot, "derived_fields", ()):
            data[name] = getattr(snapshot, name)
        return data
    if isinstance(snapshot, dict):
        return {str(key): snapshot_to_dict(value) for key, value in snapshot.items()}
    if isinstance(snapshot, (list, tuple, set)):
        return [snapshot_to_dict(item) for item in snapshot]
    return str(snapshot)


class TelemetryEngine:
    """Owns the sample cache and the five collectors.

    Sections are collected sequentially; a failing collector leaves its
    section as ``None`` in :meth:`collect_snapshot` and is counted in
    :meth:`diagnostics`. The ``collect_*`` methods propagate errors so the
    caller can see fatal conditions such as an unreadable tick table.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        runner: CommandRunner | None = None,
        address_source: AddressSource | None = None,
        nvml: Any = gpu_module.pynvml,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or CONFIG
        self._cache = SampleCache()
        self._runner = runner or CommandRunner(self.config.command_timeout)
        self._lock = threading.RLock()

        self.cpu = CpuCollector(self._cache, self.config, self._runner, clock)
        self.memory = RamCollector(self.config)
        self.processes = ProcessCollector(self._cache, self.config, ram=self.memory, clock=clock)
        if address_source is None:
            self.network = NetworkCollector(self.config, self._runner)
        else:
            self.network = NetworkCollector(self.config, self._runner, address_source)
        self.gpu = GpuCollector(self.config, self._runner, nvml)

        self._diagnostics: dict[str, Any] = {
            "last_run_started": None,
            "last_run_duration": 0.0,
            "last_success_at": None,
            "last_error": None,
        }
        self._section_failures: defaultdict[str, int] = defaultdict(int)

    def __enter__(self) -> "TelemetryEngine":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Drop the previous samples; the next CPU read bootstraps again."""

        self._cache.clear()

    # single sections --------------------------------------------------------

    def collect_cpu(self, cancel: threading.Event | None = None) -> CpuSnapshot:
        return self.cpu.read_snapshot(cancel)

    def collect_memory(self, cancel: threading.Event | None = None) -> MemoryUsage:
        usage = self.memory.read_memory_usage()
        self._check_cancel(cancel)
        return usage

    def collect_processes(self, cancel: threading.Event | None = None) -> list[ProcessInfo]:
        return self.processes.list_processes(cancel)

    def collect_gpu(self, cancel: threading.Event | None = None) -> GpuSnapshot:
        return self.gpu.read_snapshot(cancel)

    def collect_network(self, cancel: threading.Event | None = None) -> list[NetworkInterface]:
        return self.network.list_interfaces(cancel)

    # whole snapshot -------------------------------------------------------

    def collect_section(self, name: str, cancel: threading.Event | None = None) -> Any:
        if name not in SECTIONS:
            raise ValueError(f"Unknown section {name!r}; expected one of {', '.join(SECTIONS)}")
        return getattr(self, f"collect_{name}")(cancel)

    def collect_snapshot(self, cancel: threading.Event | None = None) -> SystemSnapshot:
        """Collect every section; raises :class:`CollectionCancelled` instead of returning partial data."""

        started = time.time()
        start_time = time.perf_counter()
        results: dict[str, Any] = {}
        for name in SECTIONS:
            self._check_cancel(cancel)
            results[name] = self._safe_call(name, cancel)
        self._check_cancel(cancel)

        duration = time.perf_counter() - start_time
        with self._lock:
            self._diagnostics["last_run_started"] = started
            self._diagnostics["last_run_duration"] = duration
            if all(results[name] is not None for name in SECTIONS):
                self._diagnostics["last_success_at"] = time.time()

        return SystemSnapshot(
            timestamp=started,
            cpu=results["cpu"],
            gpu=results["gpu"],
            memory=results["memory"],
            processes=results["processes"],
            network_interfaces=results["network"],
        )

    def diagnostics(self) -> dict[str, Any]:
        with self._lock:
            return {
                **self._diagnostics,
                "section_failures": dict(self._section_failures),
            }

    @staticmethod
    def _check_cancel(cancel: threading.Event | None) -> None:
        if cancel is not None and cancel.is_set():
            raise CollectionCancelled("Snapshot collection cancelled")

    def _safe_call(self, key: str, cancel: threading.Event | None) -> Any:
        try:
            return self.collect_section(key, cancel)
        except CollectionCancelled:
            raise
        except Exception as exc:
            logger.exception("Collector '%s' failed during snapshot collection", key)
            with self._lock:
                self._section_failures[key] += 1
                self._diagnostics["last_error"] = {
                    "section": key,
                    "message": str(exc),
                    "type": exc.__class__.__name__,
                    "timestamp": time.time(),
                }
            return None


SnapshotAggregator = TelemetryEngine
