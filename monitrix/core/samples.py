"""Previous-observation storage for the delta-based collectors."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field

CPU_TICK_FIELDS = ("user", "nice", "system", "idle", "iowait", "irq", "softirq")


@dataclass(slots=True, frozen=True)
class CpuCounterSample:
    """One read of the kernel tick table: label -> 7 cumulative counters."""

    counters: dict[str, tuple[int, ...]]
    timestamp: float

    def get(self, label: str) -> tuple[int, ...] | None:
        return self.counters.get(label)


@dataclass(slots=True, frozen=True)
class ProcessSample:
    pid: int
    user_ticks: int
    system_ticks: int
    timestamp: float
    start_ticks: int | None = None  # process start time, detects pid reuse

    @property
    def total_ticks(self) -> int:
        return self.user_ticks + self.system_ticks


@dataclass
class SampleCache:
    """Owned by one engine instance; each cache is guarded by its own lock.

    Collectors must hold ``cpu_lock``/``process_lock`` for the whole
    read-previous, compute, write-current sequence.
    """

    cpu: CpuCounterSample | None = None
    processes: dict[int, ProcessSample] = field(default_factory=dict)
    cpu_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    process_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def clear(self) -> None:
        with self.cpu_lock:
            self.cpu = None
        with self.process_lock:
            self.processes = {}
