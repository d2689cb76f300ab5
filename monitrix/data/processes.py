"""Process list collection with per-process CPU deltas."""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from monitrix.core.config import CONFIG, EngineConfig
from monitrix.core.errors import CollectionCancelled
from monitrix.core.samples import ProcessSample, SampleCache
from monitrix.models import ProcessInfo

from ._sysfs import read_key_values, read_lines
from .memory import RamCollector

logger = logging.getLogger(__name__)

# Offsets into the fields that follow "pid (comm) " in /proc/<pid>/stat.
_UTIME = 11
_STIME = 12
_STARTTIME = 19


@dataclass(slots=True, frozen=True)
class ProcessStat:
    user_ticks: int
    system_ticks: int
    start_ticks: int | None


def parse_process_stat(content: str) -> ProcessStat | None:
    """Parse /proc/<pid>/stat; ``comm`` may contain spaces and parentheses."""

    end = content.rfind(")")
    if end < 0:
        return None
    fields = content[end + 1 :].split()
    if len(fields) <= _STIME:
        return None
    try:
        start = int(fields[_STARTTIME]) if len(fields) > _STARTTIME else None
        return ProcessStat(
            user_ticks=int(fields[_UTIME]),
            system_ticks=int(fields[_STIME]),
            start_ticks=start,
        )
    except ValueError:
        return None


def process_cpu_percent(
    previous: ProcessSample | None,
    current: ProcessSample,
    ticks_per_second: int,
) -> float:
    """CPU share since ``previous``; 0 when there is nothing valid to diff against."""

    if previous is None:
        return 0.0
    if (
        previous.start_ticks is not None
        and current.start_ticks is not None
        and previous.start_ticks != current.start_ticks
    ):
        return 0.0  # pid was reused by a new process
    tick_diff = current.total_ticks - previous.total_ticks
    if tick_diff < 0:
        return 0.0
    elapsed = current.timestamp - previous.timestamp
    if elapsed <= 0:
        return 0.0
    usage = (tick_diff / ticks_per_second) / elapsed * 100.0
    return max(0.0, min(100.0, usage))


class ProcessCollector:
    """Enumerates /proc and reports name, RSS and CPU share per process."""

    def __init__(
        self,
        cache: SampleCache,
        config: EngineConfig = CONFIG,
        ram: RamCollector | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cache = cache
        self._config = config
        self._ram = ram
        self._clock = clock

    def _pids(self) -> list[int]:
        try:
            names = os.listdir(self._config.proc_root)
        except OSError:
            logger.warning("Proc filesystem not found at %s", self._config.proc_root)
            return []
        return sorted(int(name) for name in names if name.isdigit())

    @staticmethod
    def _read_name(proc_dir: Path, pid: int, status: dict[str, str]) -> str:
        try:
            cmdline = (proc_dir / "cmdline").read_bytes()
        except OSError:
            cmdline = b""
        args = [arg for arg in cmdline.split(b"\0") if arg]
        if args:
            command = os.path.basename(args[0].decode("utf-8", errors="replace"))
            if command:
                return command
        name = status.get("Name")
        if name:
            return name
        return f"Process {pid}"

    @staticmethod
    def _rss_kb(status: dict[str, str]) -> int:
        raw = status.get("VmRSS")
        if not raw:
            return 0
        try:
            return int(raw.split()[0])
        except (IndexError, ValueError):
            return 0

    def _read_process(
        self,
        pid: int,
        previous: dict[int, ProcessSample],
        current: dict[int, ProcessSample],
        total_kb: int,
    ) -> ProcessInfo | None:
        proc_dir = self._config.proc_root / str(pid)
        try:
            stat_content = (proc_dir / "stat").read_text(encoding="utf-8", errors="replace")
        except OSError:
            return None  # exited or not readable
        stat = parse_process_stat(stat_content)
        if stat is None:
            logger.debug("Malformed stat for PID %s", pid)
            return None

        status_lines = read_lines(proc_dir / "status") or []
        status = read_key_values(status_lines)

        sample = ProcessSample(
            pid=pid,
            user_ticks=stat.user_ticks,
            system_ticks=stat.system_ticks,
            timestamp=self._clock(),
            start_ticks=stat.start_ticks,
        )
        current[pid] = sample
        cpu_percent = process_cpu_percent(
            previous.get(pid), sample, self._config.clock_ticks_per_second
        )

        rss_kb = self._rss_kb(status)
        return ProcessInfo(
            pid=pid,
            name=self._read_name(proc_dir, pid, status),
            cpu_percent=cpu_percent,
            memory_mb=rss_kb / 1024.0,
            memory_percent=(rss_kb / total_kb * 100.0) if total_kb else None,
        )

    def list_processes(self, cancel: threading.Event | None = None) -> list[ProcessInfo]:
        total_kb = self._ram.total_kb() if self._ram is not None else 0
        processes: list[ProcessInfo] = []

        with self._cache.process_lock:
            previous = self._cache.processes
            current: dict[int, ProcessSample] = {}
            for pid in self._pids():
                if cancel is not None and cancel.is_set():
                    raise CollectionCancelled("Process listing cancelled")
                info = self._read_process(pid, previous, current, total_kb)
                if info is None:
                    logger.debug("Skipping PID %s: process vanished or is unreadable", pid)
                    continue
                processes.append(info)
            self._cache.processes = current

        processes.sort(key=lambda p: (p.cpu_percent, p.memory_mb), reverse=True)
        return processes
