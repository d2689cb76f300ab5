"""Memory data collection."""

from __future__ import annotations

import logging
from typing import Sequence

from monitrix.core.config import CONFIG, EngineConfig
from monitrix.models import MemoryUsage

from ._sysfs import read_lines

logger = logging.getLogger(__name__)

_FIELDS = ("MemTotal", "MemFree", "MemAvailable", "Buffers", "Cached")


def parse_meminfo(lines: Sequence[str]) -> dict[str, int]:
    """Return the interesting /proc/meminfo fields in kB."""

    values: dict[str, int] = {}
    for line in lines:
        key, sep, raw = line.partition(":")
        if not sep or key.strip() not in _FIELDS:
            continue
        raw = raw.strip()
        if raw.endswith("kB"):
            raw = raw[:-2].strip()
        try:
            values[key.strip()] = int(raw)
        except ValueError:
            logger.debug("Skipping malformed meminfo line %r", line)
    return values


def memory_usage_from_meminfo(values: dict[str, int]) -> MemoryUsage:
    total_kb = values.get("MemTotal", 0)
    available_kb = values.get("MemAvailable", 0)
    if available_kb > 0:
        free_kb = available_kb
    else:
        free_kb = values.get("MemFree", 0) + values.get("Buffers", 0) + values.get("Cached", 0)
    free_kb = min(free_kb, total_kb)

    total_bytes = total_kb * 1024
    free_bytes = free_kb * 1024
    return MemoryUsage(
        total_bytes=total_bytes,
        used_bytes=total_bytes - free_bytes,
        free_bytes=free_bytes,
    )


class RamCollector:
    def __init__(self, config: EngineConfig = CONFIG) -> None:
        self._config = config

    def read_memory_usage(self) -> MemoryUsage:
        path = self._config.proc_root / "meminfo"
        lines = read_lines(path)
        if lines is None:
            logger.warning("Memory info file not found at %s", path)
            return MemoryUsage()
        values = parse_meminfo(lines)
        if "MemTotal" not in values:
            logger.warning("Memory info at %s has no MemTotal field", path)
            return MemoryUsage()
        return memory_usage_from_meminfo(values)

    def total_kb(self) -> int:
        lines = read_lines(self._config.proc_root / "meminfo")
        if lines is None:
            return 0
        return parse_meminfo(lines).get("MemTotal", 0)
