"""Process data structures."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class ProcessInfo:
    pid: int
    name: str
    cpu_percent: float = 0.0
    memory_mb: float = 0.0
    memory_percent: float | None = None
