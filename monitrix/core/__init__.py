"""Core utilities for the Monitrix telemetry engine."""

from __future__ import annotations

from .commands import CommandOutcome, CommandResult, CommandRunner
from .config import APP_NAME, CONFIG, EngineConfig
from .errors import (
    CollectionCancelled,
    ProbeOutcome,
    ProbeStatus,
    SourceUnavailableError,
    TelemetryError,
)
from .samples import CpuCounterSample, ProcessSample, SampleCache

__all__ = [
    "APP_NAME",
    "CONFIG",
    "CollectionCancelled",
    "CommandOutcome",
    "CommandResult",
    "CommandRunner",
    "CpuCounterSample",
    "EngineConfig",
    "ProbeOutcome",
    "ProbeStatus",
    "ProcessSample",
    "SampleCache",
    "SourceUnavailableError",
    "TelemetryError",
]
