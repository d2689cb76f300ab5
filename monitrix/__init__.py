"""Monitrix host telemetry engine."""

from __future__ import annotations

__all__ = [
    "SnapshotAggregator",
    "TelemetryEngine",
    "core",
    "data",
    "models",
    "snapshot_to_dict",
]

from .engine import SnapshotAggregator, TelemetryEngine, snapshot_to_dict  # noqa: E402
