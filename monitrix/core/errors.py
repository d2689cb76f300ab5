"""Exception types and probe outcomes used across the collectors."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Generic, TypeVar

T = TypeVar("T")


class TelemetryError(Exception):
    """Base class for every error raised by the engine."""


class SourceUnavailableError(TelemetryError):
    """A mandatory data source could not be read at all."""

    def __init__(self, source: str, reason: str) -> None:
        super().__init__(f"{source}: {reason}")
        self.source = source
        self.reason = reason


class CollectionCancelled(TelemetryError):
    """The caller cancelled the collection before it completed."""


class ProbeStatus(enum.Enum):
    OK = "ok"
    UNAVAILABLE = "unavailable"


@dataclass(slots=True)
class ProbeOutcome(Generic[T]):
    """Result of a single detection strategy: either items or a reason."""

    status: ProbeStatus
    items: list[T] = field(default_factory=list)
    reason: str | None = None
    source: str | None = None

    @classmethod
    def ok(cls, items: list[T], source: str | None = None) -> "ProbeOutcome[T]":
        return cls(status=ProbeStatus.OK, items=list(items), source=source)

    @classmethod
    def unavailable(cls, reason: str, source: str | None = None) -> "ProbeOutcome[T]":
        return cls(status=ProbeStatus.UNAVAILABLE, reason=reason, source=source)

    @property
    def is_ok(self) -> bool:
        return self.status is ProbeStatus.OK
