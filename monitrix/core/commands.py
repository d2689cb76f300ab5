"""Bounded execution of optional external tools (nvidia-smi, lspci, ip...)."""

from __future__ import annotations

import enum
import logging
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Sequence

logger = logging.getLogger(__name__)

_POLL_SLICE = 0.1  # seconds between cancellation checks


class CommandOutcome(enum.Enum):
    OK = "ok"
    NON_ZERO_EXIT = "non_zero_exit"
    NOT_FOUND = "not_found"
    SPAWN_FAILED = "spawn_failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class CommandResult:
    args: tuple[str, ...]
    outcome: CommandOutcome
    stdout: str = ""
    stderr: str = ""
    returncode: int | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is CommandOutcome.OK

    def describe(self) -> str:
        name = self.args[0] if self.args else "<empty>"
        if self.outcome is CommandOutcome.NON_ZERO_EXIT:
            return f"{name} exited with status {self.returncode}"
        return f"{name}: {self.outcome.value}"


class CommandRunner:
    """Runs a command with a hard timeout and optional cancellation.

    Every failure mode is reported through :class:`CommandResult` instead of
    an exception so that probe chains can move on to the next fallback.
    """

    def __init__(self, default_timeout: float = 5.0) -> None:
        self.default_timeout = default_timeout

    def run(
        self,
        args: Sequence[str],
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> CommandResult:
        argv = tuple(args)
        limit = self.default_timeout if timeout is None else timeout
        if cancel is not None and cancel.is_set():
            return CommandResult(args=argv, outcome=CommandOutcome.CANCELLED)

        try:
            proc = subprocess.Popen(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
            )
        except FileNotFoundError:
            logger.debug("Command %s not found", argv[0])
            return CommandResult(args=argv, outcome=CommandOutcome.NOT_FOUND)
        except OSError as exc:
            logger.debug("Could not start %s: %s", argv[0], exc)
            return CommandResult(args=argv, outcome=CommandOutcome.SPAWN_FAILED, stderr=str(exc))

        deadline = time.monotonic() + limit
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._kill(proc)
                logger.debug("Command %s timed out after %.1fs", argv[0], limit)
                return CommandResult(args=argv, outcome=CommandOutcome.TIMEOUT)
            if cancel is not None and cancel.is_set():
                self._kill(proc)
                return CommandResult(args=argv, outcome=CommandOutcome.CANCELLED)
            try:
                stdout, stderr = proc.communicate(timeout=min(_POLL_SLICE, remaining))
            except subprocess.TimeoutExpired:
                continue
            break

        if proc.returncode != 0:
            logger.debug("Command %s exited with %s", argv[0], proc.returncode)
            return CommandResult(
                args=argv,
                outcome=CommandOutcome.NON_ZERO_EXIT,
                stdout=stdout,
                stderr=stderr,
                returncode=proc.returncode,
            )
        return CommandResult(
            args=argv,
            outcome=CommandOutcome.OK,
            stdout=stdout,
            stderr=stderr,
            returncode=0,
        )

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        proc.kill()
        try:
            proc.communicate(timeout=1.0)
        except subprocess.TimeoutExpired:  # pragma: no cover - unkillable child
            logger.warning("Child process %s did not exit after kill", proc.pid)
