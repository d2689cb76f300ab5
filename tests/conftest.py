from __future__ import annotations

import socket
from collections import namedtuple
from pathlib import Path

import pytest

from monitrix.core.commands import CommandOutcome, CommandResult, CommandRunner
from monitrix.core.config import EngineConfig

Address = namedtuple("Address", "family address netmask broadcast ptp")


class FakeRunner(CommandRunner):
    """Answers commands from a table instead of spawning processes.

    Keys are either the full argv tuple or just the program name; values are
    stdout strings (successful run) or ready-made :class:`CommandResult`.
    """

    def __init__(self, responses: dict | None = None) -> None:
        super().__init__(default_timeout=1.0)
        self.responses = dict(responses or {})
        self.calls: list[tuple[str, ...]] = []

    def run(self, args, timeout=None, cancel=None):
        argv = tuple(args)
        self.calls.append(argv)
        if cancel is not None and cancel.is_set():
            return CommandResult(args=argv, outcome=CommandOutcome.CANCELLED)
        value = self.responses.get(argv, self.responses.get(argv[0]))
        if value is None:
            return CommandResult(args=argv, outcome=CommandOutcome.NOT_FOUND)
        if isinstance(value, str):
            return CommandResult(args=argv, outcome=CommandOutcome.OK, stdout=value, returncode=0)
        return value

    def called(self, program: str) -> bool:
        return any(call[0] == program for call in self.calls)


class ManualClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def write(path: Path, content: str | bytes) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, bytes):
        path.write_bytes(content)
    else:
        path.write_text(content)
    return path


def ipv4(address: str) -> Address:
    return Address(socket.AF_INET, address, "255.255.255.0", None, None)


def ipv6(address: str) -> Address:
    return Address(socket.AF_INET6, address, "ffff:ffff:ffff:ffff::", None, None)


@pytest.fixture
def roots(tmp_path: Path) -> tuple[Path, Path]:
    proc_root = tmp_path / "proc"
    sys_root = tmp_path / "sys"
    proc_root.mkdir()
    sys_root.mkdir()
    return proc_root, sys_root


@pytest.fixture
def config(roots: tuple[Path, Path]) -> EngineConfig:
    proc_root, sys_root = roots
    return EngineConfig(proc_root=proc_root, sys_root=sys_root, cpu_bootstrap_delay=0.05)


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()
