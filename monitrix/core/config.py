"""Global configuration values for the Monitrix telemetry engine."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineConfig:
    """Paths, timeouts and policies shared by every collector."""

    proc_root: Path = Path("/proc")
    sys_root: Path = Path("/sys")
    command_timeout: float = 5.0  # seconds, applies to every external tool
    cpu_bootstrap_delay: float = 1.0  # seconds between the two first CPU samples
    clock_ticks_per_second: int = 100
    excluded_interfaces: tuple[str, ...] = ("lo",)
    excluded_interface_prefixes: tuple[str, ...] = ("docker", "veth")
    ethernet_fallback_speed_mbs: int = 12  # 100 Mbps / 8, rounded down

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "EngineConfig":
        """Build a config from ``MONITRIX_*`` environment variables."""

        env = os.environ if environ is None else environ
        overrides: dict[str, object] = {}
        if env.get("MONITRIX_PROC_ROOT"):
            overrides["proc_root"] = Path(env["MONITRIX_PROC_ROOT"])
        if env.get("MONITRIX_SYS_ROOT"):
            overrides["sys_root"] = Path(env["MONITRIX_SYS_ROOT"])
        for key, name in (
            ("MONITRIX_COMMAND_TIMEOUT", "command_timeout"),
            ("MONITRIX_CPU_BOOTSTRAP_DELAY", "cpu_bootstrap_delay"),
        ):
            raw = env.get(key)
            if not raw:
                continue
            try:
                value = float(raw)
            except ValueError:
                logger.warning("Ignoring %s=%r: not a number", key, raw)
                continue
            if value < 0:
                logger.warning("Ignoring %s=%r: must not be negative", key, raw)
                continue
            overrides[name] = value
        return cls(**overrides)

    def as_dict(self) -> dict[str, object]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


APP_NAME = "Monitrix"
CONFIG = EngineConfig()
