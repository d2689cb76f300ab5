from __future__ import annotations

from pathlib import Path

from monitrix.core.config import CONFIG, EngineConfig


def test_defaults():
    assert CONFIG.proc_root == Path("/proc")
    assert CONFIG.sys_root == Path("/sys")
    assert CONFIG.command_timeout == 5.0
    assert CONFIG.clock_ticks_per_second == 100
    assert CONFIG.excluded_interfaces == ("lo",)


def test_from_env_overrides():
    config = EngineConfig.from_env(
        {
            "MONITRIX_PROC_ROOT": "/srv/host/proc",
            "MONITRIX_SYS_ROOT": "/srv/host/sys",
            "MONITRIX_COMMAND_TIMEOUT": "2.5",
            "MONITRIX_CPU_BOOTSTRAP_DELAY": "0",
        }
    )
    assert config.proc_root == Path("/srv/host/proc")
    assert config.sys_root == Path("/srv/host/sys")
    assert config.command_timeout == 2.5
    assert config.cpu_bootstrap_delay == 0.0


def test_from_env_ignores_bad_values(caplog):
    config = EngineConfig.from_env(
        {"MONITRIX_COMMAND_TIMEOUT": "soon", "MONITRIX_CPU_BOOTSTRAP_DELAY": "-1"}
    )
    assert config.command_timeout == 5.0
    assert config.cpu_bootstrap_delay == 1.0
    assert "MONITRIX_COMMAND_TIMEOUT" in caplog.text
    assert "must not be negative" in caplog.text


def test_as_dict():
    data = EngineConfig().as_dict()
    assert data["ethernet_fallback_speed_mbs"] == 12
    assert set(data) >= {"proc_root", "sys_root", "command_timeout"}
