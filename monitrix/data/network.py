"""Network interface enumeration from /sys/class/net."""

from __future__ import annotations

import ipaddress
import logging
import socket
import threading
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

import psutil

from monitrix.core.commands import CommandRunner
from monitrix.core.config import CONFIG, EngineConfig
from monitrix.core.errors import CollectionCancelled
from monitrix.models import UNKNOWN, NetworkInterface

from ._sysfs import list_dirs, read_int, read_text

logger = logging.getLogger(__name__)

AddressSource = Callable[[], Mapping[str, Iterable[Any]]]

_OPERSTATE_LABELS = {
    "up": "Up",
    "down": "Down",
    "lowerlayerdown": "Down",
    "notpresent": "Down",
    "dormant": "Dormant",
    "unknown": "Unknown",
}
_ETHERNET_TYPE = 1  # ARPHRD_ETHER


def _strip_scope(address: str) -> str:
    return address.split("%", 1)[0]


def is_reportable_address(address: str) -> bool:
    """True for addresses that are neither loopback nor IPv6 link-local."""

    try:
        parsed = ipaddress.ip_address(_strip_scope(address))
    except ValueError:
        return False
    if parsed.is_loopback:
        return False
    if parsed.version == 6 and parsed.is_link_local:
        return False
    return True


def parse_ip_addr_output(output: str) -> list[str]:
    """Extract ``inet``/``inet6`` addresses from ``ip addr show`` text."""

    addresses: list[str] = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 2 or parts[0] not in ("inet", "inet6"):
            continue
        address = parts[1].split("/", 1)[0]
        if address.lower().startswith("fe80:"):
            continue
        if is_reportable_address(address) and address not in addresses:
            addresses.append(address)
    return addresses


def interface_status(operstate: str | None, carrier: str | None) -> str:
    if operstate is None:
        return UNKNOWN
    operstate = operstate.lower()
    if carrier is not None:
        if operstate == "up" and carrier == "1":
            return "Connected"
        if operstate == "up" and carrier == "0":
            return "Disconnected"
        if operstate == "down":
            return "Down"
    return _OPERSTATE_LABELS.get(operstate, UNKNOWN)


def normalise_mac(address: str | None) -> str:
    if address and len(address) == 17 and address.count(":") == 5:
        return address.upper()
    return UNKNOWN


class NetworkCollector:
    """Lists physical-looking interfaces with link state, MAC, speed and IPs."""

    def __init__(
        self,
        config: EngineConfig = CONFIG,
        runner: CommandRunner | None = None,
        address_source: AddressSource = psutil.net_if_addrs,
    ) -> None:
        self._config = config
        self._runner = runner or CommandRunner(config.command_timeout)
        self._address_source = address_source

    @property
    def _net_dir(self) -> Path:
        return self._config.sys_root / "class" / "net"

    def is_excluded(self, name: str) -> bool:
        if name in self._config.excluded_interfaces:
            return True
        return name.startswith(self._config.excluded_interface_prefixes)

    def _speed_mbs(self, iface_dir: Path) -> int:
        speed_path = iface_dir / "speed"
        if speed_path.exists():
            # -1 or EINVAL for down links and most wireless drivers
            speed_mbps = read_int(speed_path)
            if speed_mbps is None or speed_mbps < 0:
                return 0
            return speed_mbps // 8
        if read_int(iface_dir / "type") == _ETHERNET_TYPE:
            return self._config.ethernet_fallback_speed_mbs
        return 0

    def _platform_addresses(self) -> Mapping[str, Iterable[Any]]:
        try:
            return self._address_source()
        except (OSError, RuntimeError) as exc:
            logger.debug("Interface address API failed: %s", exc)
            return {}

    @staticmethod
    def _addresses_from_platform(entries: Iterable[Any]) -> list[str]:
        addresses: list[str] = []
        for entry in entries:
            if getattr(entry, "family", None) not in (socket.AF_INET, socket.AF_INET6):
                continue
            address = _strip_scope(str(entry.address))
            if is_reportable_address(address) and address not in addresses:
                addresses.append(address)
        return addresses

    def _addresses_from_ip_command(self, name: str, cancel: threading.Event | None) -> list[str]:
        result = self._runner.run(["ip", "addr", "show", name], cancel=cancel)
        if not result.ok:
            logger.debug("ip addr fallback failed for %s: %s", name, result.describe())
            return []
        return parse_ip_addr_output(result.stdout)

    def _read_interface(
        self,
        iface_dir: Path,
        platform_addresses: Mapping[str, Iterable[Any]],
        cancel: threading.Event | None,
    ) -> NetworkInterface:
        name = iface_dir.name
        addresses = self._addresses_from_platform(platform_addresses.get(name, ()))
        if not addresses:
            addresses = self._addresses_from_ip_command(name, cancel)
        return NetworkInterface(
            name=name,
            ip_addresses=addresses,
            mac_address=normalise_mac(read_text(iface_dir / "address")),
            status=interface_status(read_text(iface_dir / "operstate"), read_text(iface_dir / "carrier")),
            speed_mbs=self._speed_mbs(iface_dir),
        )

    def list_interfaces(self, cancel: threading.Event | None = None) -> list[NetworkInterface]:
        if not self._net_dir.is_dir():
            logger.warning("Network interfaces directory not found at %s", self._net_dir)
            return []

        platform_addresses = self._platform_addresses()
        interfaces: list[NetworkInterface] = []
        for iface_dir in list_dirs(self._net_dir):
            if cancel is not None and cancel.is_set():
                raise CollectionCancelled("Network listing cancelled")
            if self.is_excluded(iface_dir.name):
                continue
            try:
                interfaces.append(self._read_interface(iface_dir, platform_addresses, cancel))
            except (OSError, ValueError) as exc:
                logger.debug("Failed to read network interface %s: %s", iface_dir.name, exc)

        if cancel is not None and cancel.is_set():
            raise CollectionCancelled("Network listing cancelled")
        logger.info("Found %d network interface(s)", len(interfaces))
        return interfaces
