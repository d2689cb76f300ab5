"""Small readers for procfs/sysfs pseudo-files."""

from __future__ import annotations

import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def read_text(path: Path) -> str | None:
    try:
        value = path.read_text(encoding="utf-8", errors="replace").strip()
    except OSError:
        return None
    return value or None


def read_lines(path: Path) -> list[str] | None:
    try:
        return path.read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError:
        return None


def read_int(path: Path) -> int | None:
    text = read_text(path)
    if text is None:
        return None
    try:
        return int(text, 0) if text.lower().startswith("0x") else int(text)
    except ValueError:
        return None


def read_float(path: Path, scale: float | None = None) -> float | None:
    text = read_text(path)
    if text is None:
        return None
    try:
        value = float(text)
    except ValueError:
        return None
    if scale:
        value /= scale
    return value


def read_key_values(lines: list[str], separator: str = ":") -> dict[str, str]:
    """Parse ``key: value`` lines; the first occurrence of a key wins."""

    values: dict[str, str] = {}
    for line in lines:
        key, sep, value = line.partition(separator)
        if not sep:
            continue
        key = key.strip()
        if key and key not in values:
            values[key] = value.strip()
    return values


def list_dirs(path: Path) -> list[Path]:
    try:
        return sorted(entry for entry in path.iterdir() if entry.is_dir())
    except OSError:
        return []


def drm_cards(sys_root: Path) -> list[Path]:
    """Return ``/sys/class/drm/cardN`` entries, skipping connectors like ``card0-HDMI-A-1``."""

    drm = sys_root / "class" / "drm"
    return [
        card
        for card in list_dirs(drm)
        if card.name.startswith("card") and "-" not in card.name
    ]


def pci_vendor(device_dir: Path) -> str | None:
    vendor = read_text(device_dir / "vendor")
    return vendor.lower() if vendor else None
