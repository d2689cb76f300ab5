"""GPU detection and utilization with per-vendor fallback chains.

Each vendor owns an ordered list of probes (vendor CLI, NVML, kernel files).
Inside one chain the first probe that yields devices wins; the chains of
different vendors are independent and their results are merged. A generic
``lspci`` pass runs last and only adds vendors that no specific probe found,
at most one device per vendor.
"""

from __future__ import annotations

import logging
import re
import threading
from pathlib import Path
from typing import Callable, TypeVar

from monitrix.core.commands import CommandRunner
from monitrix.core.config import CONFIG, EngineConfig
from monitrix.core.errors import CollectionCancelled, ProbeOutcome
from monitrix.models import UNKNOWN, GpuDevice, GpuSnapshot, GpuUtilization

from ._sysfs import (
    drm_cards,
    list_dirs,
    pci_vendor,
    read_float,
    read_int,
    read_key_values,
    read_lines,
    read_text,
)

try:
    import pynvml  # type: ignore[import]
except ModuleNotFoundError:  # pragma: no cover - optional dependency
    pynvml = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)

T = TypeVar("T")
Probe = Callable[[threading.Event | None], ProbeOutcome[T]]

NVIDIA = "NVIDIA"
AMD = "AMD"
INTEL = "Intel"

AMD_PCI_VENDOR = "0x1002"
INTEL_PCI_VENDOR = "0x8086"
INTEL_MODEL = "Intel Integrated Graphics"

_AMD_DEVICE_NAMES = {
    "0x73bf": "AMD Radeon RX 6800/6800 XT/6900 XT",
    "0x73a5": "AMD Radeon RX 6950 XT",
    "0x73df": "AMD Radeon RX 6700 XT",
    "0x73ff": "AMD Radeon RX 6600/6600 XT",
    "0x744c": "AMD Radeon RX 7900 XT/XTX",
}

_NVIDIA_STATIC_QUERY = (
    "nvidia-smi",
    "--query-gpu=name,memory.total,driver_version",
    "--format=csv,noheader,nounits",
)
_NVIDIA_USAGE_QUERY = (
    "nvidia-smi",
    "--query-gpu=name,memory.used,memory.free,memory.total,utilization.gpu",
    "--format=csv,noheader,nounits",
)
_ROCM_STATIC_QUERY = ("rocm-smi", "--showproductname", "--showmeminfo", "vram")
_ROCM_USAGE_QUERY = ("rocm-smi", "--showproductname", "--showuse", "--showmeminfo", "vram")
_INTEL_GPU_TOP_QUERY = ("intel_gpu_top", "-s", "100", "-n", "1")
_LSPCI_QUERY = ("lspci", "-nn")

_ROCM_LINE_RE = re.compile(r"^GPU\[(\d+)\]\s*:\s*(.+?)\s*:\s*(.*?)\s*$")
_PERCENT_RE = re.compile(r"(\d+(?:\.\d+)?)\s*%")
_LSPCI_MODEL_RE = re.compile(
    r"VGA compatible controller(?: \[[0-9a-fA-F]{4}\])?:\s*(.+?)"
    r"(?:\s\[[0-9a-fA-F]{4}:[0-9a-fA-F]{4}\])?(?:\s\(rev [0-9a-fA-F]+\))?\s*$"
)
_ROCM_MODEL_KEYS = ("Card series", "Card Series", "Marketing Name", "Card model", "Card Model")
_BYTES_PER_MB = 1024 * 1024


def _csv_number(value: str) -> float:
    """nvidia-smi prints ``[Not Supported]``/``[N/A]`` for missing values."""

    try:
        return float(value)
    except ValueError:
        return 0.0


def amd_model_from_device_id(device_id: str) -> str:
    device_id = device_id.strip().lower()
    return _AMD_DEVICE_NAMES.get(device_id, f"AMD GPU (Device ID: {device_id})")


def classify_pci_line(line: str) -> str:
    if "NVIDIA" in line or "GeForce" in line:
        return NVIDIA
    if "AMD" in line or "Radeon" in line:
        return AMD
    if "Intel" in line:
        return INTEL
    return UNKNOWN


def model_from_lspci(line: str) -> str:
    match = _LSPCI_MODEL_RE.search(line.strip())
    if match:
        return match.group(1).strip()
    return "Unknown GPU"


def parse_rocm_smi(output: str) -> dict[int, dict[str, str]]:
    """Group ``GPU[n] : key : value`` lines by card index."""

    cards: dict[int, dict[str, str]] = {}
    for line in output.splitlines():
        match = _ROCM_LINE_RE.match(line.strip())
        if not match:
            continue
        index, key, value = int(match.group(1)), match.group(2), match.group(3)
        cards.setdefault(index, {}).setdefault(key, value)
    return cards


def _rocm_model(fields: dict[str, str]) -> str:
    for key in _ROCM_MODEL_KEYS:
        if fields.get(key):
            return fields[key]
    return "AMD GPU (detected via rocm-smi)"


def _rocm_bytes_to_mb(fields: dict[str, str], key: str) -> float:
    raw = fields.get(key)
    if not raw:
        return 0.0
    try:
        return int(raw) / _BYTES_PER_MB
    except ValueError:
        return 0.0


def parse_intel_gpu_top(output: str) -> float | None:
    for line in output.splitlines():
        if "Render/3D" in line and "%" in line:
            match = _PERCENT_RE.search(line)
            return float(match.group(1)) if match else 0.0
    return None


class GpuCollector:
    """Merges what every vendor probe chain can report about the GPUs."""

    def __init__(
        self,
        config: EngineConfig = CONFIG,
        runner: CommandRunner | None = None,
        nvml=pynvml,
    ) -> None:
        self._config = config
        self._runner = runner or CommandRunner(config.command_timeout)
        self._nvml = nvml

    # chains ---------------------------------------------------------------

    def device_chains(self) -> list[tuple[str, list[Probe[GpuDevice]]]]:
        return [
            (NVIDIA, [self._nvidia_smi_devices, self._nvml_devices, self._nvidia_proc_devices]),
            (AMD, [self._rocm_smi_devices, self._amd_sysfs_devices]),
            (INTEL, [self._intel_sysfs_devices]),
        ]

    def utilization_chains(self) -> list[tuple[str, list[Probe[GpuUtilization]]]]:
        return [
            (NVIDIA, [self._nvidia_smi_usage, self._nvml_usage, self._nvidia_proc_usage]),
            (AMD, [self._rocm_smi_usage, self._amd_sysfs_usage]),
            (INTEL, [self._intel_gpu_top_usage, self._intel_sysfs_usage]),
        ]

    @staticmethod
    def _check_cancel(cancel: threading.Event | None) -> None:
        if cancel is not None and cancel.is_set():
            raise CollectionCancelled("GPU collection cancelled")

    def _run_chain(
        self, vendor: str, chain: list[Probe[T]], cancel: threading.Event | None
    ) -> ProbeOutcome[T]:
        reasons: list[str] = []
        for probe in chain:
            self._check_cancel(cancel)
            try:
                outcome = probe(cancel)
            except (OSError, ValueError, IndexError, TypeError, AttributeError) as exc:
                outcome = ProbeOutcome.unavailable(str(exc), source=probe.__name__)
            if outcome.is_ok:
                logger.debug("%s probe %s reported %d item(s)", vendor, outcome.source, len(outcome.items))
                return outcome
            logger.debug("%s probe %s unavailable: %s", vendor, outcome.source, outcome.reason)
            reasons.append(f"{outcome.source}: {outcome.reason}")
        return ProbeOutcome.unavailable("; ".join(reasons) or "no probes", source=vendor)

    def probe_devices(self, cancel: threading.Event | None = None) -> dict[str, ProbeOutcome[GpuDevice]]:
        """Run every static chain and the generic PCI pass, keyed by vendor (``"PCI"`` for lspci)."""

        outcomes: dict[str, ProbeOutcome[GpuDevice]] = {}
        found: list[GpuDevice] = []
        for vendor, chain in self.device_chains():
            outcome = self._run_chain(vendor, chain, cancel)
            outcomes[vendor] = outcome
            found.extend(outcome.items)
        self._check_cancel(cancel)
        outcomes["PCI"] = self._lspci_devices(found, cancel)
        self._check_cancel(cancel)
        return outcomes

    def probe_utilization(
        self, cancel: threading.Event | None = None
    ) -> dict[str, ProbeOutcome[GpuUtilization]]:
        outcomes = {
            vendor: self._run_chain(vendor, chain, cancel)
            for vendor, chain in self.utilization_chains()
        }
        self._check_cancel(cancel)
        return outcomes

    def list_devices(self, cancel: threading.Event | None = None) -> list[GpuDevice]:
        devices = [
            device
            for outcome in self.probe_devices(cancel).values()
            for device in outcome.items
        ]
        logger.info("Found %d GPU(s)", len(devices))
        return devices

    def list_utilization(self, cancel: threading.Event | None = None) -> list[GpuUtilization]:
        usages = [
            usage
            for outcome in self.probe_utilization(cancel).values()
            for usage in outcome.items
        ]
        logger.debug("Found usage data for %d GPU(s)", len(usages))
        return usages

    def read_snapshot(self, cancel: threading.Event | None = None) -> GpuSnapshot:
        return GpuSnapshot(
            devices=self.list_devices(cancel),
            utilization=self.list_utilization(cancel),
        )

    # NVIDIA ---------------------------------------------------------------

    def _nvidia_smi_devices(self, cancel: threading.Event | None) -> ProbeOutcome[GpuDevice]:
        source = "nvidia-smi"
        result = self._runner.run(_NVIDIA_STATIC_QUERY, cancel=cancel)
        if not result.ok:
            return ProbeOutcome.unavailable(result.describe(), source=source)
        devices: list[GpuDevice] = []
        for line in result.stdout.splitlines():
            parts = [part.strip() for part in line.split(",")]
            if len(parts) < 2 or not parts[0]:
                continue
            devices.append(
                GpuDevice(model=parts[0], vendor=NVIDIA, memory_mb=int(_csv_number(parts[1])))
            )
        if not devices:
            return ProbeOutcome.unavailable("no devices in output", source=source)
        return ProbeOutcome.ok(devices, source=source)

    def _nvidia_smi_usage(self, cancel: threading.Event | None) -> ProbeOutcome[GpuUtilization]:
        source = "nvidia-smi"
        result = self._runner.run(_NVIDIA_USAGE_QUERY, cancel=cancel)
        if not result.ok:
            return ProbeOutcome.unavailable(result.describe(), source=source)
        usages: list[GpuUtilization] = []
        for line in result.stdout.splitlines():
            parts = [part.strip() for part in line.split(",")]
            if len(parts) < 5 or not parts[0]:
                continue
            usages.append(
                GpuUtilization(
                    model=parts[0],
                    vendor=NVIDIA,
                    memory_used_mb=_csv_number(parts[1]),
                    memory_free_mb=_csv_number(parts[2]),
                    core_usage_percent=_csv_number(parts[4]),
                )
            )
        if not usages:
            return ProbeOutcome.unavailable("no devices in output", source=source)
        return ProbeOutcome.ok(usages, source=source)

    def _with_nvml(self, source: str, read: Callable[[object], list[T]]) -> ProbeOutcome[T]:
        nvml = self._nvml
        if nvml is None:
            return ProbeOutcome.unavailable("pynvml is not installed", source=source)
        try:
            nvml.nvmlInit()
        except nvml.NVMLError as exc:
            return ProbeOutcome.unavailable(f"NVML init failed: {exc}", source=source)
        try:
            items = [read(nvml.nvmlDeviceGetHandleByIndex(i)) for i in range(nvml.nvmlDeviceGetCount())]
        except nvml.NVMLError as exc:
            return ProbeOutcome.unavailable(f"NVML query failed: {exc}", source=source)
        finally:
            try:
                nvml.nvmlShutdown()
            except nvml.NVMLError:
                logger.debug("NVML shutdown failed", exc_info=True)
        if not items:
            return ProbeOutcome.unavailable("no devices", source=source)
        return ProbeOutcome.ok(items, source=source)

    def _nvml_name(self, handle: object) -> str:
        name = self._nvml.nvmlDeviceGetName(handle)
        return name.decode("utf-8") if isinstance(name, bytes) else str(name)

    def _nvml_core_count(self, handle: object) -> int:
        getter = getattr(self._nvml, "nvmlDeviceGetNumGpuCores", None)
        if getter is None:
            return 0
        try:
            return int(getter(handle))
        except self._nvml.NVMLError:
            return 0

    def _nvml_devices(self, cancel: threading.Event | None) -> ProbeOutcome[GpuDevice]:
        def read(handle: object) -> GpuDevice:
            memory = self._nvml.nvmlDeviceGetMemoryInfo(handle)
            return GpuDevice(
                model=self._nvml_name(handle),
                vendor=NVIDIA,
                memory_mb=int(memory.total) // _BYTES_PER_MB,
                core_count=self._nvml_core_count(handle),
            )

        return self._with_nvml("nvml", read)

    def _nvml_usage(self, cancel: threading.Event | None) -> ProbeOutcome[GpuUtilization]:
        def read(handle: object) -> GpuUtilization:
            memory = self._nvml.nvmlDeviceGetMemoryInfo(handle)
            util = self._nvml.nvmlDeviceGetUtilizationRates(handle)
            return GpuUtilization(
                model=self._nvml_name(handle),
                vendor=NVIDIA,
                memory_used_mb=int(memory.used) / _BYTES_PER_MB,
                memory_free_mb=int(memory.free) / _BYTES_PER_MB,
                core_usage_percent=float(util.gpu),
            )

        return self._with_nvml("nvml", read)

    def _nvidia_proc_models(self) -> list[str]:
        models: list[str] = []
        for gpu_dir in list_dirs(self._config.proc_root / "driver" / "nvidia" / "gpus"):
            lines = read_lines(gpu_dir / "information")
            if lines is None:
                continue
            model = read_key_values(lines).get("Model")
            if model:
                models.append(model)
        return models

    def _nvidia_proc_devices(self, cancel: threading.Event | None) -> ProbeOutcome[GpuDevice]:
        models = self._nvidia_proc_models()
        if not models:
            return ProbeOutcome.unavailable("no /proc/driver/nvidia entries", source="nvidia-proc")
        return ProbeOutcome.ok([GpuDevice(model=m, vendor=NVIDIA) for m in models], source="nvidia-proc")

    def _nvidia_proc_usage(self, cancel: threading.Event | None) -> ProbeOutcome[GpuUtilization]:
        models = self._nvidia_proc_models()
        if not models:
            return ProbeOutcome.unavailable("no /proc/driver/nvidia entries", source="nvidia-proc")
        return ProbeOutcome.ok([GpuUtilization(model=m, vendor=NVIDIA) for m in models], source="nvidia-proc")

    # AMD ------------------------------------------------------------------

    def _cards_for_vendor(self, vendor_id: str) -> list[Path]:
        cards: list[Path] = []
        seen: set[Path] = set()
        for card in drm_cards(self._config.sys_root):
            device_dir = card / "device"
            if pci_vendor(device_dir) != vendor_id:
                continue
            resolved = device_dir.resolve()
            if resolved in seen:
                continue
            seen.add(resolved)
            cards.append(device_dir)
        return cards

    def _rocm_smi_devices(self, cancel: threading.Event | None) -> ProbeOutcome[GpuDevice]:
        source = "rocm-smi"
        result = self._runner.run(_ROCM_STATIC_QUERY, cancel=cancel)
        if not result.ok:
            return ProbeOutcome.unavailable(result.describe(), source=source)
        cards = parse_rocm_smi(result.stdout)
        if not cards:
            return ProbeOutcome.unavailable("no GPU entries in output", source=source)
        devices = [
            GpuDevice(
                model=_rocm_model(fields),
                vendor=AMD,
                memory_mb=int(_rocm_bytes_to_mb(fields, "VRAM Total Memory (B)")),
            )
            for _, fields in sorted(cards.items())
        ]
        return ProbeOutcome.ok(devices, source=source)

    def _rocm_smi_usage(self, cancel: threading.Event | None) -> ProbeOutcome[GpuUtilization]:
        source = "rocm-smi"
        result = self._runner.run(_ROCM_USAGE_QUERY, cancel=cancel)
        if not result.ok:
            return ProbeOutcome.unavailable(result.describe(), source=source)
        cards = parse_rocm_smi(result.stdout)
        if not cards:
            return ProbeOutcome.unavailable("no GPU entries in output", source=source)
        usages: list[GpuUtilization] = []
        for _, fields in sorted(cards.items()):
            total = _rocm_bytes_to_mb(fields, "VRAM Total Memory (B)")
            used = _rocm_bytes_to_mb(fields, "VRAM Total Used Memory (B)")
            usages.append(
                GpuUtilization(
                    model=_rocm_model(fields),
                    vendor=AMD,
                    memory_used_mb=used,
                    memory_free_mb=max(total - used, 0.0),
                    core_usage_percent=_csv_number(fields.get("GPU use (%)", "")),
                )
            )
        return ProbeOutcome.ok(usages, source=source)

    def _amd_sysfs_devices(self, cancel: threading.Event | None) -> ProbeOutcome[GpuDevice]:
        devices: list[GpuDevice] = []
        for device_dir in self._cards_for_vendor(AMD_PCI_VENDOR):
            device_id = read_text(device_dir / "device") or "unknown"
            vram = read_int(device_dir / "mem_info_vram_total") or 0
            devices.append(
                GpuDevice(
                    model=amd_model_from_device_id(device_id),
                    vendor=AMD,
                    memory_mb=vram // _BYTES_PER_MB,
                )
            )
        if not devices:
            return ProbeOutcome.unavailable("no AMD cards under /sys/class/drm", source="amd-sysfs")
        return ProbeOutcome.ok(devices, source="amd-sysfs")

    @staticmethod
    def _amd_busy_percent(device_dir: Path) -> float:
        busy = read_float(device_dir / "gpu_busy_percent")
        if busy is not None:
            return busy
        for hwmon_dir in list_dirs(device_dir / "hwmon"):
            for candidate in sorted(hwmon_dir.glob("*busy*")):
                value = read_float(candidate)
                if value is not None:
                    return value
        return 0.0

    def _amd_sysfs_usage(self, cancel: threading.Event | None) -> ProbeOutcome[GpuUtilization]:
        usages: list[GpuUtilization] = []
        for device_dir in self._cards_for_vendor(AMD_PCI_VENDOR):
            device_id = read_text(device_dir / "device") or "unknown"
            total = (read_int(device_dir / "mem_info_vram_total") or 0) / _BYTES_PER_MB
            used = (read_int(device_dir / "mem_info_vram_used") or 0) / _BYTES_PER_MB
            usages.append(
                GpuUtilization(
                    model=amd_model_from_device_id(device_id),
                    vendor=AMD,
                    memory_used_mb=used,
                    memory_free_mb=max(total - used, 0.0),
                    core_usage_percent=self._amd_busy_percent(device_dir),
                )
            )
        if not usages:
            return ProbeOutcome.unavailable("no AMD cards under /sys/class/drm", source="amd-sysfs")
        return ProbeOutcome.ok(usages, source="amd-sysfs")

    # Intel ----------------------------------------------------------------

    def _intel_sysfs_devices(self, cancel: threading.Event | None) -> ProbeOutcome[GpuDevice]:
        cards = self._cards_for_vendor(INTEL_PCI_VENDOR)
        if not cards:
            return ProbeOutcome.unavailable("no Intel cards under /sys/class/drm", source="intel-sysfs")
        return ProbeOutcome.ok(
            [GpuDevice(model=INTEL_MODEL, vendor=INTEL) for _ in cards], source="intel-sysfs"
        )

    def _intel_gpu_top_usage(self, cancel: threading.Event | None) -> ProbeOutcome[GpuUtilization]:
        source = "intel_gpu_top"
        result = self._runner.run(_INTEL_GPU_TOP_QUERY, cancel=cancel)
        if not result.ok:
            return ProbeOutcome.unavailable(result.describe(), source=source)
        usage = parse_intel_gpu_top(result.stdout)
        if usage is None:
            return ProbeOutcome.unavailable("no Render/3D line in output", source=source)
        return ProbeOutcome.ok(
            [GpuUtilization(model=INTEL_MODEL, vendor=INTEL, core_usage_percent=usage)], source=source
        )

    def _intel_sysfs_usage(self, cancel: threading.Event | None) -> ProbeOutcome[GpuUtilization]:
        cards = self._cards_for_vendor(INTEL_PCI_VENDOR)
        if not cards:
            return ProbeOutcome.unavailable("no Intel cards under /sys/class/drm", source="intel-sysfs")
        return ProbeOutcome.ok(
            [GpuUtilization(model=INTEL_MODEL, vendor=INTEL) for _ in cards], source="intel-sysfs"
        )

    # generic PCI ----------------------------------------------------------

    def _lspci_devices(
        self, known: list[GpuDevice], cancel: threading.Event | None
    ) -> ProbeOutcome[GpuDevice]:
        source = "lspci"
        result = self._runner.run(_LSPCI_QUERY, cancel=cancel)
        if not result.ok:
            return ProbeOutcome.unavailable(result.describe(), source=source)

        seen_vendors = {device.vendor for device in known}
        devices: list[GpuDevice] = []
        for line in result.stdout.splitlines():
            if "VGA compatible controller" not in line:
                continue
            vendor = classify_pci_line(line)
            if vendor in seen_vendors:
                continue
            seen_vendors.add(vendor)
            devices.append(GpuDevice(model=model_from_lspci(line), vendor=vendor))
        return ProbeOutcome.ok(devices, source=source)
