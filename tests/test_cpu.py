from __future__ import annotations

import threading
import time

import pytest

from monitrix.core.errors import CollectionCancelled, SourceUnavailableError
from monitrix.core.samples import CpuCounterSample, SampleCache
from monitrix.data.cpu import (
    CpuCollector,
    compute_usage_percent,
    parse_cpuinfo,
    parse_proc_stat,
)
from tests.conftest import FakeRunner, write

CPUINFO = """\
processor\t: 0
vendor_id\t: GenuineIntel
cpu family\t: 6
model name\t: Intel(R) Core(TM) i7-8700 CPU @ 3.20GHz
cpu MHz\t\t: 3200.000
physical id\t: 0
core id\t\t: 0

processor\t: 1
vendor_id\t: GenuineIntel
cpu family\t: 6
model name\t: Something Else Entirely
cpu MHz\t\t: 3400.000
physical id\t: 0
core id\t\t: 0

processor\t: 2
vendor_id\t: GenuineIntel
cpu family\t: 6
model name\t: Intel(R) Core(TM) i7-8700 CPU @ 3.20GHz
cpu MHz\t\t: 3000.000
physical id\t: 0
core id\t\t: 1

processor\t: 3
vendor_id\t: GenuineIntel
cpu family\t: 6
model name\t: Intel(R) Core(TM) i7-8700 CPU @ 3.20GHz
cpu MHz\t\t: 3000.000
physical id\t: 0
core id\t\t: 1
"""


def stat_text(rows: dict[str, tuple[int, ...]]) -> str:
    lines = [f"{label} " + " ".join(str(v) for v in values) + " 0 0 0" for label, values in rows.items()]
    lines.append("intr 12345 0 0")
    lines.append("ctxt 98765")
    return "\n".join(lines) + "\n"


def test_usage_counts_iowait_as_idle():
    previous = (0, 0, 0, 0, 0, 0, 0)
    current = (50, 0, 10, 30, 10, 0, 0)
    assert compute_usage_percent(previous, current) == pytest.approx(60.0)


def test_usage_is_zero_without_elapsed_ticks():
    sample = (10, 0, 10, 10, 0, 0, 0)
    assert compute_usage_percent(sample, sample) == 0.0
    assert compute_usage_percent((20, 0, 10, 10, 0, 0, 0), sample) == 0.0
    assert compute_usage_percent(None, sample) == 0.0


def test_usage_is_clamped():
    # idle counter going backwards would otherwise push usage above 100
    previous = (0, 0, 0, 100, 0, 0, 0)
    current = (200, 0, 0, 50, 0, 0, 0)
    assert compute_usage_percent(previous, current) == 100.0


def test_parse_proc_stat_skips_short_and_foreign_lines():
    counters = parse_proc_stat(
        [
            "cpu  1 2 3 4 5 6 7 8",
            "cpu0 1 2 3 4 5 6 7",
            "cpu1 1 2 3",
            "cpu2 a b c d e f g",
            "btime 1700000000",
        ]
    )
    assert counters == {"cpu": (1, 2, 3, 4, 5, 6, 7), "cpu0": (1, 2, 3, 4, 5, 6, 7)}


def test_parse_cpuinfo_first_values_win():
    table = parse_cpuinfo(CPUINFO.splitlines())
    assert table.model_name == "Intel(R) Core(TM) i7-8700 CPU @ 3.20GHz"
    assert table.vendor_id == "GenuineIntel"
    assert table.thread_count == 4
    assert table.core_pairs == {("0", "0"), ("0", "1")}
    assert table.architecture == "Intel Family 6"
    assert table.mhz == [3200.0, 3400.0, 3000.0, 3000.0]


def test_parse_cpuinfo_without_family_has_no_architecture():
    table = parse_cpuinfo(["processor : 0", "model name : ARMv8 Processor"])
    assert table.architecture is None
    assert table.thread_count == 1


def test_read_identity_from_cpuinfo(config, roots):
    proc_root, _ = roots
    write(proc_root / "cpuinfo", CPUINFO)
    collector = CpuCollector(SampleCache(), config, runner=FakeRunner())

    identity = collector.read_identity()

    assert identity.core_count == 2
    assert identity.thread_count == 4
    assert identity.hyper_threading is True
    assert identity.architecture == "Intel Family 6"


def test_read_identity_falls_back_to_topology_and_uname(config, roots):
    proc_root, sys_root = roots
    write(proc_root / "cpuinfo", "processor : 0\nprocessor : 1\nmodel name : Cortex-A72\n")
    cpu_dir = sys_root / "devices" / "system" / "cpu"
    for index in range(2):
        write(cpu_dir / f"cpu{index}" / "topology" / "core_id", f"{index}\n")
        write(cpu_dir / f"cpu{index}" / "topology" / "physical_package_id", "0\n")
    runner = FakeRunner({("uname", "-m"): "aarch64\n"})
    collector = CpuCollector(SampleCache(), config, runner=runner)

    identity = collector.read_identity()

    assert identity.architecture == "aarch64"
    assert identity.core_count == 2
    assert identity.thread_count == 2
    assert identity.hyper_threading is False


def test_core_count_never_exceeds_thread_count(config, roots):
    proc_root, _ = roots
    write(
        proc_root / "cpuinfo",
        "processor : 0\nphysical id : 0\ncore id : 0\nphysical id : 1\ncore id : 0\n",
    )
    collector = CpuCollector(SampleCache(), config, runner=FakeRunner({"uname": "x86_64"}))

    identity = collector.read_identity()

    assert identity.thread_count == 1
    assert identity.core_count == 1


def test_read_utilization_uses_cached_sample(config, roots):
    proc_root, _ = roots
    cache = SampleCache()
    cache.cpu = CpuCounterSample(
        counters={
            "cpu": (100, 0, 50, 800, 50, 0, 0),
            "cpu0": (50, 0, 25, 400, 25, 0, 0),
            "cpu1": (50, 0, 25, 400, 25, 0, 0),
        },
        timestamp=0.0,
    )
    write(
        proc_root / "stat",
        stat_text(
            {
                "cpu": (160, 0, 80, 830, 70, 0, 0),
                "cpu0": (110, 0, 45, 400, 25, 0, 0),
                "cpu1": (50, 0, 35, 430, 35, 0, 0),
            }
        ),
    )
    collector = CpuCollector(cache, config, runner=FakeRunner())

    utilization = collector.read_utilization()

    # totalDiff = 140, idleDiff = 50
    assert utilization.usage_percent == pytest.approx(90 / 140 * 100)
    assert utilization.per_core_usage_percent == [pytest.approx(100.0), pytest.approx(20.0)]
    assert cache.cpu.get("cpu") == (160, 0, 80, 830, 70, 0, 0)


def test_per_core_list_stops_at_first_gap(config, roots):
    proc_root, _ = roots
    cache = SampleCache()
    rows = {
        "cpu": (0, 0, 0, 0, 0, 0, 0),
        "cpu0": (0, 0, 0, 0, 0, 0, 0),
        "cpu2": (0, 0, 0, 0, 0, 0, 0),
    }
    cache.cpu = CpuCounterSample(counters=dict(rows), timestamp=0.0)
    write(proc_root / "stat", stat_text(rows))
    collector = CpuCollector(cache, config, runner=FakeRunner())

    utilization = collector.read_utilization()

    assert len(utilization.per_core_usage_percent) == 1


def test_first_read_waits_for_a_second_sample(config, roots, monkeypatch):
    proc_root, _ = roots
    write(proc_root / "stat", stat_text({"cpu": (0, 0, 0, 0, 0, 0, 0)}))
    collector = CpuCollector(SampleCache(), config, runner=FakeRunner())
    samples = iter(
        [
            CpuCounterSample({"cpu": (0, 0, 0, 0, 0, 0, 0)}, 0.0),
            CpuCounterSample({"cpu": (30, 0, 10, 50, 10, 0, 0)}, 1.0),
        ]
    )
    monkeypatch.setattr(collector, "_read_counters", lambda: next(samples))

    started = time.monotonic()
    utilization = collector.read_utilization()
    elapsed = time.monotonic() - started

    assert elapsed >= config.cpu_bootstrap_delay * 0.9
    assert utilization.usage_percent == pytest.approx(40.0)


def test_bootstrap_wait_honours_cancellation(config, roots):
    proc_root, _ = roots
    write(proc_root / "stat", stat_text({"cpu": (0, 0, 0, 0, 0, 0, 0)}))
    collector = CpuCollector(SampleCache(), config, runner=FakeRunner())
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(CollectionCancelled):
        collector.read_utilization(cancel)


def test_missing_tick_table_is_fatal(config):
    collector = CpuCollector(SampleCache(), config, runner=FakeRunner())
    with pytest.raises(SourceUnavailableError) as excinfo:
        collector.read_utilization()
    assert excinfo.value.source.endswith("stat")


def test_frequencies_from_sysfs(config, roots):
    proc_root, sys_root = roots
    rows = {"cpu": (0,) * 7, "cpu0": (0,) * 7, "cpu1": (0,) * 7}
    write(proc_root / "stat", stat_text(rows))
    cpu_dir = sys_root / "devices" / "system" / "cpu"
    write(cpu_dir / "cpu0" / "cpufreq" / "scaling_cur_freq", "2000000\n")
    write(cpu_dir / "cpu1" / "cpufreq" / "scaling_cur_freq", "3000000\n")
    write(cpu_dir / "cpu0" / "cpufreq" / "cpuinfo_max_freq", "4500000\n")
    write(cpu_dir / "cpu1" / "cpufreq" / "scaling_max_freq", "4000000\n")
    cache = SampleCache()
    cache.cpu = CpuCounterSample(dict(rows), 0.0)
    collector = CpuCollector(cache, config, runner=FakeRunner())

    utilization = collector.read_utilization()

    assert utilization.current_frequency_mhz == pytest.approx(2500.0)
    assert utilization.max_frequency_mhz == pytest.approx(4500.0)
    assert utilization.per_core_frequency_mhz == [pytest.approx(2000.0), pytest.approx(3000.0)]


def test_frequencies_fall_back_to_cpuinfo(config, roots):
    proc_root, _ = roots
    rows = {"cpu": (0,) * 7}
    write(proc_root / "stat", stat_text(rows))
    write(proc_root / "cpuinfo", CPUINFO)
    cache = SampleCache()
    cache.cpu = CpuCounterSample(dict(rows), 0.0)
    collector = CpuCollector(cache, config, runner=FakeRunner())

    utilization = collector.read_utilization()

    assert utilization.current_frequency_mhz == pytest.approx(3150.0)
    assert utilization.max_frequency_mhz == pytest.approx(3400.0)
    assert utilization.per_core_frequency_mhz == []


def test_delta_over_a_thousand_ticks():
    previous = (0, 0, 0, 0, 0, 0, 0)
    current = (400, 0, 200, 300, 100, 0, 0)
    # totalDiff = 1000, idleDiff = 400
    assert compute_usage_percent(previous, current) == pytest.approx(60.0)


def test_read_utilization_end_to_end(config, roots):
    proc_root, _ = roots
    cache = SampleCache()
    cache.cpu = CpuCounterSample(counters={"cpu": (100, 0, 50, 800, 20, 0, 0)}, timestamp=0.0)
    write(proc_root / "stat", stat_text({"cpu": (150, 0, 80, 850, 20, 0, 0)}))
    collector = CpuCollector(cache, config, runner=FakeRunner())

    utilization = collector.read_utilization()

    # totalDiff = 130, idleDiff = 50
    assert utilization.usage_percent == pytest.approx(80 / 130 * 100)
    assert round(utilization.usage_percent, 2) == 61.54
    assert utilization.per_core_usage_percent == []
