"""Pre-installation readiness checks.

Advisory only: nothing here changes the system, and the results never
decide the process exit status.
"""

from __future__ import annotations

import logging
import os
import platform
import shutil
from collections.abc import Callable
from pathlib import Path

from nvdoctor.probe import EnvironmentProbe
from nvdoctor.types import CheckResult, Verdict

logger = logging.getLogger(__name__)

DEBIAN_VERSION_FILE = Path("/etc/debian_version")
MEMINFO = Path("/proc/meminfo")
SUPPORTED_DEBIAN = range(10, 14)
MIN_FREE_DISK_KB = 5_000_000
MIN_MEMORY_MB = 4000


def check_root(euid: int) -> CheckResult:
    if euid == 0:
        return CheckResult("root", Verdict.OK, "Running as root")
    return CheckResult("root", Verdict.WARNING, "Not running as root (some checks may be limited)")


def check_debian_version(version_file: Path = DEBIAN_VERSION_FILE) -> CheckResult:
    try:
        raw = version_file.read_text(encoding="utf-8").strip()
    except OSError:
        return CheckResult("debian_version", Verdict.FAILURE, "Unable to detect Debian version")

    major_text = raw.split(".", 1)[0]
    if not major_text.isdigit():
        # testing/unstable report a codename such as "trixie/sid"
        return CheckResult("debian_version", Verdict.WARNING, f"Debian {raw} may not be fully supported")
    major = int(major_text)
    if major in SUPPORTED_DEBIAN:
        return CheckResult("debian_version", Verdict.OK, f"Debian {major} detected, version supported")
    return CheckResult("debian_version", Verdict.WARNING, f"Debian {major} may not be fully supported")


def check_connectivity(probe: EnvironmentProbe) -> CheckResult:
    host = probe.config.connectivity_host
    if probe.reachable(host):
        return CheckResult("connectivity", Verdict.OK, "Internet connection available")
    return CheckResult("connectivity", Verdict.FAILURE, f"No internet connection ({host} unreachable)")


def check_hardware(probe: EnvironmentProbe) -> CheckResult:
    devices = probe.pci_devices()
    if devices:
        return CheckResult("hardware", Verdict.OK, "NVIDIA hardware detected:\n" + "\n".join(devices))
    return CheckResult("hardware", Verdict.WARNING, "No NVIDIA hardware detected")


def check_disk_space(free_kb: int) -> CheckResult:
    if free_kb > MIN_FREE_DISK_KB:
        return CheckResult("disk_space", Verdict.OK, f"Sufficient disk space ({free_kb}KB available)")
    return CheckResult("disk_space", Verdict.WARNING, f"Low disk space ({free_kb}KB available)")


def check_competing_driver(probe: EnvironmentProbe) -> CheckResult:
    driver = probe.config.competing_driver
    if probe.competing_driver_loaded():
        return CheckResult(
            "competing_driver",
            Verdict.WARNING,
            f"{driver.capitalize()} driver detected (will be replaced)",
        )
    return CheckResult("competing_driver", Verdict.OK, "No conflicting drivers detected")


def check_architecture(machine: str) -> CheckResult:
    if machine == "x86_64":
        return CheckResult("architecture", Verdict.OK, "x86_64 architecture supported")
    return CheckResult("architecture", Verdict.WARNING, f"Architecture {machine} may not be fully supported")


def check_memory(memory_mb: int | None) -> CheckResult:
    if memory_mb is None:
        return CheckResult("memory", Verdict.WARNING, "Unable to determine system memory")
    if memory_mb > MIN_MEMORY_MB:
        return CheckResult("memory", Verdict.OK, f"Sufficient memory ({memory_mb}MB)")
    return CheckResult("memory", Verdict.WARNING, f"Low memory ({memory_mb}MB)")


def read_memory_mb(meminfo: Path = MEMINFO) -> int | None:
    try:
        text = meminfo.read_text(encoding="utf-8")
    except OSError:
        return None
    for line in text.splitlines():
        if line.startswith("MemTotal:"):
            try:
                return int(line.split()[1]) // 1024
            except (IndexError, ValueError):
                return None
    return None


def free_disk_kb(path: str = "/") -> int:
    return shutil.disk_usage(path).free // 1024


def run_precheck(
    probe: EnvironmentProbe,
    *,
    euid: Callable[[], int] = os.geteuid,
    version_file: Path = DEBIAN_VERSION_FILE,
    meminfo: Path = MEMINFO,
    disk_free: Callable[[], int] = free_disk_kb,
    machine: Callable[[], str] = platform.machine,
) -> list[CheckResult]:
    """Run every readiness check in order; never aborts early."""
    results = [
        check_root(euid()),
        check_debian_version(version_file),
        check_connectivity(probe),
        check_hardware(probe),
        check_disk_space(disk_free()),
        check_competing_driver(probe),
        check_architecture(machine()),
        check_memory(read_memory_mb(meminfo)),
    ]
    for result in results:
        logger.debug("precheck %s: %s", result.check_id, result.verdict.value)
    return results
