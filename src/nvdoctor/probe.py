"""Read-only environment probes.

Every method returns a typed fact and never raises for a missing tool or
file: absence is itself a fact (None, an empty collection, or "unknown").
"""

from __future__ import annotations

import hashlib
import logging
import platform
import re
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Literal

from nvdoctor.config import DriverConfig
from nvdoctor.exec import Runner, run_command
from nvdoctor.system import (
    AptInstaller,
    BootImageBuilder,
    InitramfsBuilder,
    KernelModules,
    ModuleController,
    PackageInstaller,
    ServiceController,
    SystemdServices,
)

logger = logging.getLogger(__name__)

SecureBootState = Literal["enabled", "disabled", "unknown"]

PCI_DEVICES_DIR = Path("/sys/bus/pci/devices")
PROC_STAT = Path("/proc/stat")

_SECURE_BOOT_ENABLED = re.compile(r"secure\s*boot\s+enabled", re.IGNORECASE)
_SECURE_BOOT_DISABLED = re.compile(r"secure\s*boot\s+disabled", re.IGNORECASE)
_DPKG_LOG_TIMESTAMP = re.compile(r"^(\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2})")


@dataclass(frozen=True)
class InstallLogEntry:
    """Most recent install log line mentioning the driver package."""

    line: str
    timestamp: datetime | None


class EnvironmentProbe:
    """Structured facts about the driver stack on this machine."""

    def __init__(
        self,
        config: DriverConfig,
        *,
        runner: Runner = run_command,
        modules: ModuleController | None = None,
        installer: PackageInstaller | None = None,
        services: ServiceController | None = None,
        boot_images: BootImageBuilder | None = None,
        pci_devices_dir: Path = PCI_DEVICES_DIR,
        proc_stat: Path = PROC_STAT,
        which: Callable[[str], str | None] = shutil.which,
    ):
        self.config = config
        self._run = runner
        self.modules = modules or KernelModules(runner)
        self.installer = installer or AptInstaller(runner)
        self.services = services or SystemdServices(runner)
        self.boot_images = boot_images or InitramfsBuilder(runner)
        self._pci_devices_dir = pci_devices_dir
        self._proc_stat = proc_stat
        self._which = which

    # ---------- hardware ----------

    def pci_devices(self) -> list[str]:
        """PCI devices from the configured vendor, one description per device."""
        result = self._run(["lspci", "-nn"])
        if result.ok:
            vendor_tag = f"[{self.config.vendor_id.lower()}:"
            keyword = self.config.vendor_keyword.lower()
            return [
                line.strip()
                for line in result.stdout.splitlines()
                if vendor_tag in line.lower() or keyword in line.lower()
            ]

        logger.debug("lspci unavailable, reading %s", self._pci_devices_dir)
        devices: list[str] = []
        if not self._pci_devices_dir.is_dir():
            return devices
        expected = f"0x{self.config.vendor_id.lower()}"
        for device in sorted(self._pci_devices_dir.iterdir()):
            try:
                vendor = (device / "vendor").read_text(encoding="utf-8").strip().lower()
            except OSError:
                continue
            if vendor == expected:
                devices.append(f"{device.name} vendor {vendor}")
        return devices

    def capability_interface(self) -> str | None:
        return self._which(self.config.capability_command)

    # ---------- kernel modules ----------

    def loaded_modules(self) -> frozenset[str]:
        return self.modules.list_loaded()

    def target_module_loaded(self) -> bool:
        return self.config.target_module in self.loaded_modules()

    def competing_driver_loaded(self) -> bool:
        return self.config.competing_driver in self.loaded_modules()

    def module_dependency_digest(self, kernel: str) -> str | None:
        modules_dep = self.config.modules_root / kernel / "modules.dep"
        try:
            return hashlib.sha256(modules_dep.read_bytes()).hexdigest()
        except OSError:
            return None

    # ---------- boot security ----------

    def secure_boot_state(self) -> SecureBootState:
        if self._which("mokutil") is None:
            return "unknown"
        result = self._run(["mokutil", "--sb-state"])
        text = result.output
        if _SECURE_BOOT_ENABLED.search(text):
            return "enabled"
        if result.ok and _SECURE_BOOT_DISABLED.search(text):
            return "disabled"
        return "unknown"

    # ---------- kernel ----------

    def kernel_release(self) -> str:
        return platform.release()

    def kernel_headers_present(self, kernel: str) -> bool:
        if (self.config.headers_root / f"linux-headers-{kernel}").is_dir():
            return True
        return (self.config.modules_root / kernel / "build").is_dir()

    def boot_time(self) -> datetime | None:
        try:
            text = self._proc_stat.read_text(encoding="utf-8")
        except OSError:
            return None
        for line in text.splitlines():
            if line.startswith("btime "):
                try:
                    return datetime.fromtimestamp(int(line.split()[1]))
                except (IndexError, ValueError):
                    return None
        return None

    # ---------- packages ----------

    def installed_driver_version(self) -> str | None:
        return self.installer.query_installed(f"{self.config.driver_package}*")

    def driver_functional(self) -> bool:
        result = self._run(
            [
                self.config.capability_command,
                "--query-gpu=driver_version",
                "--format=csv,noheader,nounits",
            ]
        )
        return result.ok and bool(result.stdout.strip())

    def recent_install_entry(self) -> InstallLogEntry | None:
        try:
            text = self.config.install_log.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return None
        package = self.config.driver_package.lower()
        matches = [line for line in text.splitlines() if package in line.lower()]
        if not matches:
            return None
        line = matches[-1].strip()
        timestamp = None
        match = _DPKG_LOG_TIMESTAMP.match(line)
        if match:
            timestamp = datetime.strptime(match.group(1), "%Y-%m-%d %H:%M:%S")
        return InstallLogEntry(line=line, timestamp=timestamp)

    # ---------- boot image ----------

    def boot_image_has_module(self, kernel: str) -> bool:
        contents = self.boot_images.list_contents(self.config.boot_image_path(kernel))
        module = self.config.target_module
        for entry in contents:
            name = Path(entry).name
            if name.startswith(module) and ".ko" in name:
                return True
        return False

    # ---------- display layer ----------

    def active_display_layer(self) -> str | None:
        """Name of the active display manager, "Xorg" for a bare X server, or None."""
        for service in self.config.display_services:
            if self.services.is_active(service):
                return service
        if self._run(["pgrep", "-x", "Xorg"]).ok:
            return "Xorg"
        return None

    # ---------- network ----------

    def reachable(self, host: str) -> bool:
        return self._run(["ping", "-c", "1", host], timeout=15).ok

    # ---------- logs ----------

    def kernel_messages(self, limit: int = 20) -> list[str]:
        result = self._run(["dmesg"])
        if not result.ok:
            return []
        keyword = self.config.vendor_keyword.lower()
        lines = [line for line in result.stdout.splitlines() if keyword in line.lower()]
        return lines[-limit:]
