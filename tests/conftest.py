"""Pytest configuration and fixtures for nvdoctor tests.

``FakeMachine`` stands in for the host: it implements the package, service,
module and boot image collaborators plus a command runner, and records
every call so tests can assert on ordering.
"""
from __future__ import annotations

import fnmatch
from pathlib import Path

import pytest

from nvdoctor.config import DriverConfig
from nvdoctor.exec import ExecResult
from nvdoctor.pipeline import DiagnosticPipeline
from nvdoctor.probe import EnvironmentProbe
from nvdoctor.remediation import RemediationActions
from nvdoctor.verification import VerificationGate

KERNEL = "6.1.0-18-amd64"
GPU_LINE = (
    "01:00.0 VGA compatible controller [0300]: NVIDIA Corporation GA104 "
    "[GeForce RTX 3070] [10de:2484] (rev a1)"
)
SMI_OUTPUT = "| NVIDIA-SMI 535.183.01   Driver Version: 535.183.01   CUDA Version: 12.2 |\n"
SMI_ERROR = (
    "NVIDIA-SMI has failed because it couldn't communicate with the NVIDIA driver. "
    "Make sure that the latest NVIDIA driver is installed and running.\n"
)


def _result(argv, returncode=0, stdout="", stderr="") -> ExecResult:
    return ExecResult(argv=tuple(argv), returncode=returncode, stdout=stdout, stderr=stderr)


class FakeMachine:
    """Healthy NVIDIA machine by default; tests flip attributes to break it."""

    def __init__(self, root: Path):
        self.root = root
        self.kernel = KERNEL
        self.pci_lines: list[str] = [GPU_LINE]
        self.binaries: set[str] = {"nvidia-smi"}
        self.loaded: set[str] = {"nvidia", "nvidia_modeset", "nvidia_drm"}
        self.loadable: set[str] = {"nvidia", "nvidia_modeset", "nvidia_drm"}
        # modules modprobe -r refuses to remove
        self.in_use: set[str] = set()
        self.packages: dict[str, str] = {"nvidia-driver": "535.183.01-1"}
        self.install_ok = True
        self.active_services: set[str] = set()
        self.restart_ok = True
        self.xorg_running = False
        self.secure_boot_text = "SecureBoot disabled\n"
        self.smi_ok = True
        # smi starts passing once a display manager restart succeeds
        self.smi_fixed_by_restart = False
        self.boot_image: set[str] = {f"usr/lib/modules/{KERNEL}/updates/dkms/nvidia.ko"}
        self.dmesg = "[    2.1] nvidia: loading out-of-tree module taints kernel.\n[    2.2] usb 1-1: new device\n"
        self.ping_ok = True
        self.calls: list[tuple[str, ...]] = []
        self.events: list[str] = []

        self.config = DriverConfig(
            blacklist_path=root / "etc/modprobe.d/blacklist-nvidia-nouveau.conf",
            install_log=root / "var/log/dpkg.log",
            headers_root=root / "usr/src",
            modules_root=root / "lib/modules",
            boot_image_template=str(root / "boot/initrd.img-{kernel}"),
            settle_seconds=5.0,
        )
        self.set_headers(True)

    # ---------- knobs ----------

    def set_headers(self, present: bool) -> None:
        headers = self.config.headers_root / f"linux-headers-{self.kernel}"
        if present:
            headers.mkdir(parents=True, exist_ok=True)
        elif headers.exists():
            headers.rmdir()

    # ---------- runner ----------

    def run(self, argv, **kwargs) -> ExecResult:
        argv = tuple(argv)
        self.calls.append(argv)
        command = argv[0]

        if command == "nvidia-smi":
            if len(argv) == 1:
                self.events.append("verify")
                if self.smi_ok:
                    return _result(argv, stdout=SMI_OUTPUT)
                return _result(argv, returncode=9, stdout=SMI_ERROR)
            if self.smi_ok:
                return _result(argv, stdout="535.183.01\n")
            return _result(argv, returncode=9, stdout=SMI_ERROR)
        if command == "lspci":
            return _result(argv, stdout="".join(f"{line}\n" for line in self.pci_lines))
        if command == "pgrep":
            return _result(argv, returncode=0 if self.xorg_running else 1)
        if command == "mokutil":
            return _result(argv, stdout=self.secure_boot_text)
        if command == "dmesg":
            return _result(argv, stdout=self.dmesg)
        if command == "ping":
            return _result(argv, returncode=0 if self.ping_ok else 2)
        return _result(argv, returncode=127, stderr=f"Command not found: {command}")

    def which(self, name: str) -> str | None:
        return f"/usr/bin/{name}" if name in self.binaries else None

    def sleep(self, seconds: float) -> None:
        self.events.append(f"sleep:{seconds}")

    # ---------- ModuleController ----------

    def list_loaded(self) -> frozenset[str]:
        return frozenset(self.loaded)

    def load(self, name: str) -> ExecResult:
        argv = ("modprobe", name)
        self.calls.append(argv)
        if name not in self.loadable:
            return _result(argv, returncode=1, stderr=f"modprobe: FATAL: Module {name} not found")
        self.loaded.add(name)
        return _result(argv)

    def unload(self, name: str) -> ExecResult:
        argv = ("modprobe", "-r", name)
        self.calls.append(argv)
        if name in self.in_use:
            return _result(argv, returncode=1, stderr=f"modprobe: FATAL: Module {name} is in use.")
        self.loaded.discard(name)
        return _result(argv)

    def refresh_dependencies(self) -> ExecResult:
        self.calls.append(("depmod", "-a"))
        return _result(("depmod", "-a"))

    # ---------- PackageInstaller ----------

    def install(self, package_ids: list[str]) -> ExecResult:
        argv = ("apt-get", "install", "-y", *package_ids)
        self.calls.append(argv)
        if not self.install_ok:
            return _result(argv, returncode=100, stderr="E: Unable to locate package")
        for package in package_ids:
            self.packages[package] = "1.0"
            if package == f"linux-headers-{self.kernel}":
                self.set_headers(True)
        return _result(argv)

    def query_installed(self, package_id: str) -> str | None:
        for name in sorted(self.packages):
            if fnmatch.fnmatch(name, package_id):
                return self.packages[name]
        return None

    def remove(self, patterns: list[str]) -> ExecResult:
        argv = ("apt-get", "remove", "--purge", "-y", *patterns)
        self.calls.append(argv)
        self.packages = {name: v for name, v in self.packages.items() if not name.startswith("nvidia")}
        return _result(argv)

    # ---------- ServiceController ----------

    def is_active(self, service_id: str) -> bool:
        return service_id in self.active_services

    def restart(self, service_id: str) -> ExecResult:
        argv = ("systemctl", "restart", service_id)
        self.calls.append(argv)
        self.events.append(f"restart:{service_id}")
        if not self.restart_ok:
            return _result(argv, returncode=5, stderr=f"Failed to restart {service_id}.service")
        if self.smi_fixed_by_restart:
            self.smi_ok = True
        return _result(argv)

    # ---------- BootImageBuilder ----------

    def rebuild(self, kernel_version: str | None) -> ExecResult:
        argv = ("update-initramfs", "-u", "-k", kernel_version or "all")
        self.calls.append(argv)
        self.events.append(f"rebuild:{kernel_version or 'all'}")
        return _result(argv)

    def list_contents(self, image_path: Path) -> frozenset[str]:
        return frozenset(self.boot_image)

    # ---------- wiring ----------

    def probe(self) -> EnvironmentProbe:
        probe = EnvironmentProbe(
            self.config,
            runner=self.run,
            modules=self,
            installer=self,
            services=self,
            boot_images=self,
            pci_devices_dir=self.root / "sys/bus/pci/devices",
            proc_stat=self.root / "proc/stat",
            which=self.which,
        )
        probe.kernel_release = lambda: self.kernel  # type: ignore[method-assign]
        return probe

    def pipeline(self, reporter=None) -> DiagnosticPipeline:
        probe = self.probe()
        return DiagnosticPipeline(
            probe,
            RemediationActions(probe),
            VerificationGate(self.config.capability_command, runner=self.run),
            reporter=reporter,
            sleep=self.sleep,
        )

    def commands(self, name: str) -> list[tuple[str, ...]]:
        return [call for call in self.calls if call[0] == name]


@pytest.fixture
def machine(tmp_path: Path) -> FakeMachine:
    """A healthy fake host rooted in tmp_path."""
    return FakeMachine(tmp_path)
