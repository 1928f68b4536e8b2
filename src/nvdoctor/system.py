"""System collaborators: packages, services, kernel modules, boot images.

Each collaborator is a narrow protocol plus the Debian/systemd
implementation nvdoctor ships with. All command output parsing for these
tools stays in this module and in ``nvdoctor.probe``.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Protocol

from nvdoctor.exec import ExecResult, Runner, run_command

logger = logging.getLogger(__name__)

PROC_MODULES = Path("/proc/modules")


class PackageInstaller(Protocol):
    def install(self, package_ids: list[str]) -> ExecResult: ...

    def query_installed(self, package_id: str) -> str | None: ...

    def remove(self, patterns: list[str]) -> ExecResult: ...


class ServiceController(Protocol):
    def is_active(self, service_id: str) -> bool: ...

    def restart(self, service_id: str) -> ExecResult: ...


class ModuleController(Protocol):
    def list_loaded(self) -> frozenset[str]: ...

    def load(self, name: str) -> ExecResult: ...

    def unload(self, name: str) -> ExecResult: ...

    def refresh_dependencies(self) -> ExecResult: ...


class BootImageBuilder(Protocol):
    def rebuild(self, kernel_version: str | None) -> ExecResult: ...

    def list_contents(self, image_path: Path) -> frozenset[str]: ...


class AptInstaller:
    """apt-get/dpkg-query backed installer."""

    def __init__(self, runner: Runner = run_command):
        self._run = runner

    def _apt(self, *args: str) -> ExecResult:
        env = {**os.environ, "DEBIAN_FRONTEND": "noninteractive"}
        return self._run(["apt-get", *args], env=env)

    def install(self, package_ids: list[str]) -> ExecResult:
        update = self._apt("update")
        if not update.ok:
            return update
        return self._apt("install", "-y", *package_ids)

    def query_installed(self, package_id: str) -> str | None:
        """Return the installed version of the first matching package, or None.

        ``package_id`` may be a dpkg glob such as ``nvidia-driver*``.
        """
        result = self._run(["dpkg-query", "-W", "-f=${Package}\t${Status}\t${Version}\n", package_id])
        if not result.ok:
            return None
        for line in result.stdout.splitlines():
            parts = line.split("\t")
            if len(parts) != 3:
                continue
            _name, status, version = parts
            if status.split()[-1:] == ["installed"] and version.strip():
                return version.strip()
        return None

    def remove(self, patterns: list[str]) -> ExecResult:
        purge = self._apt("remove", "--purge", "-y", *patterns)
        if not purge.ok:
            return purge
        return self._apt("autoremove", "-y")


class SystemdServices:
    """systemctl backed service controller."""

    def __init__(self, runner: Runner = run_command):
        self._run = runner

    def is_active(self, service_id: str) -> bool:
        return self._run(["systemctl", "is-active", "--quiet", service_id]).ok

    def restart(self, service_id: str) -> ExecResult:
        return self._run(["systemctl", "restart", service_id])


class KernelModules:
    """Module controller over /proc/modules, modprobe and depmod."""

    def __init__(self, runner: Runner = run_command, proc_modules: Path = PROC_MODULES):
        self._run = runner
        self._proc_modules = proc_modules

    def list_loaded(self) -> frozenset[str]:
        try:
            text = self._proc_modules.read_text(encoding="utf-8")
        except OSError:
            result = self._run(["lsmod"])
            if not result.ok:
                return frozenset()
            # lsmod prints a header row first
            text = "\n".join(result.stdout.splitlines()[1:])
        return frozenset(line.split()[0] for line in text.splitlines() if line.strip())

    def load(self, name: str) -> ExecResult:
        return self._run(["modprobe", name])

    def unload(self, name: str) -> ExecResult:
        return self._run(["modprobe", "-r", name])

    def refresh_dependencies(self) -> ExecResult:
        return self._run(["depmod", "-a"])


class InitramfsBuilder:
    """initramfs-tools backed boot image builder."""

    def __init__(self, runner: Runner = run_command):
        self._run = runner

    def rebuild(self, kernel_version: str | None) -> ExecResult:
        target = kernel_version if kernel_version is not None else "all"
        return self._run(["update-initramfs", "-u", "-k", target])

    def list_contents(self, image_path: Path) -> frozenset[str]:
        if not image_path.exists():
            logger.debug("Boot image not found: %s", image_path)
            return frozenset()
        result = self._run(["lsinitramfs", str(image_path)])
        if not result.ok:
            return frozenset()
        return frozenset(line.strip() for line in result.stdout.splitlines() if line.strip())
