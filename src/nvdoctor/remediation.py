"""Idempotent corrective actions.

Every action returns a RemediationOutcome and never raises for a failed
command. An action whose target state already holds is a no-op with
``applied=False``. Actions never retry; recording outcomes in the run's
FixLedger is the caller's job.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from nvdoctor.exec import ExecResult
from nvdoctor.probe import EnvironmentProbe
from nvdoctor.types import RemediationOutcome

logger = logging.getLogger(__name__)


def render_blacklist(driver: str) -> str:
    lines = [
        f"# Blacklist {driver} driver to prevent conflicts with the NVIDIA driver",
        f"blacklist {driver}",
        f"blacklist lbm-{driver}",
        f"options {driver} modeset=0",
        f"install {driver} /bin/false",
        "",
    ]
    return "\n".join(lines)


def _atomic_write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            dir=path.parent,
            delete=False,
            prefix=f".{path.name}.",
            suffix=".nvdoctor.tmp",
        ) as tmp_file:
            tmp_path = Path(tmp_file.name)
            tmp_file.write(content)
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, path)
    except Exception:
        # Clean up temp file if it exists
        if "tmp_path" in locals() and tmp_path.exists():
            tmp_path.unlink()
        raise


class RemediationActions:
    """Corrective operations over the probe's system collaborators."""

    def __init__(self, probe: EnvironmentProbe):
        self.probe = probe
        self.config = probe.config

    def _from_exec(self, action_id: str, result: ExecResult, detail: str) -> RemediationOutcome:
        if result.ok:
            logger.info("%s: %s", action_id, detail)
            return RemediationOutcome(action_id=action_id, applied=True, detail=detail)
        logger.warning("%s failed: %s", action_id, result.error_detail())
        return RemediationOutcome(
            action_id=action_id,
            applied=False,
            detail=f"Failed: {detail}",
            error_detail=result.error_detail(),
        )

    @staticmethod
    def _noop(action_id: str, detail: str) -> RemediationOutcome:
        return RemediationOutcome(action_id=action_id, applied=False, detail=detail)

    # ---------- kernel modules ----------

    def unload_module(self, name: str) -> RemediationOutcome:
        action_id = f"unload_module:{name}"
        if name not in self.probe.loaded_modules():
            return self._noop(action_id, f"{name} not loaded")
        return self._from_exec(action_id, self.probe.modules.unload(name), f"Unloaded kernel module {name}")

    def load_module_set(self) -> RemediationOutcome:
        """Load every module of the driver set that is not loaded yet.

        Only the target module is required; the others are loaded best
        effort, the way modprobe pulls them in on a working install.
        """
        action_id = "load_module_set"
        target = self.config.target_module
        loaded = self.probe.loaded_modules()
        missing = [module for module in self.config.module_set if module not in loaded]
        if not missing:
            return self._noop(action_id, f"{', '.join(self.config.module_set)} already loaded")

        newly_loaded: list[str] = []
        target_error: str | None = None
        for module in missing:
            result = self.probe.modules.load(module)
            if result.ok:
                newly_loaded.append(module)
            elif module == target:
                target_error = result.error_detail()
                break
            else:
                logger.debug("Could not load %s: %s", module, result.error_detail())

        if target_error is not None:
            logger.warning("%s failed: %s", action_id, target_error)
            return RemediationOutcome(
                action_id=action_id,
                applied=False,
                detail=f"Failed to load kernel module {target}",
                error_detail=target_error,
            )
        if not newly_loaded:
            return self._noop(action_id, f"Optional modules could not be loaded: {', '.join(missing)}")
        logger.info("%s: loaded %s", action_id, ", ".join(newly_loaded))
        return RemediationOutcome(
            action_id=action_id,
            applied=True,
            detail=f"Loaded kernel modules: {', '.join(newly_loaded)}",
        )

    def reload_module_set(self) -> RemediationOutcome:
        """Unload the driver set in reverse dependency order, then load it again."""
        action_id = "reload_module_set"
        loaded = self.probe.loaded_modules()
        for module in reversed(self.config.module_set):
            if module in loaded:
                result = self.probe.modules.unload(module)
                if not result.ok:
                    logger.debug("Could not unload %s: %s", module, result.error_detail())

        target = self.probe.modules.load(self.config.target_module)
        if not target.ok:
            return self._from_exec(action_id, target, f"Reloaded {self.config.target_module} modules")
        for module in self.config.module_set:
            if module != self.config.target_module:
                result = self.probe.modules.load(module)
                if not result.ok:
                    logger.debug("Could not load %s: %s", module, result.error_detail())
        return self._from_exec(action_id, target, f"Reloaded {self.config.target_module} modules")

    def refresh_module_dependencies(self, kernel: str) -> RemediationOutcome:
        action_id = "refresh_module_dependencies"
        before = self.probe.module_dependency_digest(kernel)
        result = self.probe.modules.refresh_dependencies()
        if not result.ok:
            return self._from_exec(action_id, result, "Updated module dependencies")
        if self.probe.module_dependency_digest(kernel) == before:
            return self._noop(action_id, "Module dependencies already up to date")
        return self._from_exec(action_id, result, "Updated module dependencies")

    # ---------- competing driver ----------

    def write_blacklist(self) -> RemediationOutcome:
        """Rewrite the blacklist directive for the competing driver."""
        driver = self.config.competing_driver
        path = self.config.blacklist_path
        action_id = f"blacklist:{driver}"
        try:
            _atomic_write(path, render_blacklist(driver))
        except OSError as exc:
            logger.warning("%s failed: %s", action_id, exc)
            return RemediationOutcome(
                action_id=action_id,
                applied=False,
                detail=f"Failed to write {path}",
                error_detail=f"Failed to write blacklist file {path}: {exc}",
            )
        logger.info("Wrote %s blacklist to %s", driver, path)
        return RemediationOutcome(action_id=action_id, applied=True, detail=f"{driver} blacklist written to {path}")

    # ---------- packages ----------

    def install_packages(self, package_ids: list[str], action_id: str) -> RemediationOutcome:
        missing = [package for package in package_ids if self.probe.installer.query_installed(package) is None]
        if not missing:
            return self._noop(action_id, f"Already installed: {', '.join(package_ids)}")
        return self._from_exec(action_id, self.probe.installer.install(missing), f"Installed {', '.join(missing)}")

    def install_headers(self, kernel: str) -> RemediationOutcome:
        return self.install_packages([f"linux-headers-{kernel}"], action_id="install_headers")

    def install_driver_package(self) -> RemediationOutcome:
        return self.install_packages([self.config.driver_package], action_id="install_driver_package")

    def purge_driver_packages(self) -> RemediationOutcome:
        action_id = "purge_driver_packages"
        if self.probe.installed_driver_version() is None:
            return self._noop(action_id, "No NVIDIA driver package installed")
        return self._from_exec(
            action_id,
            self.probe.installer.remove(list(self.config.purge_patterns)),
            "Removed NVIDIA driver packages; reboot and reinstall",
        )

    # ---------- boot image ----------

    def rebuild_boot_image(self, kernel: str | None) -> RemediationOutcome:
        """Rebuild the initramfs for ``kernel``, or for every kernel when None."""
        target = kernel or "all"
        return self._from_exec(
            f"rebuild_boot_image:{target}",
            self.probe.boot_images.rebuild(kernel),
            f"Rebuilt initramfs ({target})",
        )

    # ---------- services ----------

    def restart_service(self, service_id: str) -> RemediationOutcome:
        action_id = f"restart_service:{service_id}"
        if service_id not in self.config.display_services:
            return RemediationOutcome(
                action_id=action_id,
                applied=False,
                detail="No supported display manager found to restart",
                error_detail=f"{service_id} is not a restartable display manager service",
            )
        return self._from_exec(action_id, self.probe.services.restart(service_id), f"Restarted {service_id}")
