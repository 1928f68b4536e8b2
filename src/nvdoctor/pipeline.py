"""Diagnostic and remediation pipeline.

Runs the ordered driver checks, applies a targeted fix after each non-OK
verdict that has one, handles the competing driver conflict in two phases,
then applies the bundled fixes and runs the final capability test.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime
from functools import partial
from typing import Protocol

from nvdoctor.config import DriverConfig
from nvdoctor.exec import run_command
from nvdoctor.guidance import (
    CAPABILITY_INTERFACE_GUIDANCE,
    CONFLICT_REBOOT_GUIDANCE,
    HARDWARE_GUIDANCE,
    RESTART_FAILED_GUIDANCE,
    SECURE_BOOT_GUIDANCE,
    competing_driver_guidance,
    headers_guidance,
    manual_fix_lines,
    package_guidance,
    reboot_guidance,
)
from nvdoctor.probe import EnvironmentProbe
from nvdoctor.remediation import RemediationActions
from nvdoctor.types import (
    CheckResult,
    ConflictResolution,
    RemediationOutcome,
    RunOutcome,
    RunReport,
    Verdict,
    VerificationResult,
)
from nvdoctor.verification import VerificationGate

logger = logging.getLogger(__name__)

# A FAILURE from either of these ends the run: nothing further to diagnose.
PRECONDITION_CHECKS = frozenset({"hardware", "capability_interface"})


class PipelineReporter(Protocol):
    def on_stage(self, title: str) -> None: ...

    def on_check(self, result: CheckResult) -> None: ...

    def on_remediation(self, outcome: RemediationOutcome) -> None: ...

    def on_verification(self, result: VerificationResult, *, nested: bool) -> None: ...


class NullReporter:
    def on_stage(self, title: str) -> None:
        pass

    def on_check(self, result: CheckResult) -> None:
        pass

    def on_remediation(self, outcome: RemediationOutcome) -> None:
        pass

    def on_verification(self, result: VerificationResult, *, nested: bool) -> None:
        pass


def _get_deterministic_timestamp() -> str:
    """Get deterministic timestamp for testing."""
    return "1970-01-01T00:00:00Z"


def _get_wallclock_timestamp() -> str:
    """Get current wallclock timestamp."""
    return datetime.now(UTC).isoformat()


class DiagnosticPipeline:
    """One diagnostic run per ``run()`` call, each with its own RunReport."""

    def __init__(
        self,
        probe: EnvironmentProbe,
        actions: RemediationActions,
        gate: VerificationGate,
        *,
        reporter: PipelineReporter | None = None,
        sleep: Callable[[float], None] = time.sleep,
        timestamp_mode: str = "deterministic",
    ):
        self.probe = probe
        self.actions = actions
        self.gate = gate
        self.config = probe.config
        self.reporter = reporter or NullReporter()
        self._sleep = sleep
        self.timestamp_mode = timestamp_mode

    # ---------- entry points ----------

    def run(self) -> RunReport:
        """Full diagnostics: checks, bundled fixes, final verification."""
        report = self._new_report("diagnose")
        try:
            if self._run_checks(report):
                self._bundled_pass(report)
                self._final_verification(report)
        except KeyboardInterrupt:
            logger.error("Run interrupted by user")
            report.abort(RunOutcome.INTERRUPTED, "Interrupted by user")
        return report.finalize()

    def run_fixes(self) -> RunReport:
        """Fix-only mode: bundled fixes followed by the capability test."""
        report = self._new_report("fix")
        try:
            self._bundled_pass(report)
            self._verify(report)
        except KeyboardInterrupt:
            logger.error("Run interrupted by user")
            report.abort(RunOutcome.INTERRUPTED, "Interrupted by user")
        return report.finalize()

    # ---------- plumbing ----------

    def _new_report(self, mode: str) -> RunReport:
        if self.timestamp_mode == "deterministic":
            generated_at = _get_deterministic_timestamp()
        else:
            generated_at = _get_wallclock_timestamp()
        return RunReport(
            mode=mode,  # type: ignore[arg-type]
            kernel_release=self.probe.kernel_release(),
            generated_at=generated_at,
            timestamp_mode=self.timestamp_mode,
        )

    def _record(self, report: RunReport, outcome: RemediationOutcome) -> RemediationOutcome:
        report.record(outcome)
        self.reporter.on_remediation(outcome)
        return outcome

    # ---------- checks ----------

    def _run_checks(self, report: RunReport) -> bool:
        """Run every check in order. Returns False if the run was aborted."""
        kernel = report.kernel_release
        steps: list[tuple[str, Callable[[str], CheckResult], Callable[[RunReport], None] | None]] = [
            ("Step 1: Hardware Detection", self._check_hardware, None),
            ("Capability Interface", self._check_capability_interface, None),
            ("Step 2: Kernel Module Status", self._check_kernel_module, self._fix_kernel_module),
            ("Step 3: Competing Driver Check", self._check_competing_driver, self._resolve_conflict),
            ("Step 4: Secure Boot Check", self._check_secure_boot, None),
            ("Step 5: Kernel Headers Check", self._check_kernel_headers, self._fix_kernel_headers),
            ("Step 6: Driver Package Check", self._check_driver_package, None),
            ("Step 7: Boot Image Check", self._check_boot_image, self._fix_boot_image),
            ("Step 8: Reboot Check", self._check_reboot_pending, None),
        ]

        for title, check, fix in steps:
            self.reporter.on_stage(title)
            result = report.add_check(check(kernel))
            self.reporter.on_check(result)

            if result.check_id in PRECONDITION_CHECKS and result.verdict is Verdict.FAILURE:
                logger.error("Aborting diagnostics: %s", result.detail)
                report.add_guidance(manual_fix_lines())
                report.abort(RunOutcome.UNRECOVERABLE_PRECONDITION, result.detail)
                return False

            if not result.ok and result.remediable and fix is not None:
                fix(report)

        return True

    def _check_hardware(self, kernel: str) -> CheckResult:
        devices = self.probe.pci_devices()
        if devices:
            return CheckResult(
                check_id="hardware",
                verdict=Verdict.OK,
                detail="NVIDIA hardware detected:\n" + "\n".join(devices),
            )
        return CheckResult(
            check_id="hardware",
            verdict=Verdict.FAILURE,
            detail="No NVIDIA hardware detected by system",
            guidance=HARDWARE_GUIDANCE,
        )

    def _check_capability_interface(self, kernel: str) -> CheckResult:
        command = self.config.capability_command
        path = self.probe.capability_interface()
        if path:
            return CheckResult(
                check_id="capability_interface",
                verdict=Verdict.OK,
                detail=f"{command} command found at {path}",
            )
        return CheckResult(
            check_id="capability_interface",
            verdict=Verdict.FAILURE,
            detail=f"{command} command not found",
            guidance=CAPABILITY_INTERFACE_GUIDANCE,
        )

    def _check_kernel_module(self, kernel: str) -> CheckResult:
        module = self.config.target_module
        loaded = self.probe.loaded_modules()
        if module in loaded:
            related = sorted(name for name in loaded if name.startswith(module))
            return CheckResult(
                check_id="kernel_module",
                verdict=Verdict.OK,
                detail=f"NVIDIA kernel module is loaded ({', '.join(related)})",
            )
        return CheckResult(
            check_id="kernel_module",
            verdict=Verdict.WARNING,
            detail="NVIDIA kernel module is NOT loaded",
            remediable=True,
        )

    def _fix_kernel_module(self, report: RunReport) -> None:
        self._record(report, self.actions.load_module_set())

    def _check_competing_driver(self, kernel: str) -> CheckResult:
        driver = self.config.competing_driver
        if self.probe.competing_driver_loaded():
            return CheckResult(
                check_id="competing_driver",
                verdict=Verdict.CONFLICT,
                detail=f"{driver} driver is loaded (conflicts with NVIDIA)",
                remediable=True,
            )
        return CheckResult(
            check_id="competing_driver",
            verdict=Verdict.OK,
            detail=f"No {driver} driver detected",
        )

    def _resolve_conflict(self, report: RunReport) -> None:
        """Blacklist the competing driver; restart the display layer holding it."""
        driver = self.config.competing_driver
        conflict = report.set_conflict(ConflictResolution(driver=driver))

        blacklist = self._record(report, self.actions.write_blacklist())

        layer = self.probe.active_display_layer()
        conflict.display_layer = layer
        if layer is None:
            unload = self._record(report, self.actions.unload_module(driver))
            still_loaded = unload.failed and driver in self.probe.loaded_modules()
            if blacklist.failed or still_loaded:
                logger.warning("%s conflict not handled (blacklisted=%s)", driver, not blacklist.failed)
                conflict.status = "unresolved"
                report.add_guidance(
                    competing_driver_guidance(driver, self.config.blacklist_path, blacklisted=not blacklist.failed)
                )
            else:
                conflict.status = "blacklisted"
            return

        conflict.phase = 2
        logger.warning("%s is running with the %s driver", layer, driver)
        self.reporter.on_stage(f"Special Handling: {layer}/{driver} Conflict")

        self._record(report, self.actions.rebuild_boot_image(None))

        restart = self._record(report, self.actions.restart_service(layer))
        if not restart.applied:
            conflict.status = "unresolved"
            report.add_guidance(RESTART_FAILED_GUIDANCE)
            return

        logger.info("Waiting %ss for %s to settle", self.config.settle_seconds, layer)
        self._sleep(self.config.settle_seconds)

        nested = self.gate.run()
        conflict.nested_verification = nested
        self.reporter.on_verification(nested, nested=True)
        if nested.passed:
            conflict.status = "resolved"
        else:
            logger.warning("Capability test still failing after restarting %s", layer)
            conflict.status = "unresolved"
            report.add_guidance(CONFLICT_REBOOT_GUIDANCE)

    def _check_secure_boot(self, kernel: str) -> CheckResult:
        state = self.probe.secure_boot_state()
        if state == "enabled":
            return CheckResult(
                check_id="secure_boot",
                verdict=Verdict.WARNING,
                detail="Secure Boot is ENABLED",
                guidance=SECURE_BOOT_GUIDANCE,
            )
        if state == "unknown":
            return CheckResult(
                check_id="secure_boot",
                verdict=Verdict.OK,
                detail="Secure Boot state unknown (mokutil unavailable), skipping",
            )
        return CheckResult(
            check_id="secure_boot",
            verdict=Verdict.OK,
            detail="Secure Boot is disabled or not active",
        )

    def _check_kernel_headers(self, kernel: str) -> CheckResult:
        if self.probe.kernel_headers_present(kernel):
            return CheckResult(
                check_id="kernel_headers",
                verdict=Verdict.OK,
                detail=f"Kernel headers found for version {kernel}",
            )
        return CheckResult(
            check_id="kernel_headers",
            verdict=Verdict.WARNING,
            detail=f"Kernel headers not found for version {kernel}",
            remediable=True,
        )

    def _fix_kernel_headers(self, report: RunReport) -> None:
        outcome = self._record(report, self.actions.install_headers(report.kernel_release))
        if outcome.failed:
            report.add_guidance(headers_guidance(report.kernel_release))

    def _check_driver_package(self, kernel: str) -> CheckResult:
        package = self.config.driver_package
        version = self.probe.installed_driver_version()
        if version is None:
            return CheckResult(
                check_id="driver_package",
                verdict=Verdict.FAILURE,
                detail="NVIDIA driver package not found",
                guidance=package_guidance(package, installed=False),
            )
        if not self.probe.driver_functional():
            return CheckResult(
                check_id="driver_package",
                verdict=Verdict.WARNING,
                detail=f"NVIDIA driver package {version} installed but not functioning properly",
                guidance=package_guidance(package, installed=True),
            )
        return CheckResult(
            check_id="driver_package",
            verdict=Verdict.OK,
            detail=f"NVIDIA driver package installed: version {version}",
        )

    def _check_boot_image(self, kernel: str) -> CheckResult:
        if self.probe.boot_image_has_module(kernel):
            return CheckResult(
                check_id="boot_image",
                verdict=Verdict.OK,
                detail="NVIDIA modules are in initramfs",
            )
        return CheckResult(
            check_id="boot_image",
            verdict=Verdict.WARNING,
            detail="NVIDIA modules may not be in initramfs",
            remediable=True,
        )

    def _fix_boot_image(self, report: RunReport) -> None:
        self._record(report, self.actions.rebuild_boot_image(report.kernel_release))

    def _check_reboot_pending(self, kernel: str) -> CheckResult:
        entry = self.probe.recent_install_entry()
        if entry is None:
            return CheckResult(
                check_id="reboot_pending",
                verdict=Verdict.OK,
                detail="No NVIDIA driver installation recorded",
            )
        booted = self.probe.boot_time()
        if entry.timestamp is not None and booted is not None and entry.timestamp < booted:
            return CheckResult(
                check_id="reboot_pending",
                verdict=Verdict.OK,
                detail="Last NVIDIA driver installation predates the current boot",
            )
        return CheckResult(
            check_id="reboot_pending",
            verdict=Verdict.WARNING,
            detail="NVIDIA drivers were recently installed",
            guidance=reboot_guidance(entry.line),
        )

    # ---------- after the checks ----------

    def _bundled_pass(self, report: RunReport) -> None:
        """Known-good fixes applied regardless of check verdicts."""
        kernel = report.kernel_release
        self.reporter.on_stage("Applying Automatic Fixes")

        self._record(report, self.actions.load_module_set())
        self._record(report, self.actions.refresh_module_dependencies(kernel))

        if self.probe.target_module_loaded() and not self.probe.boot_image_has_module(kernel):
            self._record(report, self.actions.rebuild_boot_image(kernel))

    def _final_verification(self, report: RunReport) -> None:
        kernel = report.kernel_release
        # headers and package must be in place before the capability test
        if not self.probe.kernel_headers_present(kernel):
            self._record(report, self.actions.install_headers(kernel))
        if self.probe.installed_driver_version() is None:
            self._record(report, self.actions.install_driver_package())
        self._verify(report)

    def _verify(self, report: RunReport) -> None:
        self.reporter.on_stage(f"{self.config.capability_command} Test")
        result = self.gate.run()
        report.set_verification(result)
        self.reporter.on_verification(result, nested=False)

        if result.passed:
            report.conclude(RunOutcome.HEALTHY if report.fix_count == 0 else RunOutcome.RESOLVED)
            return

        if report.conflict is not None and report.conflict.status == "unresolved":
            report.conclude(RunOutcome.CONFLICT_UNRESOLVED)
        else:
            report.conclude(RunOutcome.VERIFICATION_FAILED)
        report.add_guidance(manual_fix_lines())


def build_pipeline(
    config: DriverConfig,
    *,
    reporter: PipelineReporter | None = None,
    timestamp_mode: str = "deterministic",
) -> DiagnosticPipeline:
    """Wire the pipeline against the real system collaborators."""
    runner = partial(run_command, timeout=config.command_timeout)
    probe = EnvironmentProbe(config, runner=runner)
    return DiagnosticPipeline(
        probe,
        RemediationActions(probe),
        VerificationGate(config.capability_command, runner=runner),
        reporter=reporter,
        timestamp_mode=timestamp_mode,
    )
