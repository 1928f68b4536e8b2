"""End-to-end capability test."""

from __future__ import annotations

import logging

from nvdoctor.exec import Runner, run_command
from nvdoctor.types import VerificationResult

logger = logging.getLogger(__name__)


class VerificationGate:
    """Runs the capability command and classifies the result on exit status only."""

    def __init__(self, command: str = "nvidia-smi", *, runner: Runner = run_command, timeout: float = 60):
        self.command = command
        self._run = runner
        self._timeout = timeout

    def run(self) -> VerificationResult:
        result = self._run([self.command], timeout=self._timeout)
        if result.ok:
            logger.info("%s succeeded", self.command)
        else:
            logger.warning("%s failed with exit code %s", self.command, result.returncode)
        return VerificationResult(
            passed=result.ok,
            captured_output=result.output,
            returncode=result.returncode,
        )
