"""Types for nvdoctor diagnostic runs."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Literal


class Verdict(str, Enum):
    """Health classification for a single check."""

    OK = "ok"
    WARNING = "warning"
    FAILURE = "failure"
    CONFLICT = "conflict"


class RunOutcome(str, Enum):
    """Terminal state of a pipeline run."""

    HEALTHY = "healthy"
    RESOLVED = "resolved"
    CONFLICT_UNRESOLVED = "conflict-unresolved"
    VERIFICATION_FAILED = "verification-failed"
    UNRECOVERABLE_PRECONDITION = "unrecoverable-precondition"
    INTERRUPTED = "interrupted"

    @property
    def succeeded(self) -> bool:
        return self in (RunOutcome.HEALTHY, RunOutcome.RESOLVED)


@dataclass(frozen=True)
class CheckResult:
    """Individual check result."""

    check_id: str
    verdict: Verdict
    detail: str
    remediable: bool = False
    guidance: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.verdict is Verdict.OK


@dataclass(frozen=True)
class RemediationOutcome:
    """Result of one corrective action.

    ``applied`` is true only when the action succeeded and changed system
    state. A converged no-op has ``applied=False`` and no ``error_detail``.
    """

    action_id: str
    applied: bool
    detail: str = ""
    error_detail: str | None = None

    @property
    def failed(self) -> bool:
        return self.error_detail is not None


@dataclass(frozen=True)
class VerificationResult:
    """Capability test result, classified on exit status only."""

    passed: bool
    captured_output: str
    returncode: int | None = None
    skipped: bool = False

    @classmethod
    def not_run(cls, reason: str) -> "VerificationResult":
        return cls(passed=False, captured_output=reason, returncode=None, skipped=True)


@dataclass
class ConflictResolution:
    """Progress of the two-phase competing driver remediation."""

    driver: str
    display_layer: str | None = None
    phase: Literal[1, 2] = 1
    status: Literal["blacklisted", "resolved", "unresolved"] = "blacklisted"
    nested_verification: VerificationResult | None = None

    @property
    def resolved(self) -> bool:
        return self.status != "unresolved"


class FixLedger:
    """Run-scoped log of remediation outcomes and applied-fix counter."""

    def __init__(self) -> None:
        self._outcomes: list[RemediationOutcome] = []
        self._count = 0

    def record(self, outcome: RemediationOutcome) -> RemediationOutcome:
        self._outcomes.append(outcome)
        if outcome.applied:
            self._count += 1
        return outcome

    @property
    def count(self) -> int:
        return self._count

    @property
    def outcomes(self) -> tuple[RemediationOutcome, ...]:
        return tuple(self._outcomes)

    def summary(self) -> str:
        noun = "fix" if self._count == 1 else "fixes"
        return f"{self._count} automatic {noun} applied"


@dataclass
class RunReport:
    """Complete record of one pipeline run.

    Mutated in place by the pipeline, read-only after ``finalize()``.
    """

    mode: Literal["diagnose", "fix"] = "diagnose"
    kernel_release: str = ""
    generated_at: str = ""
    timestamp_mode: str = "deterministic"
    checks: list[CheckResult] = field(default_factory=list)
    ledger: FixLedger = field(default_factory=FixLedger)
    conflict: ConflictResolution | None = None
    guidance: list[str] = field(default_factory=list)
    verification: VerificationResult | None = None
    outcome: RunOutcome | None = None
    abort_reason: str | None = None
    finalized: bool = False

    def _ensure_open(self) -> None:
        if self.finalized:
            raise RuntimeError("RunReport is finalized and can no longer be modified")

    def add_check(self, result: CheckResult) -> CheckResult:
        self._ensure_open()
        if any(existing.check_id == result.check_id for existing in self.checks):
            raise RuntimeError(f"Duplicate check result for {result.check_id}")
        self.checks.append(result)
        self.guidance.extend(result.guidance)
        return result

    def record(self, outcome: RemediationOutcome) -> RemediationOutcome:
        self._ensure_open()
        return self.ledger.record(outcome)

    def add_guidance(self, lines: list[str] | tuple[str, ...]) -> None:
        self._ensure_open()
        self.guidance.extend(lines)

    def set_verification(self, result: VerificationResult) -> None:
        self._ensure_open()
        if self.verification is not None:
            raise RuntimeError("Verification result already recorded for this run")
        self.verification = result

    def set_conflict(self, conflict: ConflictResolution) -> ConflictResolution:
        self._ensure_open()
        self.conflict = conflict
        return conflict

    def conclude(self, outcome: RunOutcome) -> None:
        self._ensure_open()
        self.outcome = outcome

    def abort(self, outcome: RunOutcome, reason: str) -> None:
        self._ensure_open()
        self.outcome = outcome
        self.abort_reason = reason
        if self.verification is None:
            self.verification = VerificationResult.not_run(reason)

    def finalize(self) -> "RunReport":
        self._ensure_open()
        if self.outcome is None:
            raise RuntimeError("Cannot finalize a RunReport without an outcome")
        if self.verification is None:
            raise RuntimeError("Cannot finalize a RunReport without a verification result")
        self.finalized = True
        return self

    @property
    def remediations(self) -> tuple[RemediationOutcome, ...]:
        return self.ledger.outcomes

    @property
    def fix_count(self) -> int:
        return self.ledger.count

    def check(self, check_id: str) -> CheckResult | None:
        for result in self.checks:
            if result.check_id == check_id:
                return result
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "kernel_release": self.kernel_release,
            "generated_at": self.generated_at,
            "timestamp_mode": self.timestamp_mode,
            "outcome": self.outcome.value if self.outcome else None,
            "abort_reason": self.abort_reason,
            "checks": [
                {**asdict(result), "verdict": result.verdict.value, "guidance": list(result.guidance)}
                for result in self.checks
            ],
            "remediations": [asdict(outcome) for outcome in self.remediations],
            "fixes_applied": self.fix_count,
            "fix_summary": self.ledger.summary(),
            "conflict": asdict(self.conflict) if self.conflict else None,
            "verification": asdict(self.verification) if self.verification else None,
            "guidance": list(self.guidance),
        }
