from __future__ import annotations

import os
from collections.abc import Sequence
from itertools import cycle

from rich.console import Console
from rich.text import Text

from nvdoctor.guidance import manual_fix_lines
from nvdoctor.types import (
    CheckResult,
    RemediationOutcome,
    RunOutcome,
    RunReport,
    Verdict,
    VerificationResult,
)

console = Console()

NEON_LINES: list[str] = [
    "███╗   ██╗██╗   ██╗██████╗  ██████╗  ██████╗",
    "████╗  ██║██║   ██║██╔══██╗██╔═══██╗██╔════╝",
    "██╔██╗ ██║██║   ██║██║  ██║██║   ██║██║     ",
    "██║╚██╗██║╚██╗ ██╔╝██║  ██║██║   ██║██║     ",
    "██║ ╚████║ ╚████╔╝ ██████╔╝╚██████╔╝╚██████╗",
    "╚═╝  ╚═══╝  ╚═══╝  ╚═════╝  ╚═════╝  ╚═════╝",
]

THEMES: dict[str, list[str]] = {
    "toxic_lime": [
        "bright_green",
        "green",
        "bright_yellow",
        "yellow",
        "bright_cyan",
        "cyan",
    ],
    "mintwave": [
        "bright_cyan",
        "cyan",
        "bright_blue",
        "blue",
        "bright_green",
        "green",
    ],
    "magma": [
        "bright_red",
        "red",
        "bright_yellow",
        "yellow",
        "bright_magenta",
        "magenta",
    ],
}

VERDICT_STYLES: dict[Verdict, tuple[str, str]] = {
    Verdict.OK: ("✓", "green"),
    Verdict.WARNING: ("⚠", "yellow"),
    Verdict.FAILURE: ("✗", "red"),
    Verdict.CONFLICT: ("⚠", "bold yellow"),
}

OUTCOME_STYLES: dict[RunOutcome, str] = {
    RunOutcome.HEALTHY: "bold bright_white on green",
    RunOutcome.RESOLVED: "bold bright_white on green",
    RunOutcome.CONFLICT_UNRESOLVED: "bold bright_white on red",
    RunOutcome.VERIFICATION_FAILED: "bold bright_white on red",
    RunOutcome.UNRECOVERABLE_PRECONDITION: "bold bright_white on red",
    RunOutcome.INTERRUPTED: "bold black on yellow",
}


def neon_enabled() -> bool:
    return os.getenv("NVDOCTOR_NEON", "1") == "1"


def get_theme_name() -> str:
    return os.getenv("NVDOCTOR_THEME", "toxic_lime")


def get_theme_palette(theme: str | None = None) -> list[str]:
    name = theme or get_theme_name()
    return THEMES.get(name, THEMES["toxic_lime"])


def should_show_banner(argv: Sequence[str]) -> bool:
    if not neon_enabled():
        return False
    if len(argv) <= 1:
        return True
    if any(a in ("--help", "-h", "--version") for a in argv[1:]):
        return True
    return False


def render_banner(theme: str | None = None) -> None:
    if not neon_enabled():
        return

    palette = get_theme_palette(theme)
    colors = cycle(palette)
    for line in NEON_LINES:
        t = Text()
        for ch in line:
            t.append(ch, style=f"bold {next(colors)}")
        console.print(t)

    console.print()
    console.print(Text("NVIDIA DRIVER DIAGNOSTICS AND REPAIR", style="bold bright_white on green"))
    console.print(Text(f"Theme: {theme or get_theme_name()}  Toggle: NVDOCTOR_NEON=0", style="dim"))
    console.print()


def print_header(title: str) -> None:
    console.rule(Text(title, style="bold bright_white"), style="blue")


def print_success(msg: str) -> None:
    console.print(Text(f"✓ {msg}", style="green"))


def print_warning(msg: str) -> None:
    console.print(Text(f"⚠ {msg}", style="yellow"))


def print_error(msg: str) -> None:
    console.print(Text(f"✗ {msg}", style="red"))


def print_info(msg: str) -> None:
    console.print(Text(f"ℹ {msg}", style="cyan"))


def print_fix(msg: str) -> None:
    console.print(Text(f"🔧 {msg}", style="magenta"))


def print_check(result: CheckResult) -> None:
    symbol, style = VERDICT_STYLES[result.verdict]
    first, *rest = result.detail.splitlines() or [""]
    console.print(Text(f"{symbol} {first}", style=style))
    for line in rest:
        console.print(Text(f"  • {line}"))
    for line in result.guidance:
        console.print(Text(f"  {line}", style="dim"))


def print_remediation(outcome: RemediationOutcome) -> None:
    if outcome.failed:
        print_error(f"{outcome.detail} ({outcome.error_detail})")
    elif outcome.applied:
        print_fix(outcome.detail)
    else:
        print_info(outcome.detail)


def print_verification(result: VerificationResult, *, nested: bool = False) -> None:
    if result.passed:
        print_success("🎉 SUCCESS! nvidia-smi is now working!" if nested else "nvidia-smi is working!")
        console.print(Text("Output:", style="green"))
    else:
        print_error("nvidia-smi still not working" if nested else "nvidia-smi failed")
        console.print(Text("Error output:", style="red"))
    console.print(result.captured_output.rstrip(), markup=False, highlight=False)


def print_manual_fixes() -> None:
    print_header("Manual Fix Suggestions")
    console.print(Text("If automatic fixes didn't work, try these manual steps:", style="yellow"))
    console.print()
    for line in manual_fix_lines():
        if line.startswith("   "):
            console.print(line, markup=False, highlight=False)
        else:
            console.print()
            console.print(Text(line, style="cyan"))
    console.print()


class ConsoleReporter:
    """Renders pipeline progress on the rich console as it happens."""

    def on_stage(self, title: str) -> None:
        console.print()
        print_header(title)

    def on_check(self, result: CheckResult) -> None:
        print_check(result)

    def on_remediation(self, outcome: RemediationOutcome) -> None:
        print_remediation(outcome)

    def on_verification(self, result: VerificationResult, *, nested: bool) -> None:
        print_verification(result, nested=nested)


def render_run_summary(report: RunReport) -> None:
    """Final block printed after a diagnose or fix run."""
    outcome = report.outcome or RunOutcome.INTERRUPTED
    console.print()
    print_header("Summary")
    console.print(Text(f" {outcome.value.upper()} ", style=OUTCOME_STYLES[outcome]))
    if report.abort_reason:
        print_info(report.abort_reason)
    if report.conflict is not None:
        print_info(
            f"{report.conflict.driver} conflict: {report.conflict.status} "
            f"(phase {report.conflict.phase}, display layer: {report.conflict.display_layer or 'none'})"
        )
    console.print(Text(report.ledger.summary(), style="bold"))
    if outcome.succeeded:
        print_success("Problem appears to be resolved!" if outcome is RunOutcome.RESOLVED else "No issues found")
    elif outcome is not RunOutcome.INTERRUPTED:
        print_manual_fixes()
