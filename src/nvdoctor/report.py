"""RUN_REPORT.json / RUN_REPORT.md writers."""

from __future__ import annotations

import json
from pathlib import Path
from typing import TextIO

from nvdoctor.types import RunReport, Verdict

JSON_REPORT_NAME = "RUN_REPORT.json"
MD_REPORT_NAME = "RUN_REPORT.md"

_VERDICT_EMOJI = {
    Verdict.OK: "✅",
    Verdict.WARNING: "⚠️",
    Verdict.FAILURE: "❌",
    Verdict.CONFLICT: "⚔️",
}


def write_run_report(out_dir: Path, report: RunReport) -> tuple[Path, Path]:
    """Write the finalized report as JSON and markdown.

    Args:
        out_dir: Directory to write report files
        report: A finalized RunReport

    Returns:
        Paths of the JSON and markdown files
    """
    if not report.finalized:
        raise RuntimeError("Only finalized run reports can be written")

    out_dir.mkdir(parents=True, exist_ok=True)

    json_path = out_dir / JSON_REPORT_NAME
    with open(json_path, "w", encoding="utf-8") as f:
        json.dump(report.to_dict(), f, indent=2, sort_keys=True)

    md_path = out_dir / MD_REPORT_NAME
    with open(md_path, "w", encoding="utf-8") as f:
        _write_markdown_report(f, report)

    return json_path, md_path


def _write_markdown_report(f: TextIO, report: RunReport) -> None:
    """Write human-readable markdown report."""
    f.write("# nvdoctor Run Report\n\n")

    outcome = report.outcome.value if report.outcome else "unknown"
    status_emoji = "✅" if report.outcome and report.outcome.succeeded else "❌"
    f.write(f"**Outcome**: {status_emoji} {outcome.upper()}\n\n")
    f.write(f"**Mode**: {report.mode}\n\n")
    f.write(f"**Kernel**: {report.kernel_release}\n\n")
    f.write(f"**Generated**: {report.generated_at} ({report.timestamp_mode})\n\n")
    if report.abort_reason:
        f.write(f"**Aborted**: {report.abort_reason}\n\n")

    if report.checks:
        f.write("## Checks\n\n")
        for check in report.checks:
            first_line = check.detail.splitlines()[0] if check.detail else ""
            f.write(f"### {_VERDICT_EMOJI[check.verdict]} {check.check_id}\n\n")
            f.write(f"**Verdict**: {check.verdict.value}\n\n")
            f.write(f"{first_line}\n\n")

    f.write("## Remediations\n\n")
    f.write(f"{report.ledger.summary()}\n\n")
    for outcome_item in report.remediations:
        marker = "applied" if outcome_item.applied else ("failed" if outcome_item.failed else "no-op")
        f.write(f"- `{outcome_item.action_id}` ({marker}): {outcome_item.detail}\n")
        if outcome_item.error_detail:
            f.write(f"  - Error: {outcome_item.error_detail}\n")
    f.write("\n")

    if report.conflict is not None:
        f.write("## Competing Driver\n\n")
        f.write(f"- Driver: {report.conflict.driver}\n")
        f.write(f"- Display layer: {report.conflict.display_layer or 'none'}\n")
        f.write(f"- Phase: {report.conflict.phase}\n")
        f.write(f"- Status: {report.conflict.status}\n\n")

    if report.verification is not None:
        f.write("## Verification\n\n")
        if report.verification.skipped:
            f.write("Not run.\n\n")
        else:
            f.write(f"- Passed: {report.verification.passed}\n")
            f.write(f"- Exit status: {report.verification.returncode}\n\n")
        if report.verification.captured_output.strip():
            f.write("```\n")
            f.write(report.verification.captured_output.rstrip() + "\n")
            f.write("```\n\n")

    if report.guidance:
        f.write("## Guidance\n\n")
        for line in report.guidance:
            f.write(f"{line}\n" if line.startswith("   ") else f"- {line}\n")
        f.write("\n")
