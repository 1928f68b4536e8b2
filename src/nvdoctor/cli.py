"""nvdoctor CLI - NVIDIA driver diagnostics and repair."""

import logging
import os
import sys
from collections.abc import Callable
from functools import partial
from pathlib import Path

import click
import typer

from nvdoctor import __version__
from nvdoctor.config import ConfigError, DriverConfig, load_config
from nvdoctor.exec import run_command
from nvdoctor.log import configure_logging
from nvdoctor.pipeline import DiagnosticPipeline, build_pipeline
from nvdoctor.precheck import run_precheck
from nvdoctor.probe import EnvironmentProbe
from nvdoctor.report import write_run_report
from nvdoctor.types import RemediationOutcome, RunOutcome, RunReport
from nvdoctor.ui import (
    ConsoleReporter,
    console,
    print_check,
    print_error,
    print_header,
    print_info,
    print_remediation,
    print_warning,
    render_banner,
    render_run_summary,
    should_show_banner,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_TOOLING_ERROR = 1
EXIT_UNHEALTHY = 2
EXIT_INTERRUPTED = 130

TIMESTAMP_MODES = ("deterministic", "wallclock")

cli = typer.Typer(
    name="nvdoctor",
    help="nvdoctor - NVIDIA driver diagnostics and automatic repair",
    no_args_is_help=True,
    add_help_option=False,
    epilog=(
        "Single repair actions (reload-modules, blacklist, restart-display, install-headers, "
        "rebuild-initramfs, purge) live under: nvdoctor repair --help"
    ),
)
repair_app = typer.Typer(help="Run a single repair action (requires root).")
cli.add_typer(repair_app, name="repair")


def _version_option_callback(value: bool) -> None:
    """Handle eager --version option."""
    if value:
        if should_show_banner(sys.argv):
            render_banner()
        typer.echo(__version__)
        raise typer.Exit()


def _help_option_callback(value: bool) -> None:
    """Handle eager --help option (so we can show banner on help)."""
    if value:
        if should_show_banner(sys.argv):
            render_banner()
        ctx = click.get_current_context()
        typer.echo(ctx.get_help())
        raise typer.Exit()


@cli.callback(invoke_without_command=True)
def _cli_callback(
    ctx: typer.Context,
    help: bool = typer.Option(
        False,
        "--help",
        "-h",
        help="Show this message and exit.",
        is_eager=True,
        callback=_help_option_callback,
    ),
    version: bool = typer.Option(
        False,
        "--version",
        help="Show nvdoctor version and exit.",
        is_eager=True,
        callback=_version_option_callback,
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log every command run and every decision taken.",
    ),
    config: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Driver configuration file (.toml or .yaml)",
    ),
) -> None:
    """
    CLI callback that runs on every invocation.

    Sets up logging and remembers the config path for the subcommand.
    """
    _ = help, version
    if should_show_banner(sys.argv):
        render_banner()
    configure_logging(verbose)
    ctx.obj = {"config_path": config}

    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


# ---------- shared plumbing ----------


def _is_root() -> bool:
    return os.geteuid() == 0


def _require_root() -> None:
    if not _is_root():
        print_error("This command must be run as root (use sudo)")
        raise typer.Exit(code=EXIT_TOOLING_ERROR)


def _load(ctx: typer.Context) -> DriverConfig:
    path = (ctx.obj or {}).get("config_path")
    try:
        return load_config(path)
    except ConfigError as e:
        print_error(str(e))
        raise typer.Exit(code=EXIT_TOOLING_ERROR) from e


def _build(ctx: typer.Context, timestamp_mode: str = "deterministic") -> DiagnosticPipeline:
    return build_pipeline(_load(ctx), reporter=ConsoleReporter(), timestamp_mode=timestamp_mode)


def _exit_code(report: RunReport) -> int:
    if report.outcome is None:
        return EXIT_TOOLING_ERROR
    if report.outcome.succeeded:
        return EXIT_OK
    if report.outcome is RunOutcome.INTERRUPTED:
        return EXIT_INTERRUPTED
    return EXIT_UNHEALTHY


def _run_and_report(
    ctx: typer.Context,
    run: Callable[[DiagnosticPipeline], RunReport],
    out: Path | None,
    timestamp_mode: str,
) -> None:
    """Run one pipeline entry point, print the summary, write reports, exit."""
    if timestamp_mode not in TIMESTAMP_MODES:
        print_error(f"Invalid --timestamp-mode {timestamp_mode!r} (expected deterministic or wallclock)")
        raise typer.Exit(code=EXIT_TOOLING_ERROR)

    _require_root()
    try:
        report = run(_build(ctx, timestamp_mode))
        render_run_summary(report)

        if out is not None:
            json_path, md_path = write_run_report(out, report)
            console.print("\nReports written to:")
            console.print(f"  {json_path}", markup=False)
            console.print(f"  {md_path}", markup=False)

        raise typer.Exit(code=_exit_code(report))

    except typer.Exit:
        raise
    except KeyboardInterrupt as e:
        print_warning("Interrupted by user")
        raise typer.Exit(code=EXIT_INTERRUPTED) from e
    except Exception as e:
        print_error(f"nvdoctor run failed: {e}")
        raise typer.Exit(code=EXIT_TOOLING_ERROR) from e


# ---------- commands ----------


@cli.command()
def diagnose(
    ctx: typer.Context,
    out: Path | None = typer.Option(
        None,
        "--out",
        "-o",
        help="Write RUN_REPORT.json and RUN_REPORT.md to this directory",
    ),
    timestamp_mode: str = typer.Option(
        "deterministic",
        "--timestamp-mode",
        help="Timestamp mode: deterministic or wallclock",
    ),
) -> None:
    """Run full diagnostics, fixing what can be fixed automatically.

    Exit codes:
      0 - Driver healthy or problem resolved
      2 - Verification failed, conflict unresolved or no usable hardware
      1 - Tooling error or not running as root
      130 - Interrupted
    """
    _run_and_report(ctx, lambda pipeline: pipeline.run(), out, timestamp_mode)


@cli.command(name="test", hidden=True)
def test_alias(
    ctx: typer.Context,
    out: Path | None = typer.Option(None, "--out", "-o"),
    timestamp_mode: str = typer.Option("deterministic", "--timestamp-mode"),
) -> None:
    """Alias for diagnose."""
    _run_and_report(ctx, lambda pipeline: pipeline.run(), out, timestamp_mode)


@cli.command()
def fix(
    ctx: typer.Context,
    out: Path | None = typer.Option(
        None,
        "--out",
        "-o",
        help="Write RUN_REPORT.json and RUN_REPORT.md to this directory",
    ),
    timestamp_mode: str = typer.Option(
        "deterministic",
        "--timestamp-mode",
        help="Timestamp mode: deterministic or wallclock",
    ),
) -> None:
    """Apply the automatic fixes without diagnostics, then run nvidia-smi."""
    _run_and_report(ctx, lambda pipeline: pipeline.run_fixes(), out, timestamp_mode)


@cli.command()
def precheck(ctx: typer.Context) -> None:
    """Check readiness for an NVIDIA driver installation (advisory only)."""
    config = _load(ctx)
    try:
        probe = EnvironmentProbe(config, runner=partial(run_command, timeout=config.command_timeout))
        results = run_precheck(probe)
    except Exception as e:
        print_error(f"Pre-check failed: {e}")
        raise typer.Exit(code=EXIT_TOOLING_ERROR) from e

    print_header("NVIDIA Driver Pre-Installation Check")
    for result in results:
        print_check(result)
    console.print()
    print_info("Pre-check completed. Review any warnings above.")
    print_info("If all checks passed, you can proceed with driver installation.")


# ---------- individual repairs ----------


def _repair(ctx: typer.Context, action: Callable[[DiagnosticPipeline], RemediationOutcome]) -> None:
    """Run one remediation action as root; exit 2 if it failed."""
    _require_root()
    try:
        outcome = action(_build(ctx))
    except typer.Exit:
        raise
    except Exception as e:
        print_error(f"Repair failed: {e}")
        raise typer.Exit(code=EXIT_TOOLING_ERROR) from e

    print_remediation(outcome)
    if outcome.failed:
        raise typer.Exit(code=EXIT_UNHEALTHY)


@repair_app.command("reload-modules")
def repair_reload_modules(ctx: typer.Context) -> None:
    """Force reload the NVIDIA kernel modules."""
    _repair(ctx, lambda pipeline: pipeline.actions.reload_module_set())


@repair_app.command("blacklist")
def repair_blacklist(ctx: typer.Context) -> None:
    """Write the nouveau blacklist directive."""
    _repair(ctx, lambda pipeline: pipeline.actions.write_blacklist())


def _restart_active_display_layer(pipeline: DiagnosticPipeline) -> RemediationOutcome:
    layer = pipeline.probe.active_display_layer()
    if layer is None:
        return RemediationOutcome(
            action_id="restart_service",
            applied=False,
            detail="No supported display manager found to restart",
            error_detail="No active display manager",
        )
    return pipeline.actions.restart_service(layer)


@repair_app.command("restart-display")
def repair_restart_display(ctx: typer.Context) -> None:
    """Restart the active display manager (fixes a nouveau conflict)."""
    _repair(ctx, _restart_active_display_layer)


@repair_app.command("install-headers")
def repair_install_headers(ctx: typer.Context) -> None:
    """Install kernel headers for the running kernel."""
    _repair(ctx, lambda pipeline: pipeline.actions.install_headers(pipeline.probe.kernel_release()))


@repair_app.command("rebuild-initramfs")
def repair_rebuild_initramfs(
    ctx: typer.Context,
    kernel: str | None = typer.Option(
        None,
        "--kernel",
        help="Kernel version to rebuild for (default: all kernels)",
    ),
) -> None:
    """Rebuild the initramfs."""
    _repair(ctx, lambda pipeline: pipeline.actions.rebuild_boot_image(kernel))


@repair_app.command("purge")
def repair_purge(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Remove all NVIDIA driver packages (DESTRUCTIVE)."""
    _require_root()
    if not yes:
        print_warning("This will remove all NVIDIA drivers!")
        if not typer.confirm("Are you sure?", default=False):
            print_info("Cancelled")
            raise typer.Exit(code=EXIT_OK)
    _repair(ctx, lambda pipeline: pipeline.actions.purge_driver_packages())
    print_info("Reboot, then run the NVIDIA driver installer again")


@cli.command()
def logs(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", "-n", help="Number of messages to show"),
) -> None:
    """Show recent NVIDIA kernel messages."""
    config = _load(ctx)
    probe = EnvironmentProbe(config, runner=partial(run_command, timeout=config.command_timeout))
    print_header("Recent NVIDIA kernel messages")
    lines = probe.kernel_messages(limit)
    if not lines:
        print_info("No NVIDIA kernel messages found")
    for line in lines:
        console.print(line, markup=False, highlight=False)


if __name__ == "__main__":

    cli()
