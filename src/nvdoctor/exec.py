"""Command runner used by every system collaborator."""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass

logger = logging.getLogger(__name__)

COMMAND_NOT_FOUND = 127
COMMAND_TIMED_OUT = 124


@dataclass(frozen=True)
class ExecResult:
    """Result envelope for subprocess execution."""

    argv: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr, in that order."""
        if self.stdout and self.stderr:
            return f"{self.stdout.rstrip()}\n{self.stderr}"
        return self.stdout or self.stderr

    def error_detail(self) -> str:
        rendered = " ".join(self.argv)
        detail = (self.stderr or self.stdout).strip()
        if detail:
            return f"{rendered} exited {self.returncode}: {detail}"
        return f"{rendered} exited {self.returncode}"


class ExecError(RuntimeError):
    """Raised when a command returns non-zero in check mode."""

    def __init__(self, result: ExecResult):
        super().__init__(f"command failed ({result.returncode}): {result.error_detail()}")
        self.result = result


# Called as runner(argv, **run_command_kwargs).
Runner = Callable[..., ExecResult]


def run_command(
    argv: Sequence[str],
    *,
    check: bool = False,
    timeout: float | None = 300,
    env: Mapping[str, str] | None = None,
) -> ExecResult:
    """Run command and return structured result.

    A missing executable or a timeout is reported as a result with a
    shell-style return code (127 / 124) instead of raising.
    """
    logger.debug("Running command: %s", " ".join(argv))
    try:
        completed = subprocess.run(
            list(argv),
            capture_output=True,
            text=True,
            timeout=timeout,
            env=dict(env) if env is not None else None,
            check=False,
        )
        result = ExecResult(
            argv=tuple(argv),
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )
    except FileNotFoundError:
        logger.debug("Command not found: %s", argv[0])
        result = ExecResult(
            argv=tuple(argv),
            returncode=COMMAND_NOT_FOUND,
            stdout="",
            stderr=f"Command not found: {argv[0]}",
        )
    except subprocess.TimeoutExpired:
        logger.warning("Command timed out after %ss: %s", timeout, " ".join(argv))
        result = ExecResult(
            argv=tuple(argv),
            returncode=COMMAND_TIMED_OUT,
            stdout="",
            stderr=f"Command timed out after {timeout}s",
        )

    if check and not result.ok:
        raise ExecError(result)
    return result
