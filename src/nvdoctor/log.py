from __future__ import annotations

import logging
import os

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "%(name)s: %(message)s"


def resolve_level(verbose: bool = False) -> int:
    """NVDOCTOR_LOG_LEVEL wins, then --verbose, then WARNING."""
    override = os.getenv("NVDOCTOR_LOG_LEVEL")
    if override:
        level = logging.getLevelName(override.strip().upper())
        if isinstance(level, int):
            return level
    return logging.DEBUG if verbose else logging.WARNING


def configure_logging(verbose: bool = False) -> None:
    handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        rich_tracebacks=False,
    )
    logging.basicConfig(
        level=resolve_level(verbose),
        format=LOG_FORMAT,
        datefmt="[%X]",
        handlers=[handler],
        force=True,
    )
