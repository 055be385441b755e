"""Logging setup for the CLI.

Library modules only create module-level loggers; handlers are attached
here, once, when a command starts.
"""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

# Log records go to stderr so --json output on stdout stays parseable
stderr_console = Console(stderr=True)


def setup_logging(level: str = "INFO") -> None:
    """Route all log records through a RichHandler at ``level``."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[
            RichHandler(
                console=stderr_console,
                rich_tracebacks=True,
                show_path=False,
            )
        ],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


__all__ = ["setup_logging", "stderr_console"]
