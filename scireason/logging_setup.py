"""Logging configuration using Rich."""

import logging

from rich.console import Console
from rich.logging import RichHandler

_configured = False


def configure_logging(level: str = "INFO", console: Console | None = None) -> None:
    """Install a Rich handler on the ``scireason`` logger tree (idempotent)."""
    global _configured

    root = logging.getLogger("scireason")
    root.setLevel(level.upper())
    if _configured:
        return

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(handler)
    root.propagate = False
    _configured = True
