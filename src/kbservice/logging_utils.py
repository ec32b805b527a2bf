"""Logging setup for command-line use."""

import logging
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

from kbservice.config import settings


def setup_logging(level: Optional[str] = None, console: Optional[Console] = None) -> logging.Logger:
    """
    Route the ``kbservice`` loggers to a rich console handler.

    Args:
        level: Logging level name (default from settings)
        console: Console to write to (default: stderr)

    Returns:
        The configured package logger
    """
    logger = logging.getLogger("kbservice")
    logger.setLevel((level or settings.log_level).upper())
    logger.propagate = False

    # Remove existing handlers
    logger.handlers.clear()

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)

    return logger
