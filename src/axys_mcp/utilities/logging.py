"""Logging utilities for the AXYS gateway."""

import logging
from typing import Literal

from rich.console import Console
from rich.logging import RichHandler

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def configure_logging(level: LogLevel = "INFO") -> None:
    """Configure logging for the gateway.

    Records always go to stderr: in stdio mode stdout carries the protocol
    stream and must not receive anything else.

    Args:
        level: the log level to use
    """
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
        force=True,
    )


def describe_secret(value: str | None) -> str:
    """Render a credential for log output without revealing it."""
    return "[SET]" if value else "[NOT SET]"
