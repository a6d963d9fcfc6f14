"""
Log stream configuration.

Lines are written as ``[<epoch-ms>]\\t<LEVEL>: <message>``. Informational
lines go to stdout labelled LOG; warnings and errors go to stderr.
"""
import logging
import sys
from typing import Optional, TextIO


class EpochMillisFormatter(logging.Formatter):
    """Formats records with an epoch-millisecond prefix."""

    LEVEL_LABELS = {
        "INFO": "LOG",
        "CRITICAL": "ERROR",
    }

    def __init__(self):
        super().__init__(fmt="%(message)s")

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        label = self.LEVEL_LABELS.get(record.levelname, record.levelname)
        return f"[{int(record.created * 1000)}]\t{label}: {message}"


class _BelowLevelFilter(logging.Filter):
    """Passes records strictly below a level."""

    def __init__(self, level: int):
        super().__init__()
        self.level = level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < self.level


def configure_logging(
    level: str = "INFO",
    stdout: Optional[TextIO] = None,
    stderr: Optional[TextIO] = None,
) -> None:
    """
    Install the relay's stdout/stderr handlers on the root logger.

    Args:
        level: Root log level name.
        stdout: Stream for records below WARNING (defaults to sys.stdout).
        stderr: Stream for WARNING and above (defaults to sys.stderr).
    """
    formatter = EpochMillisFormatter()

    out_handler = logging.StreamHandler(stdout or sys.stdout)
    out_handler.setFormatter(formatter)
    out_handler.addFilter(_BelowLevelFilter(logging.WARNING))

    err_handler = logging.StreamHandler(stderr or sys.stderr)
    err_handler.setFormatter(formatter)
    err_handler.setLevel(logging.WARNING)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        handlers=[out_handler, err_handler],
        force=True,
    )
