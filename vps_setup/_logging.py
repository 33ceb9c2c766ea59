"""Console and file logging for the provisioning run.

Console lines read ``[LEVEL] message`` and are colour-coded when attached to
a terminal; the file log is append-only with one timestamped line per record.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import TextIO

from vps_setup._errors import PreconditionError

LOGGER_NAME = "vps_setup"
SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

FILE_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
FILE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

RED = "\033[0;31m"
GREEN = "\033[0;32m"
YELLOW = "\033[1;33m"
BLUE = "\033[0;34m"
NC = "\033[0m"

_LEVEL_COLOURS = {
    logging.DEBUG: BLUE,
    logging.INFO: BLUE,
    SUCCESS: GREEN,
    logging.WARNING: YELLOW,
    logging.ERROR: RED,
    logging.CRITICAL: RED,
}


class ConsoleFormatter(logging.Formatter):
    """Render ``[LEVEL] message`` with an optional colour-coded tag."""

    def __init__(self, *, use_colours: bool) -> None:
        super().__init__("%(message)s")
        self.use_colours = use_colours

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        tag = f"[{record.levelname}]"
        if self.use_colours:
            colour = _LEVEL_COLOURS.get(record.levelno, "")
            tag = f"{colour}{tag}{NC}"
        return f"{tag} {message}"


def _remove_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def configure_logging(
    log_file: Path | None,
    *,
    stream: TextIO | None = None,
    level: int = logging.INFO,
) -> logging.Logger:
    """Attach console and file handlers to the ``vps_setup`` logger.

    Parameters
    ----------
    log_file
        Append-only log destination, or ``None`` for console output only.
    stream
        Console stream (defaults to ``sys.stderr``).
    level
        Minimum level written to the console.

    Raises
    ------
    PreconditionError
        When the directory holding ``log_file`` does not exist.
    """

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    _remove_handlers(logger)

    console_stream = stream or sys.stderr
    console = logging.StreamHandler(console_stream)
    console.setLevel(level)
    isatty = getattr(console_stream, "isatty", None)
    console.setFormatter(ConsoleFormatter(use_colours=bool(isatty and isatty())))
    logger.addHandler(console)

    if log_file is not None:
        if not log_file.parent.is_dir():
            msg = f"Log directory {log_file.parent} does not exist"
            raise PreconditionError(msg)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, FILE_DATE_FORMAT))
        logger.addHandler(file_handler)
        logger.info("Logging to %s", log_file)
    return logger


def log_success(logger: logging.Logger, message: str, *args: object) -> None:
    """Log ``message`` at the ``SUCCESS`` level."""

    logger.log(SUCCESS, message, *args)


def log_step(logger: logging.Logger, step: int, total: int, description: str) -> None:
    """Log a ``[step/total] description`` transition."""

    logger.info("[%d/%d] %s", step, total, description)


__all__ = [
    "LOGGER_NAME",
    "SUCCESS",
    "ConsoleFormatter",
    "configure_logging",
    "log_step",
    "log_success",
]
