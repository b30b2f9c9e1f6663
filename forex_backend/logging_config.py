"""Logging setup for the forex backend.

Every module logs through a child of the ``forex_backend`` logger
(``forex_backend.rates``, ``forex_backend.api``), so one call to
:func:`setup_logging` routes all of them to the same handlers.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from forex_backend import settings

ROOT_LOGGER_NAME = "forex_backend"

_DETAILED_FORMAT = (
    "%(asctime)s | %(levelname)-8s | %(name)s | %(module)s:%(funcName)s:%(lineno)d | "
    "%(message)s"
)

_CONSOLE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(
    level: str | int | None = None,
    log_file: str | Path | None = None,
) -> logging.Logger:
    """Attach console (and optionally file) handlers to the project logger.

    Repeated calls leave the existing handlers in place, so importing the
    application several times (tests, reloaders) never duplicates output.

    Args:
        level: Logger level name or number. Defaults to ``LOG_LEVEL``.
        log_file: Optional path for a DEBUG-level file handler. Defaults to
            ``LOG_FILE``; no file handler is added when neither is set.

    Returns:
        The configured ``forex_backend`` logger.
    """
    root_logger = logging.getLogger(ROOT_LOGGER_NAME)
    resolved_level = level if level is not None else settings.LOG_LEVEL
    if isinstance(resolved_level, str):
        resolved_level = logging.getLevelName(resolved_level.upper())
        if not isinstance(resolved_level, int):
            resolved_level = logging.INFO
    root_logger.setLevel(resolved_level)

    if root_logger.handlers:
        return root_logger

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(resolved_level)
    console_handler.setFormatter(logging.Formatter(_CONSOLE_FORMAT, datefmt=_DATE_FORMAT))
    root_logger.addHandler(console_handler)

    target_file = log_file if log_file is not None else settings.LOG_FILE
    if target_file:
        path = Path(target_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(_DETAILED_FORMAT, datefmt=_DATE_FORMAT))
        root_logger.addHandler(file_handler)

    root_logger.propagate = False
    root_logger.debug("Logging initialised at level %s", logging.getLevelName(resolved_level))
    return root_logger
