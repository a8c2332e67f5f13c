"""Log output for command-line runs.

Library modules only create module loggers under the ``netepi``
namespace. setup_logging() gives that namespace its own handlers (stderr
and, optionally, a file) and stops propagation, so embedding
applications keep control of the root logger.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional, Union

PACKAGE_LOGGER = "netepi"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LEVEL_NAMES = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def resolve_level(level: Union[str, int]) -> int:
    """Logging level constant for a level name or number.

    Raises:
        ValueError: For a name logging does not know.
    """
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level {level!r}")
    return value


def setup_logging(
    level: Union[str, int] = "INFO",
    log_file: Optional[Union[str, Path]] = None,
) -> logging.Logger:
    """Send netepi log records to stderr and optionally to a file.

    Calling it again replaces the handlers of the previous call.

    Returns:
        The ``netepi`` package logger.
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(resolve_level(level))
    logger.propagate = False

    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger
