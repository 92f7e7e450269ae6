"""
Logging utilities for cohortmatch.

Every module obtains its logger through :func:`get_logger` so that a single
call to :func:`configure_logging` controls the verbosity of the whole
matching pipeline. The assignment solvers log under ``cohortmatch.matching``
and can be given their own level, since the flow and LP solvers are verbose
at DEBUG.
"""

import logging
import sys
from typing import Optional, TextIO, Union

PACKAGE_LOGGER = "cohortmatch"
SOLVER_LOGGER = f"{PACKAGE_LOGGER}.matching"

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def get_logger(name: str = PACKAGE_LOGGER) -> logging.Logger:
    """Get a logger under the package namespace.

    Names outside the namespace (for example ``__main__`` in a script) are
    nested under it so they share the package handlers.

    Args:
        name: Module name, defaults to 'cohortmatch'

    Returns:
        A named logger instance
    """
    if name != PACKAGE_LOGGER and not name.startswith(f"{PACKAGE_LOGGER}."):
        name = f"{PACKAGE_LOGGER}.{name}"
    return logging.getLogger(name)


def _resolve_level(level: Union[int, str]) -> int:
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"Unknown logging level: {level}")
        return resolved
    return level


def configure_logging(
    level: Union[int, str] = logging.INFO,
    format_string: Optional[str] = None,
    stream: Optional[TextIO] = sys.stdout,
    log_file: Optional[str] = None,
    solver_level: Optional[Union[int, str]] = None,
) -> logging.Logger:
    """Configure logging for cohortmatch.

    Calling this again replaces the handlers installed by a previous call.

    Args:
        level: Logging level, as a number or a name such as 'debug'
        format_string: Format string for log messages
        stream: Stream to output logs to (default: sys.stdout), None disables it
        log_file: Optional file path to write logs to
        solver_level: Separate level for the assignment solvers; inherits
            ``level`` if None

    Returns:
        The configured package logger
    """
    logger = logging.getLogger(PACKAGE_LOGGER)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(_resolve_level(level))
    formatter = logging.Formatter(format_string or DEFAULT_FORMAT)

    if stream is not None:
        console_handler = logging.StreamHandler(stream)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if not logger.handlers:
        logger.addHandler(logging.NullHandler())

    solver_logger = logging.getLogger(SOLVER_LOGGER)
    solver_logger.setLevel(logging.NOTSET if solver_level is None else _resolve_level(solver_level))

    # Handlers live on the package logger only
    logger.propagate = False

    return logger
