"""
Central logging configuration for taskseries.

Installs the colored console handler, sets package and third-party logger
levels and stamps every record with the current HTTP request id.
"""

import logging
import os
import sys
from typing import Optional

from colorlog import ColoredFormatter

from .api.middleware import get_request_id

PACKAGE_LOGGERS = (
    "taskseries",
    "taskseries.api",
    "taskseries.materializer",
    "taskseries.mutator",
    "taskseries.recurrence",
    "taskseries.store",
)

# Third-party loggers that are too chatty at the package level
_QUIET_LOGGERS = {
    "aiohttp.access": logging.WARNING,
    "aiohttp.server": logging.WARNING,
    "aiohttp.web": logging.INFO,
    "aiosqlite": logging.WARNING,
    "asyncio": logging.WARNING,
}

_LEVEL_NAMES = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

CONSOLE_FORMAT = "%(asctime)s %(log_color)s%(levelname)-7s%(reset)s [%(request_id)s] %(name)s: %(message)s"

LOG_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "bold_red",
}


class CorrelationIdFilter(logging.Filter):
    """Stamp ``record.request_id`` with the active request's correlation id."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()
        return True


def _env_debug() -> bool:
    return os.getenv("TASKSERIES_DEBUG", "").strip().lower() in ("1", "true", "yes", "on")


def _level_from_name(name: Optional[str]) -> Optional[int]:
    if not isinstance(name, str):
        return None
    name = name.strip().upper()
    return getattr(logging, name) if name in _LEVEL_NAMES else None


def _install_console_handler(root: logging.Logger) -> None:
    if not root.handlers:
        console = logging.StreamHandler(stream=sys.stderr)
        console.setFormatter(ColoredFormatter(CONSOLE_FORMAT, datefmt="%H:%M:%S", log_colors=LOG_COLORS))
        root.addHandler(console)

    for handler in root.handlers:
        if not any(isinstance(f, CorrelationIdFilter) for f in handler.filters):
            handler.addFilter(CorrelationIdFilter())


def configure_logging(
    debug_mode: bool = False,
    force_debug: Optional[bool] = None,
    level_name: Optional[str] = None,
) -> None:
    """
    Configure console output and logging levels for taskseries.

    Root level precedence: TASKSERIES_LOG_LEVEL, then DEBUG when debug is on,
    then ``level_name``, then INFO.

    Args:
        debug_mode: Whether to enable debug logging for taskseries modules
        force_debug: Wins over ``debug_mode`` and TASKSERIES_DEBUG when not None
        level_name: Root level from settings, e.g. ``"WARNING"``

    Environment Variables:
        TASKSERIES_DEBUG: '1', 'true', 'yes' or 'on' turns on debug logging
        TASKSERIES_LOG_LEVEL: Root log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    debug = force_debug if force_debug is not None else (debug_mode or _env_debug())

    root_level = _level_from_name(os.getenv("TASKSERIES_LOG_LEVEL"))
    if root_level is None:
        root_level = logging.DEBUG if debug else (_level_from_name(level_name) or logging.INFO)
    package_level = logging.DEBUG if debug else root_level

    root = logging.getLogger()
    root.setLevel(root_level)
    _install_console_handler(root)

    for name in PACKAGE_LOGGERS:
        logging.getLogger(name).setLevel(package_level)
    for name, level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    root.debug(
        "Logging configured: root=%s package=%s",
        logging.getLevelName(root_level),
        logging.getLevelName(package_level),
    )
