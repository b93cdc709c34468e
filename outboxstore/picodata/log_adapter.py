"""Adapter that routes Picodata driver log messages into a standard logger."""

from __future__ import annotations

import enum
import logging
from typing import Any, Optional


class LogLevel(enum.IntEnum):
    """Driver log levels; a message is emitted when its level is at most the threshold."""

    NONE = 0
    ERROR = 1
    WARN = 2
    INFO = 3
    DEBUG = 4


_PY_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class AdapterLog:
    """Forwards driver messages to *logger*, dropping those above the threshold level."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger if logger is not None else logging.getLogger("outboxstore")
        self.level = LogLevel.WARN

    def log(self, level: Any, msg: str, *args: Any) -> None:
        """Emit *msg*, formatted %-style with *args*, if *level* passes the threshold."""
        level = LogLevel(level)
        if level > self.level:
            return
        py_level = _PY_LEVELS.get(level)
        if py_level is None:
            return
        self.logger.log(py_level, msg, *args)

    def set_level(self, level: Any) -> None:
        """Change the threshold; raise ValueError for an unknown level."""
        try:
            self.level = LogLevel(level)
        except ValueError:
            raise ValueError(f"invalid log level {level!r}") from None