"""
Logging utilities for KohakuBore.

All modules log through loguru. Standard library ``logging`` records (from
asyncio and friends) are intercepted and routed into the same sink so the
output stays uniform.
"""

import logging
import sys

from loguru import logger as _logger

from kohakubore.models.enums import LogLevel

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[name]}</cyan> - <level>{message}</level>"
)

_LEVEL_MAP = {
    LogLevel.FULL: "TRACE",
    LogLevel.DEBUG: "DEBUG",
    LogLevel.INFO: "INFO",
    LogLevel.WARNING: "WARNING",
}

_logger.configure(extra={"name": "kohakubore"})


class InterceptHandler(logging.Handler):
    """Forward stdlib logging records to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = _logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        _logger.bind(name=record.name).opt(
            depth=depth, exception=record.exc_info
        ).log(level, record.getMessage())


def configure_logging(level: LogLevel = LogLevel.INFO) -> None:
    """
    Configure the global loguru sink.

    Must be called once at process start, before any server or client
    is started.

    Args:
        level: Verbosity level for all KohakuBore components.
    """
    loguru_level = _LEVEL_MAP.get(level, "INFO")

    _logger.remove()
    _logger.add(
        sys.stderr,
        level=loguru_level,
        format=LOG_FORMAT,
        backtrace=level == LogLevel.FULL,
        diagnose=level == LogLevel.FULL,
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)


def get_logger(name: str):
    """
    Get a loguru logger bound to a module name.

    Args:
        name: Usually ``__name__`` of the calling module.

    Returns:
        Bound loguru logger.
    """
    return _logger.bind(name=name)
