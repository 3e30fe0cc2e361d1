# fleet_trip_engine/common/logger.py
"""
Logging setup for the fleet_trip_engine package.

Modules only call `logging.getLogger(__name__)`; handlers live on the package
logger and are installed here. Sync runs one worker thread per device, so the
format carries the thread name to keep interleaved device logs readable.

The provider token travels in the query string, and httpx logs every request
URL at INFO. Its loggers are therefore pinned to WARNING regardless of the
package level.
"""

import logging
import sys
from pathlib import Path
from typing import Final

from fleet_trip_engine.config import LoggingConfig

__all__: list[str] = ['PACKAGE_LOGGER_NAME', 'setup_logger']

PACKAGE_LOGGER_NAME: Final[str] = 'fleet_trip_engine'

LOG_FORMAT: Final[str] = '%(asctime)s %(levelname)-8s [%(threadName)s] %(name)s: %(message)s'
LOG_DATE_FORMAT: Final[str] = '%Y-%m-%d %H:%M:%S'

# Loggers that would print request URLs, token included.
_URL_LOGGING_LIBRARIES: Final[tuple[str, ...]] = ('httpx', 'httpcore')


def _file_handler(
    log_file_path: Path, level: int, formatter: logging.Formatter
) -> logging.FileHandler:
    log_file_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(filename=str(log_file_path), mode='a', encoding='utf-8')
    handler.setFormatter(formatter)
    handler.setLevel(level)
    return handler


def setup_logger(
    logging_level: int | None = None,
    config: LoggingConfig | None = None,
) -> logging.Logger:
    """
    Install console (and optionally file) handlers on the package logger.

    Repeated calls replace the handlers instead of stacking them, so every
    SyncOrchestrator construction may call this.

    Args:
        logging_level: Console level when no config is given (default INFO).
        config: Validated logging section. Overrides logging_level and adds
            a file handler when file_path is set.

    Returns:
        The 'fleet_trip_engine' logger.
    """
    package_logger: logging.Logger = logging.getLogger(PACKAGE_LOGGER_NAME)
    package_logger.handlers.clear()

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    console_level: int = (
        config.get_console_level_int()
        if config is not None
        else (logging_level if logging_level is not None else logging.INFO)
    )
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(console_level)
    package_logger.addHandler(console_handler)

    levels: list[int] = [console_level]
    if config is not None and config.file_path is not None:
        file_level: int = config.get_file_level_int() or logging.DEBUG
        package_logger.addHandler(_file_handler(config.file_path, file_level, formatter))
        levels.append(file_level)

    # Most verbose handler decides what reaches the handlers at all.
    package_logger.setLevel(min(levels))

    for library_name in _URL_LOGGING_LIBRARIES:
        logging.getLogger(library_name).setLevel(logging.WARNING)

    if len(levels) > 1 and config is not None:
        package_logger.debug('Logging to file: %s', config.file_path)

    return package_logger
