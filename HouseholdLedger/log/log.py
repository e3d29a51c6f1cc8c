"""Logging for HouseholdLedger.

Records go to stdout and to an in-memory :class:`TankHandler` that a front end
can browse. The sync engine logs every push, pull and refresh, so the Google
client libraries are held at WARNING to keep their request chatter out of the
tank. The level can be overridden with the ``HOUSEHOLD_LEDGER_LOG_LEVEL``
environment variable, e.g. ``HOUSEHOLD_LEDGER_LOG_LEVEL=INFO``.

"""
import collections
import logging
import os
import sys

from PySide6.QtCore import QtMsgType, qInstallMessageHandler

from ..ui.actions import signals

LOG_LEVEL_ENV = 'HOUSEHOLD_LEDGER_LOG_LEVEL'
LOG_LEVEL = logging.DEBUG
LOG_FORMAT = '[%(asctime)s] <%(module)s> %(levelname)s:  %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

TANK_CAPACITY = 10000

QUIET_LOGGERS = (
    'googleapiclient.discovery',
    'googleapiclient.discovery_cache',
    'google_auth_oauthlib.flow',
    'google.auth.transport.requests',
    'urllib3.connectionpool',
)

VALID_LEVELS = (
    logging.DEBUG,
    logging.INFO,
    logging.WARNING,
    logging.ERROR,
    logging.CRITICAL,
)


def set_logging_level(level):
    """
    Sets the logging level for the root logger.

    Args:
        level (int): One of the standard logging levels.
    """
    if not isinstance(level, int):
        raise ValueError('Logging level must be an integer.')
    if level not in VALID_LEVELS:
        raise ValueError('Invalid logging level. Use one of the standard logging levels, e.g., logging.DEBUG.')

    logging.getLogger().setLevel(level)


def level_from_environment(default=LOG_LEVEL):
    """Return the level named by ``HOUSEHOLD_LEDGER_LOG_LEVEL``, or ``default``.

    Unknown names are ignored.
    """
    name = os.environ.get(LOG_LEVEL_ENV, '').strip().upper()
    if not name:
        return default
    level = logging.getLevelName(name)
    if level not in VALID_LEVELS:
        return default
    return level


def qt_message_handler(mode, context, message):
    """
    Routes Qt's own diagnostics into Python logging.
    """
    logger = logging.getLogger('Qt')
    message = message.strip()

    if mode == QtMsgType.QtDebugMsg:
        logger.debug(message)
    elif mode == QtMsgType.QtInfoMsg:
        logger.info(message)
    elif mode == QtMsgType.QtWarningMsg:
        logger.warning(message)
    elif mode == QtMsgType.QtCriticalMsg:
        logger.error(message)
    elif mode == QtMsgType.QtFatalMsg:
        logger.critical(message)
        sys.exit(1)


def get_tank_handler():
    """Return the TankHandler installed on the root logger, if any."""
    return next(
        (h for h in logging.getLogger().handlers if isinstance(h, TankHandler)),
        None
    )


def setup_logging(enable_stream_handler=True, enable_qt_handler=True, log_level=None):
    """
    Configures the root logger.

    Args:
        enable_stream_handler (bool): Also print records to stdout.
        enable_qt_handler (bool): Install the Qt message handler.
        log_level (int, optional): Level for the root logger and every handler.
            Defaults to the environment override, else ``LOG_LEVEL``.
    """
    if log_level is None:
        log_level = level_from_environment()

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Replace, don't stack, handlers when called more than once
    root_logger.handlers.clear()

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)

    if enable_stream_handler:
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setFormatter(formatter)
        stream_handler.setLevel(log_level)
        root_logger.addHandler(stream_handler)

    tank_handler = TankHandler()
    tank_handler.setFormatter(formatter)
    tank_handler.setLevel(log_level)
    root_logger.addHandler(tank_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    if enable_qt_handler:
        qInstallMessageHandler(qt_message_handler)


class TankHandler(logging.Handler):
    """
    Keeps the most recent formatted records in memory.

    Records at ERROR or above emit ``signals.showLogs`` so a front end can
    surface them.

    Attributes:
        tank (collections.deque[tuple[int, str]]): Level and formatted message
            pairs, oldest first. Holds at most ``capacity`` records.
    """

    def __init__(self, capacity=TANK_CAPACITY):
        super().__init__()
        self.tank = collections.deque(maxlen=capacity)

    def emit(self, record):
        try:
            message = self.format(record)
            self.tank.append((record.levelno, message))
            if record.levelno >= logging.ERROR:
                signals.showLogs.emit()
        except Exception:
            self.handleError(record)

    def get_logs(self, level=logging.NOTSET):
        """
        Returns the stored messages at or above ``level``.

        Returns:
            list[str]: Formatted log messages, oldest first.
        """
        return [msg for lvl, msg in self.tank if lvl >= level]

    def clear_logs(self):
        self.tank.clear()
