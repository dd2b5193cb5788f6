"""Root logger setup, the Qt message bridge and the in-memory log tank.

The sync engine runs for the lifetime of the application, so the tank keeps a bounded history:
the oldest records are dropped once :data:`TANK_CAPACITY` is reached.
"""
import collections
import logging
import sys

from PySide6.QtCore import QtMsgType, qInstallMessageHandler

from ..actions import signals

LOG_LEVEL = logging.DEBUG
LOG_FORMAT = '[%(asctime)s] <%(module)s> %(levelname)s:  %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

TANK_CAPACITY = 20_000

LEVELS = (
    logging.DEBUG,
    logging.INFO,
    logging.WARNING,
    logging.ERROR,
    logging.CRITICAL,
)


def set_logging_level(level):
    """
    Sets the logging level of the root logger and of every handler installed on it.

    Args:
        level (int): One of the standard logging levels.
    """
    if not isinstance(level, int) or isinstance(level, bool):
        raise ValueError('Logging level must be an integer.')
    if level not in LEVELS:
        raise ValueError('Invalid logging level. Use one of the standard logging levels, e.g., logging.DEBUG.')

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers:
        handler.setLevel(level)


def qt_message_handler(mode, context, message):
    """
    Converts Qt messages to standard Python logging.
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


def setup_logging(enable_stream_handler=True, enable_qt_handler=True, log_level=LOG_LEVEL,
                  capacity=TANK_CAPACITY):
    """
    Configures the root logger and optionally installs the Qt message handler.

    Args:
        enable_stream_handler (bool): Echo records to stdout.
        enable_qt_handler (bool): Route Qt's own warnings through Python logging.
        log_level (int): Level applied to the root logger and its handlers.
        capacity (int): Number of records kept by the tank.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Clear all handlers to avoid formatting conflicts
    root_logger.handlers.clear()

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)

    if enable_stream_handler:
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setFormatter(formatter)
        stream_handler.setLevel(log_level)
        root_logger.addHandler(stream_handler)

    tank_handler = TankHandler(capacity=capacity)
    tank_handler.setFormatter(formatter)
    tank_handler.setLevel(log_level)
    root_logger.addHandler(tank_handler)

    if enable_qt_handler:
        qInstallMessageHandler(qt_message_handler)


def get_tank():
    """Return the TankHandler installed on the root logger, if any."""
    return next(
        (h for h in logging.getLogger().handlers if isinstance(h, TankHandler)),
        None
    )


class TankHandler(logging.Handler):
    """
    Logging handler that keeps the latest formatted records in memory.

    UI collaborators browse the tank to show sync history (queued writes, drain
    outcomes, connectivity flips) without tailing a file. Records at ERROR and
    above raise :attr:`signals.showLogs`.

    Args:
        capacity (int): Maximum number of records kept; older ones are dropped.

    Attributes:
        tank (collections.deque[tuple[int, str]]): Level and formatted message of each record.
    """

    def __init__(self, capacity=TANK_CAPACITY):
        super().__init__()
        self.tank = collections.deque(maxlen=capacity)

    @property
    def capacity(self):
        return self.tank.maxlen

    def emit(self, record):
        try:
            message = self.format(record)
            self.tank.append((record.levelno, message))
            if record.levelno >= logging.ERROR:
                signals.showLogs.emit()
        except (Exception, KeyboardInterrupt):
            self.handleError(record)

    def get_logs(self, level=logging.NOTSET, contains=None):
        """
        Returns the stored messages at or above ``level``, oldest first.

        Args:
            level (int, optional): The minimum logging level. Defaults to logging.NOTSET.
            contains (str, optional): Only return messages containing this text.

        Returns:
            list[str]: The matching formatted messages.
        """
        return [
            msg for lvl, msg in self.tank
            if lvl >= level and (contains is None or contains in msg)
        ]

    def clear_logs(self):
        self.tank.clear()
