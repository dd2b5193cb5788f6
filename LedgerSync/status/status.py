"""Status definitions and exceptions for LedgerSync.

This module provides:
    - Status: enumeration of possible application states
    - STATUS_MESSAGE: user-facing messages for each status
    - get_message: retrieve the message for a status
    - BaseStatusException: base exception carrying a Status
    - Specific exceptions used by the sync engine to tell transient connectivity
      failures apart from remote rejections and local storage failures
"""
import enum
import logging
from typing import Dict, Optional


class Status(enum.StrEnum):
    """Enumeration of application status codes."""
    UnknownStatus = enum.auto()
    Okay = enum.auto()

    # Config status
    ConfigNotFound = enum.auto()
    ConfigInvalid = enum.auto()

    # Remote store status
    RemoteNotConfigured = enum.auto()
    Offline = enum.auto()
    RemoteRejected = enum.auto()

    # Local store status
    LocalPersistenceFailed = enum.auto()


STATUS_MESSAGE: Dict[Status, str] = {
    Status.UnknownStatus: 'Unknown status. Please check the settings.',
    Status.Okay: 'Everything is okay.',

    Status.ConfigNotFound: 'Could not find the sync config.',
    Status.ConfigInvalid: 'The sync config seems to be incomplete, or contains invalid values.',

    Status.RemoteNotConfigured: 'No remote database is configured. Have you set the remote url in the settings?',
    Status.Offline: 'The remote database is unreachable. Changes are kept locally until the connection returns.',
    Status.RemoteRejected: 'The remote database refused the request.',

    Status.LocalPersistenceFailed: 'Could not read or write the local data store.',
}


def get_message(status: Status) -> str:
    """
    Get the message for a given status.

    Args:
        status (Status): The status enum.

    Returns:
        str: The message associated with the status.
    """
    return STATUS_MESSAGE.get(status, 'Unknown status')


class BaseStatusException(Exception):
    """Base exception for status-based errors in LedgerSync.

    Attributes:
        status (Status): Status code associated with this error.
        status_message (str): User-facing message for the status.

    Args:
        message (str): Optional additional context for the error.
    """
    status = Status.UnknownStatus

    def __init__(self, message: str = None):
        self.status_message = get_message(self.status)
        self.detail = message
        exception_message = f'{self.status_message} {message}' if message else self.status_message
        super().__init__(exception_message)

        logging.error(exception_message)

        from ..actions import signals
        signals.error.emit(message or self.status_message)


class UnknownException(BaseStatusException):
    """Exception for an unknown error during status processing."""
    pass


class ConfigNotFoundException(BaseStatusException):
    """Exception raised when the sync configuration file cannot be found."""
    status = Status.ConfigNotFound


class ConfigInvalidException(BaseStatusException):
    """Exception raised when the sync configuration is invalid or malformed."""
    status = Status.ConfigInvalid


class RemoteNotConfiguredException(BaseStatusException):
    """Exception raised when no remote database url is configured."""
    status = Status.RemoteNotConfigured


class ConnectivityException(BaseStatusException):
    """Transient failure reaching the remote store (timeout, unreachable host, gateway errors).

    The engine reacts by switching to offline mode; the operation can be retried later.
    """
    status = Status.Offline


class RemoteRejectedException(BaseStatusException):
    """The remote store refused the operation (constraint or validation failure).

    Never retried and never queued.

    Attributes:
        code (Optional[int]): HTTP status code or remote error code, if known.
    """
    status = Status.RemoteRejected

    def __init__(self, message: str = None, code: Optional[int] = None):
        self.code = code
        super().__init__(message)


class LocalPersistenceException(BaseStatusException):
    """Exception raised when the local store or the mutation queue cannot be read or written."""
    status = Status.LocalPersistenceFailed
