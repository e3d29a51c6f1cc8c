"""Status definitions, exceptions and failure classification for HouseholdLedger.

This module provides:
    - Status: enumeration of possible application states
    - STATUS_MESSAGE: user-facing messages for each status
    - get_message: retrieve the message for a status
    - BaseStatusException: base exception carrying a Status
    - SyncStatus: the sync indicator values observed by the UI
    - FailureKind and classify_error: map any remote-call failure onto the sync error taxonomy
"""
import enum
import logging
import socket
import ssl
from typing import Dict, Optional

import httplib2
from googleapiclient.errors import HttpError


class Status(enum.StrEnum):
    """Enumeration of application status codes."""
    UnknownStatus = enum.auto()
    Okay = enum.auto()

    # Settings status
    SettingsNotFound = enum.auto()
    SettingsInvalid = enum.auto()

    # Remote link status
    RemoteNotConfigured = enum.auto()
    RemoteNotFound = enum.auto()

    # Authentication status
    AuthExpired = enum.auto()

    # Transport status
    NetworkTransient = enum.auto()
    Unclassified = enum.auto()

    CacheInvalid = enum.auto()


STATUS_MESSAGE: Dict[Status, str] = {
    Status.UnknownStatus: 'Unknown status. Please check the settings.',
    Status.Okay: 'Everything is okay.',

    Status.SettingsNotFound: 'Could not find the settings file.',
    Status.SettingsInvalid: 'The settings seem to be incomplete, or contain invalid values.',

    Status.RemoteNotConfigured: 'The remote link is not configured. Client ID, API key and spreadsheet ID are all required.',
    Status.RemoteNotFound: 'Could not find the remote spreadsheet. Check the spreadsheet ID and its sharing settings.',

    Status.AuthExpired: 'Authentication expired. Please sign in to your Google account again.',

    Status.NetworkTransient: 'Network error while talking to Google Sheets. Will retry shortly.',
    Status.Unclassified: 'Sync failed.',

    Status.CacheInvalid: 'The local cache is invalid. Try clearing local data.',
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
    """Base exception for status-based errors in HouseholdLedger.

    Raising does not notify the UI. The sync engine decides which failures
    become user-visible and emits ``signals.error`` for those only.

    Attributes:
        status (Status): Status code associated with this error.
        status_message (str): User-facing message for the status.
        detail (str): The optional context passed at construction.

    Args:
        message (str): Optional additional context for the error.
    """
    status = Status.UnknownStatus

    def __init__(self, message: Optional[str] = None):
        self.status_message = get_message(self.status)
        self.detail = message or ''
        exception_message = f'{self.status_message} {message}' if message else self.status_message
        super().__init__(exception_message)


class UnknownException(BaseStatusException):
    """Exception for an unknown error during status processing."""
    pass


class SettingsNotFoundException(BaseStatusException):
    """Exception raised when the settings file cannot be found."""
    status = Status.SettingsNotFound


class SettingsInvalidException(BaseStatusException):
    """Exception raised when the settings file is invalid or malformed."""
    status = Status.SettingsInvalid


class RemoteNotConfiguredException(BaseStatusException):
    """Exception raised when any of client id, api key or spreadsheet id is missing."""
    status = Status.RemoteNotConfigured


class RemoteNotFoundException(BaseStatusException):
    """Exception raised when the remote spreadsheet returns HTTP 404."""
    status = Status.RemoteNotFound


class AuthExpiredException(BaseStatusException):
    """Exception raised on HTTP 401/403, a missing token, or a failed silent refresh."""
    status = Status.AuthExpired


class NetworkTransientException(BaseStatusException):
    """Exception raised for transport-level failures that are worth retrying."""
    status = Status.NetworkTransient


class UnclassifiedException(BaseStatusException):
    """Exception raised for remote failures that fit no other category."""
    status = Status.Unclassified


class CacheInvalidException(BaseStatusException):
    """Exception raised when the local cache database is invalid or corrupted."""
    status = Status.CacheInvalid


class SyncStatus(enum.StrEnum):
    """The single sync indicator value shown to the user."""
    Synced = 'synced'
    Saving = 'saving'
    Fetching = 'fetching'
    Error = 'error'
    Offline = 'offline'


class FailureKind(enum.StrEnum):
    """Sync error taxonomy."""
    AuthExpired = enum.auto()
    RemoteNotFound = enum.auto()
    NetworkTransient = enum.auto()
    Unclassified = enum.auto()


AUTH_HTTP_CODES = (401, 403)
NOT_FOUND_HTTP_CODES = (404,)
TRANSIENT_HTTP_CODES = (408, 429, 500, 502, 503, 504)

NETWORK_ERRORS = (
    socket.timeout,
    TimeoutError,
    ConnectionError,
    ssl.SSLError,
    httplib2.HttpLib2Error,
    OSError,
)

_STATUS_TO_KIND: Dict[Status, FailureKind] = {
    Status.AuthExpired: FailureKind.AuthExpired,
    Status.RemoteNotFound: FailureKind.RemoteNotFound,
    Status.NetworkTransient: FailureKind.NetworkTransient,
}


def http_status_of(ex: BaseException) -> Optional[int]:
    """Return the HTTP status code carried by an exception, if any.

    Args:
        ex: Any exception raised by a remote call.

    Returns:
        Optional[int]: The status code, or None when the exception carries none.
    """
    if isinstance(ex, HttpError):
        code = getattr(ex.resp, 'status', None) if ex.resp is not None else None
    else:
        code = getattr(ex, 'status_code', None)
        if code is None:
            code = getattr(ex, 'status', None)
    try:
        return int(code) if code is not None else None
    except (TypeError, ValueError):
        return None


def classify_error(ex: BaseException) -> FailureKind:
    """Map a failure raised by any remote call onto the sync error taxonomy.

    Status exceptions keep their own category. HTTP status codes take precedence
    over message inspection; transport errors and messages mentioning network or
    fetch problems are transient.

    Args:
        ex: The exception raised by the remote call.

    Returns:
        FailureKind: The category driving the sync engine's reaction.
    """
    if isinstance(ex, BaseStatusException):
        return _STATUS_TO_KIND.get(ex.status, FailureKind.Unclassified)

    code = http_status_of(ex)
    if code in AUTH_HTTP_CODES:
        return FailureKind.AuthExpired
    if code in NOT_FOUND_HTTP_CODES:
        return FailureKind.RemoteNotFound
    if code in TRANSIENT_HTTP_CODES:
        return FailureKind.NetworkTransient
    if code is not None:
        return FailureKind.Unclassified

    if isinstance(ex, NETWORK_ERRORS):
        return FailureKind.NetworkTransient

    message = str(ex).lower()
    if 'authenticat' in message or 'unauthorized' in message:
        return FailureKind.AuthExpired
    if 'network' in message or 'fetch' in message:
        return FailureKind.NetworkTransient
    return FailureKind.Unclassified


def to_status_exception(ex: BaseException) -> BaseStatusException:
    """Wrap an arbitrary failure in the status exception matching its category.

    Args:
        ex: The exception to wrap.

    Returns:
        BaseStatusException: ``ex`` itself when it already is one.
    """
    if isinstance(ex, BaseStatusException):
        return ex

    kind = classify_error(ex)
    cls = {
        FailureKind.AuthExpired: AuthExpiredException,
        FailureKind.RemoteNotFound: RemoteNotFoundException,
        FailureKind.NetworkTransient: NetworkTransientException,
    }.get(kind, UnclassifiedException)

    wrapped = cls(str(ex))
    wrapped.__cause__ = ex
    logging.debug(f'Classified {type(ex).__name__} as {kind}: {ex}')
    return wrapped
