"""Status definitions and exceptions for KhataBook.

This module provides:
    - Status: enumeration of possible application states
    - STATUS_MESSAGE: user-facing messages for each status
    - get_message: retrieve the message for a status
    - BaseStatusException: base exception carrying a Status
    - Specific exceptions (e.g., ServiceUnavailableException) for error handling in the core
"""
import enum
import logging
from typing import Dict


class Status(enum.StrEnum):
    """Enumeration of application status codes."""
    UnknownStatus = enum.auto()
    Okay = enum.auto()

    # Config status
    SettingsNotFound = enum.auto()
    SettingsInvalid = enum.auto()

    # Authentication status
    ClientSecretNotFound = enum.auto()
    ClientSecretInvalid = enum.auto()
    CredsInvalid = enum.auto()
    NotAuthenticated = enum.auto()

    # Remote access status
    PermissionDenied = enum.auto()
    DocumentNotFound = enum.auto()
    BadRequest = enum.auto()
    ServiceUnavailable = enum.auto()

    # Data status
    SchemaMismatch = enum.auto()
    MalformedData = enum.auto()


STATUS_MESSAGE: Dict[Status, str] = {
    Status.UnknownStatus: 'Unknown status. Please check the settings.',
    Status.Okay: 'Everything is okay.',

    Status.SettingsNotFound: 'Could not find the application settings.',
    Status.SettingsInvalid: 'The application settings seem to be incomplete, or contain invalid values.',

    Status.ClientSecretNotFound: 'Could not find the google client secret. Have you set up a valid Google client secret?',
    Status.ClientSecretInvalid: 'Could not verify the client secret. Have you set up a valid Google client secret?',
    Status.CredsInvalid: 'Could not verify the credentials. Please sign in again to your Google account.',
    Status.NotAuthenticated: 'Authentication error. Try signing in again to your Google account.',

    Status.PermissionDenied: 'You do not have permission to access this document.',
    Status.DocumentNotFound: 'Could not find the requested document.',
    Status.BadRequest: 'The request was rejected by the Google API.',
    Status.ServiceUnavailable: 'Google service is unavailable. Please check your connection and try again.',

    Status.SchemaMismatch: 'The stored column configuration does not match the header row.',
    Status.MalformedData: 'The data could not be read. The file may be corrupt or in an unknown format.',
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
    """Base exception for status-based errors in KhataBook.

    Attributes:
        status (Status): Status code associated with this error.
        status_message (str): User-facing message for the status.

    Args:
        message (str): Optional additional context for the error.
    """
    status = Status.UnknownStatus

    def __init__(self, message: str = None):
        self.status_message = get_message(self.status)
        self.message = message or self.status_message
        exception_message = f'{self.status_message} {message}' if message else self.status_message
        super().__init__(exception_message)

        logging.error(exception_message)

        from ..core.signals import signals
        signals.error.emit(self.message)


class UnknownException(BaseStatusException):
    """Exception for an unknown error during status processing."""
    pass


class SettingsNotFoundException(BaseStatusException):
    """Exception raised when the application settings file cannot be found."""
    status = Status.SettingsNotFound


class SettingsInvalidException(BaseStatusException):
    """Exception raised when the application settings are invalid or malformed."""
    status = Status.SettingsInvalid


class ClientSecretNotFoundException(BaseStatusException):
    """Exception raised when the Google OAuth client secret file cannot be found."""
    status = Status.ClientSecretNotFound


class ClientSecretInvalidException(BaseStatusException):
    """Exception raised when the Google OAuth client secret is invalid or malformed."""
    status = Status.ClientSecretInvalid


class CredsInvalidException(BaseStatusException):
    """Exception raised when stored Google credentials are invalid or corrupt."""
    status = Status.CredsInvalid


class NotAuthenticatedException(BaseStatusException):
    """Exception raised when there is no usable access token; recoverable by signing in again."""
    status = Status.NotAuthenticated


class PermissionDeniedException(BaseStatusException):
    """Exception raised when the signed-in account may not access a document (HTTP 403)."""
    status = Status.PermissionDenied


class DocumentNotFoundException(BaseStatusException):
    """Exception raised when a remote document or file does not exist (HTTP 404)."""
    status = Status.DocumentNotFound


class BadRequestException(BaseStatusException):
    """Exception raised when the Google API rejects a request (HTTP 400)."""
    status = Status.BadRequest


class ServiceUnavailableException(BaseStatusException):
    """Exception raised on transient network failures. Never retried automatically."""
    status = Status.ServiceUnavailable


class SchemaMismatchException(BaseStatusException):
    """Exception raised when a stored schema and the header row disagree."""
    status = Status.SchemaMismatch


class MalformedDataException(BaseStatusException):
    """Exception raised when an import payload or stored schema cannot be parsed."""
    status = Status.MalformedData
