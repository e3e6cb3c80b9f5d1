"""
Exception classes for the OAuth bearer token tool.

Every failure in the token lifecycle is fatal for the current run. Each
exception class carries the process exit status the command-line drivers
report for it.
"""

from typing import Optional


class OAuthBearerError(Exception):
    """Base exception for all bearer token errors."""

    exit_code = 1


class ConfigError(OAuthBearerError):
    """Missing or malformed configuration, credential or token record file."""

    exit_code = 3


class ValidationError(OAuthBearerError):
    """A structured field failed its grammar check."""

    exit_code = 4

    def __init__(self, message: str, field: Optional[str] = None, source: Optional[str] = None):
        super().__init__(message)
        self.field = field
        self.source = source


class ProtocolError(OAuthBearerError):
    """Malformed callback request or malformed HTTP status."""

    exit_code = 5


class TransferError(OAuthBearerError):
    """The token endpoint did not answer with a 2xx response."""

    exit_code = 6

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error = error
        self.error_description = error_description


class LockTimeoutError(OAuthBearerError):
    """Timed out waiting for the exclusive lock."""

    exit_code = 7


class CommitTimeoutError(OAuthBearerError):
    """Timed out renaming a temporary file onto its permanent name."""

    exit_code = 8
