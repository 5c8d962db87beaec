"""Exceptions raised by the DECONFIG client."""

from typing import Optional


class DeconfigError(Exception):
    """Base class for all pydeconfig errors."""


class DeconfigConfigError(DeconfigError):
    """Configuration is missing or invalid."""


class DeconfigValidationError(DeconfigError):
    """A pattern, path or argument is malformed.

    Raised before any network call is made.
    """


class DeconfigTransportError(DeconfigError):
    """Network or HTTP-level failure talking to the remote store."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DeconfigProtocolError(DeconfigError):
    """The remote sent a response or event that cannot be understood."""


class DeconfigRemoteError(DeconfigError):
    """The remote store explicitly reported a failure."""

    default_code = "REMOTE_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code or self.default_code
        self.message = message

    def __str__(self) -> str:
        return self.message


class DeconfigAuthenticationError(DeconfigRemoteError):
    """No valid credentials."""

    default_code = "UNAUTHORIZED"


class DeconfigPermissionError(DeconfigRemoteError):
    """Credentials are valid but access is forbidden."""

    default_code = "FORBIDDEN"


class DeconfigNotFoundError(DeconfigRemoteError):
    """Requested branch or file does not exist."""

    default_code = "NOT_FOUND"


class DeconfigRateLimitError(DeconfigRemoteError):
    """Too many requests."""

    default_code = "RATE_LIMITED"


class DeconfigConflictError(DeconfigRemoteError):
    """A write was rejected because the file changed remotely."""

    default_code = "CONFLICT"
