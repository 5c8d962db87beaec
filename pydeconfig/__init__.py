"""pydeconfig - sync client for DECONFIG branch-versioned file stores."""

from .api import DeconfigClient, RemoteStore
from .exceptions import (
    DeconfigAuthenticationError,
    DeconfigConfigError,
    DeconfigConflictError,
    DeconfigError,
    DeconfigNotFoundError,
    DeconfigPermissionError,
    DeconfigProtocolError,
    DeconfigRateLimitError,
    DeconfigRemoteError,
    DeconfigTransportError,
    DeconfigValidationError,
)
from .models import ChangeType, FileRecord, ListFilesResult, WatchEvent, WriteAck
from .recording import CallRecord, RecordingRemoteStore

__all__ = [
    "DeconfigClient",
    "RemoteStore",
    "RecordingRemoteStore",
    "CallRecord",
    "ChangeType",
    "FileRecord",
    "ListFilesResult",
    "WatchEvent",
    "WriteAck",
    "DeconfigError",
    "DeconfigAuthenticationError",
    "DeconfigConfigError",
    "DeconfigConflictError",
    "DeconfigNotFoundError",
    "DeconfigPermissionError",
    "DeconfigProtocolError",
    "DeconfigRateLimitError",
    "DeconfigRemoteError",
    "DeconfigTransportError",
    "DeconfigValidationError",
]
