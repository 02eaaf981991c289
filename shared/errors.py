"""
Shared error handling for the client sync layer.

Exceptions defined here never cross the request coalescer: fetchers and
adapters raise them, the coalescer classifies them into a RequestResult.
"""

from enum import Enum
from typing import Dict, Any, Optional


class ErrorKind(str, Enum):
    """Classification of a failed fetch, as seen by presentation code."""
    NOT_FOUND = "not_found"
    ACCESS_DENIED = "access_denied"
    SECRET_REQUIRED = "secret_required"
    TIMEOUT = "timeout"
    NETWORK_FAILURE = "network_failure"
    UNKNOWN = "unknown"

    @property
    def is_transient(self) -> bool:
        """Transient failures are retried on the next ask instead of cached."""
        return self in (ErrorKind.TIMEOUT, ErrorKind.NETWORK_FAILURE, ErrorKind.UNKNOWN)


class SyncLayerException(Exception):
    """Base exception for the sync layer."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    @property
    def kind(self) -> ErrorKind:
        return ErrorKind.UNKNOWN


class FetchError(SyncLayerException):
    """A fetch failed with a known classification."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(f"FETCH_{kind.value.upper()}", message, details)
        self._kind = kind
        self.status_code = status_code

    @property
    def kind(self) -> ErrorKind:
        return self._kind


class StorageError(SyncLayerException):
    """Persistent storage read/write errors."""

    def __init__(self, message: str = "Storage error", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORAGE_ERROR", message, details)


class ChannelError(SyncLayerException):
    """Realtime channel connect or delivery errors."""

    def __init__(self, message: str = "Realtime channel error", details: Optional[Dict[str, Any]] = None):
        super().__init__("CHANNEL_ERROR", message, details)

    @property
    def kind(self) -> ErrorKind:
        return ErrorKind.NETWORK_FAILURE


class ConfigurationError(SyncLayerException):
    """Invalid settings or wiring."""

    def __init__(self, message: str = "Invalid configuration", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)
