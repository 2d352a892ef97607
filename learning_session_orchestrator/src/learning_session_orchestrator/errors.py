"""
Error Types

Exceptions raised by the storage and messaging collaborators.
The Sync Engine and Navigation Controller catch these at their public
boundary and return best-effort results instead.
"""

from typing import Optional


class OrchestratorError(Exception):
    """Base class for learning session errors."""


class RemoteSyncError(OrchestratorError):
    """Remote progress API call failed (network, non-2xx, bad payload)."""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class AuthTokenUnavailableError(RemoteSyncError):
    """Bearer token missing or expired. Retryable once the session refreshes."""

    def __init__(self, message: str = "No valid access token", status_code: Optional[int] = None):
        super().__init__(message, status_code=status_code, retryable=True)


class CacheUnavailableError(OrchestratorError):
    """Local durable cache could not be read or written."""


class ChannelSubscriptionError(OrchestratorError):
    """A tutor signal already has its single consumer."""
