"""Polymux exception hierarchy

Every failure a turn can end with maps onto one ``ErrorCategory`` so the
dispatcher can turn an exception into a ``turn-error`` event without knowing
which adapter raised it.
"""

from typing import Optional

from polymux.models.events import ErrorCategory


class ProviderError(Exception):
    """Base exception for provider errors"""
    category = ErrorCategory.INTERNAL

    def __init__(self, message: str, provider: str, session_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.session_id = session_id


class ConfigurationError(ProviderError):
    """Missing credential, unknown provider or bad catalog entry"""
    category = ErrorCategory.CONFIGURATION


class InvalidRequestError(ProviderError):
    category = ErrorCategory.INVALID_REQUEST


class CapacityError(ProviderError):
    """Per-user concurrent turn limit reached"""
    category = ErrorCategory.CAPACITY


class AuthenticationError(ProviderError):
    category = ErrorCategory.AUTHENTICATION


class ResumeError(ProviderError):
    """The backend cannot continue the requested session"""
    category = ErrorCategory.RESUME


class TransportError(ProviderError):
    """Connection failure, non-2xx response or non-zero exit"""
    category = ErrorCategory.TRANSPORT


class UpstreamError(ProviderError):
    """The backend reported an error inside an otherwise healthy stream"""
    category = ErrorCategory.UPSTREAM


class SessionAlreadyActiveError(ProviderError):
    """A live handle is already registered under this session id"""
    category = ErrorCategory.INVALID_REQUEST
