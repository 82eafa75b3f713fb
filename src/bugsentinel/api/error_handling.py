"""Error handling and categorization for remote and local operations."""

import asyncio
import json
from enum import Enum
from typing import Optional

import aiohttp


class ErrorCategory(Enum):
    """Categories for different types of errors."""
    NETWORK = "network"
    SERVER = "server"
    CLIENT = "client"
    TIMEOUT = "timeout"
    DATA = "data"
    UNKNOWN = "unknown"


TRANSIENT_CATEGORIES = frozenset({ErrorCategory.NETWORK, ErrorCategory.SERVER, ErrorCategory.TIMEOUT})


class BugSentinelError(Exception):
    """Base class for application errors."""


class TransientRemoteError(BugSentinelError):
    """Remote call failed in a way worth retrying (5xx, dropped connection)."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class MalformedResponseError(BugSentinelError, ValueError):
    """Remote answered, but the payload did not have the expected shape."""


class CircuitBreakerOpenException(BugSentinelError):
    """Exception raised when an operation is attempted while the circuit breaker is open."""
    def __init__(self, message="Circuit breaker is open and cannot accept new calls"):
        self.message = message
        super().__init__(self.message)


class LocalStorageError(BugSentinelError):
    """A local durable store write did not complete."""


class StorageQuotaExceededError(LocalStorageError):
    """The write would exceed the local storage quota."""


class RateLimitExceededError(BugSentinelError):
    """Client-side AI request quota is used up for the current window."""


class AIServiceUnavailableError(BugSentinelError):
    """The AI client has no API key configured."""


def categorize_error(exception: Exception) -> ErrorCategory:
    """Categorize an exception into error types for better handling."""
    if isinstance(exception, asyncio.TimeoutError):
        return ErrorCategory.TIMEOUT
    elif isinstance(exception, CircuitBreakerOpenException):
        return ErrorCategory.NETWORK
    elif isinstance(exception, TransientRemoteError):
        if exception.status is not None and exception.status >= 500:
            return ErrorCategory.SERVER
        return ErrorCategory.NETWORK
    elif isinstance(exception, aiohttp.ClientConnectorError):
        return ErrorCategory.NETWORK
    elif isinstance(exception, aiohttp.ClientResponseError):
        if 400 <= exception.status < 500:
            return ErrorCategory.CLIENT
        elif 500 <= exception.status < 600:
            return ErrorCategory.SERVER
        else:
            return ErrorCategory.UNKNOWN
    elif isinstance(exception, aiohttp.ClientError):
        return ErrorCategory.NETWORK
    elif isinstance(exception, (json.JSONDecodeError, ValueError, KeyError, TypeError)):
        return ErrorCategory.DATA
    else:
        return ErrorCategory.UNKNOWN


def is_transient(exception: Exception) -> bool:
    """Whether a failure should drive a retry rather than be reported."""
    return categorize_error(exception) in TRANSIENT_CATEGORIES


def error_message(exception: Exception, default: str) -> str:
    """Turn an exception into the string shown across a service boundary."""
    text = str(exception).strip()
    return text or default
