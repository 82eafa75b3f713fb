"""Remote service clients and error handling."""

from .circuit_breaker import CircuitBreaker, CircuitBreakerManager
from .error_handling import ErrorCategory, categorize_error, is_transient

__all__ = ["CircuitBreaker", "CircuitBreakerManager", "ErrorCategory", "categorize_error", "is_transient"]
