"""Remote service configuration for the backend gateway and the AI model."""

from enum import Enum


class CircuitBreakerState(Enum):
    """States for the circuit breaker pattern."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class APIConfig:
    """Backend gateway configuration and settings."""

    # REST surfaces of the hosted backend
    REST_PATH = "/rest/v1"
    AUTH_PATH = "/auth/v1"
    SNIPPETS_TABLE = "snippets"
    PREFERENCES_TABLE = "user_preferences"

    # Request settings
    MAX_RETRIES = 3
    REQUEST_TIMEOUT = 30

    # Circuit breaker settings
    CIRCUIT_BREAKER_FAILURE_THRESHOLD = 5
    CIRCUIT_BREAKER_RECOVERY_TIMEOUT = 60

    # Retry settings
    RETRY_BASE_DELAY = 2
    RETRY_MAX_DELAY = 30

    @classmethod
    def get_table_url(cls, base_url: str, table: str) -> str:
        """Get the full REST URL for a table."""
        return f"{base_url.rstrip('/')}{cls.REST_PATH}/{table}"

    @classmethod
    def get_auth_url(cls, base_url: str, endpoint: str) -> str:
        """Get the full URL for an auth endpoint."""
        return f"{base_url.rstrip('/')}{cls.AUTH_PATH}/{endpoint.lstrip('/')}"


class AIConfig:
    """Generative model configuration."""

    BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
    MODEL_NAME = "gemini-2.5-flash"
    REQUEST_TIMEOUT = 60
    MAX_RETRIES = 2

    # Client-side quota over a rolling window
    RATE_LIMIT_REQUESTS = 10
    RATE_LIMIT_WINDOW_SECONDS = 3600

    # Combined-analysis cache
    CACHE_TTL_SECONDS = 5 * 60

    @classmethod
    def get_generate_url(cls, model: str = None) -> str:
        """Get the generateContent URL for a model."""
        return f"{cls.BASE_URL}/models/{model or cls.MODEL_NAME}:generateContent"
