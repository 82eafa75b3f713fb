"""Configuration management for BugSentinel."""

from .api import AIConfig, APIConfig, CircuitBreakerState
from .credential_resolver import CredentialResolver, Credentials
from .settings import Settings

__all__ = ["Settings", "APIConfig", "AIConfig", "CircuitBreakerState", "CredentialResolver", "Credentials"]
