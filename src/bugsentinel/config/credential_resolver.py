"""Credential Resolver - resolves service credentials from multiple sources.

Provides a unified way to load the hosted backend URL/key and the AI API key from:
1. Environment variables (for deployment)
2. .env file (for local development convenience)

The ``VITE_``-prefixed names used by the browser build are accepted as aliases.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional


@dataclass(frozen=True)
class Credentials:
    """Resolved credentials; any field may be missing."""

    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    gemini_api_key: Optional[str] = None

    @property
    def has_backend(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    @property
    def has_ai(self) -> bool:
        return bool(self.gemini_api_key)


class CredentialResolver:
    """Resolve credentials from multiple sources.

    Priority order:
    1. Process environment
    2. .env file in the working directory, then in the project root
    """

    ENV_NAMES: Dict[str, List[str]] = {
        "supabase_url": ["SUPABASE_URL", "VITE_SUPABASE_URL"],
        "supabase_key": ["SUPABASE_ANON_KEY", "VITE_SUPABASE_ANON_KEY"],
        "gemini_api_key": ["GEMINI_API_KEY", "VITE_GEMINI_API_KEY"],
    }

    @classmethod
    def resolve(
        cls,
        logger: Optional[logging.Logger] = None,
        dotenv_paths: Optional[List[Path]] = None,
    ) -> Credentials:
        """
        Try each credential source in priority order, field by field.

        Args:
            logger: Optional logger instance
            dotenv_paths: Override the .env search locations

        Returns:
            Credentials with whatever could be found
        """
        log = logger or logging.getLogger(__name__)
        dotenv_vars = cls._from_dotenv(log, dotenv_paths)

        values: Dict[str, Optional[str]] = {}
        for field_name, names in cls.ENV_NAMES.items():
            value = cls._first_present(os.environ, names)
            if value is None:
                value = cls._first_present(dotenv_vars, names)
            values[field_name] = value

        credentials = Credentials(**values)
        if credentials.has_backend:
            log.info("Resolved backend credentials")
        else:
            log.info("No backend credentials found; running local-only")
        if not credentials.has_ai:
            log.debug("No AI API key found")
        return credentials

    @staticmethod
    def _first_present(source, names: List[str]) -> Optional[str]:
        for name in names:
            value = source.get(name)
            if value:
                return value
        return None

    @classmethod
    def _from_dotenv(
        cls,
        logger: logging.Logger,
        dotenv_paths: Optional[List[Path]] = None,
    ) -> Dict[str, str]:
        """Read key/value pairs from the first .env file found."""
        paths = dotenv_paths or [
            Path('.env'),
            Path(__file__).parent.parent.parent.parent / '.env',  # Project root
        ]

        dotenv_path = None
        for path in paths:
            if path.exists():
                dotenv_path = path
                break

        if not dotenv_path:
            return {}

        env_vars: Dict[str, str] = {}
        try:
            with open(dotenv_path, 'r') as f:
                for line in f:
                    line = line.strip()
                    if not line or line.startswith('#'):
                        continue
                    if '=' in line:
                        key, value = line.split('=', 1)
                        # Remove quotes if present
                        value = value.strip().strip('"').strip("'")
                        env_vars[key.strip()] = value
        except OSError as e:
            logger.warning(f"Could not read {dotenv_path}: {e}")
            return {}

        return env_vars
