"""Application-wide settings and configuration."""

from pathlib import Path
from typing import Optional


class Settings:
    """Centralized application settings."""

    # Project paths
    PROJECT_ROOT = Path(__file__).parent.parent.parent.parent
    DATA_DIR = PROJECT_ROOT / "data"
    LOGS_DIR = PROJECT_ROOT / "logs"

    # Local durable store (one database file per profile)
    DEFAULT_PROFILE = "default"
    DEFAULT_DB_PATH = DATA_DIR / "bugsentinel.duckdb"
    STORAGE_QUOTA_BYTES = 5 * 1024 * 1024  # typical browser localStorage limit

    # Storage keys
    SNIPPETS_KEY = "bugsentinel_snippets"
    PREFERENCES_KEY = "bugsentinel_preferences"
    SYNC_QUEUE_KEY = "bugsentinel_sync_queue"
    SESSION_KEY = "bugsentinel_session"
    UI_STATE_KEY = "bugsentinel_ui_state"

    # Sync engine
    SYNC_MAX_RETRIES = 3
    SYNC_RETRY_BASE_SECONDS = 1.0
    MERGE_WINDOW_SECONDS = 60

    # Connectivity probing
    CONNECTIVITY_CHECK_INTERVAL = 30
    CONNECTIVITY_PROBE_TIMEOUT = 5

    @classmethod
    def ensure_directories(cls) -> None:
        """Ensure all required directories exist."""
        cls.DATA_DIR.mkdir(parents=True, exist_ok=True)
        cls.LOGS_DIR.mkdir(parents=True, exist_ok=True)

    @classmethod
    def get_db_path(cls, custom_path: Optional[Path] = None, profile: Optional[str] = None) -> Path:
        """Get the local store path, with optional override or named profile."""
        if custom_path:
            return custom_path
        if profile and profile != cls.DEFAULT_PROFILE:
            return cls.DATA_DIR / f"bugsentinel-{profile}.duckdb"
        return cls.DEFAULT_DB_PATH
