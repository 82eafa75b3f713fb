"""
DuckDB-backed key/value persistence with atomic multi-key writes.

Plays the role of browser local storage for one profile: string values under
string keys, a byte quota, and synchronous calls. Connections are opened per
operation and always closed, so a crash never leaves a half-applied write.
"""

from __future__ import annotations

import contextlib
import logging
import threading
from pathlib import Path
from typing import Dict, Generator, Iterable, List, Optional

import duckdb

from bugsentinel.api.error_handling import LocalStorageError, StorageQuotaExceededError
from bugsentinel.config.settings import Settings


class DuckDBKeyValueStore:
    """String key/value table in a single DuckDB file."""

    TABLE = "local_storage"

    def __init__(
        self,
        db_path: Optional[Path] = None,
        quota_bytes: int = Settings.STORAGE_QUOTA_BYTES,
        logger_obj: Optional[logging.Logger] = None,
    ) -> None:
        self.db_path = db_path or Settings.get_db_path()
        self.quota_bytes = quota_bytes
        self.logger = logger_obj or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Generator[duckdb.DuckDBPyConnection, None, None]:
        conn = duckdb.connect(database=self.db_path.as_posix(), read_only=False)
        try:
            yield conn
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self._connect() as conn:
                conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self.TABLE} (
                        key VARCHAR PRIMARY KEY,
                        value VARCHAR NOT NULL,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                    """
                )
        except duckdb.Error as e:
            self.logger.error(f"Could not initialise local storage at {self.db_path}: {e}", exc_info=True)
            raise LocalStorageError(f"Local storage unavailable: {e}") from e

    # ----------------------------- Reads -----------------------------
    def get_item(self, key: str) -> Optional[str]:
        """Return the stored string or None when the key is absent."""
        with self._lock, self._connect() as conn:
            row = conn.execute(f"SELECT value FROM {self.TABLE} WHERE key = ?", [key]).fetchone()
        return row[0] if row else None

    def keys(self) -> List[str]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(f"SELECT key FROM {self.TABLE} ORDER BY key").fetchall()
        return [r[0] for r in rows]

    def total_size(self) -> int:
        """Bytes currently used by stored values."""
        with self._lock, self._connect() as conn:
            row = conn.execute(f"SELECT COALESCE(SUM(strlen(value)), 0) FROM {self.TABLE}").fetchone()
        return int(row[0])

    # ----------------------------- Writes ----------------------------
    def set_item(self, key: str, value: str) -> None:
        self.set_items({key: value})

    def set_items(self, items: Dict[str, str]) -> None:
        """Write several keys in one transaction; either all land or none do.

        Raises:
            StorageQuotaExceededError: the write would exceed ``quota_bytes``
            LocalStorageError: the database rejected the write
        """
        if not items:
            return

        with self._lock, self._connect() as conn:
            placeholders = ", ".join("?" for _ in items)
            replaced = conn.execute(
                f"SELECT COALESCE(SUM(strlen(value)), 0) FROM {self.TABLE} WHERE key IN ({placeholders})",
                list(items.keys()),
            ).fetchone()[0]
            current = conn.execute(f"SELECT COALESCE(SUM(strlen(value)), 0) FROM {self.TABLE}").fetchone()[0]
            incoming = sum(len(v.encode("utf-8")) for v in items.values())
            projected = int(current) - int(replaced) + incoming
            if projected > self.quota_bytes:
                raise StorageQuotaExceededError(
                    f"Local storage quota exceeded ({projected:,} > {self.quota_bytes:,} bytes)"
                )

            try:
                conn.execute("BEGIN TRANSACTION")
                for key, value in items.items():
                    conn.execute(
                        f"INSERT OR REPLACE INTO {self.TABLE} (key, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)",
                        [key, value],
                    )
                conn.execute("COMMIT")
            except duckdb.Error as e:
                conn.execute("ROLLBACK")
                raise LocalStorageError(f"Write failed for keys {sorted(items)}: {e}") from e

    def remove_item(self, key: str) -> None:
        self.remove_items([key])

    def remove_items(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        if not keys:
            return
        placeholders = ", ".join("?" for _ in keys)
        with self._lock, self._connect() as conn:
            try:
                conn.execute(f"DELETE FROM {self.TABLE} WHERE key IN ({placeholders})", keys)
            except duckdb.Error as e:
                raise LocalStorageError(f"Delete failed for keys {keys}: {e}") from e
