"""Local durable store for snippets, preferences and the pending-operation queue."""

from __future__ import annotations

import json
import logging
import random
import string
import time
import uuid
from typing import Any, Dict, List, Optional

import duckdb

from bugsentinel.api.error_handling import LocalStorageError, StorageQuotaExceededError
from bugsentinel.config.settings import Settings
from bugsentinel.data.services.sync_types import (
    LOCAL_ID_PREFIX,
    AnalysisResult,
    LocalPreferences,
    LocalSnippet,
    OperationType,
    QueueEntry,
    Snippet,
    SyncStatus,
    utcnow,
)
from bugsentinel.data.storage.kv_backend import DuckDBKeyValueStore

EDITABLE_FIELDS = ("title", "language", "code", "analysis_results")


class LocalStore:
    """
    Synchronous persistence of three collections on top of a key/value backend.

    Every mutation is a single read-modify-write of the affected keys, and a
    mutation that also enqueues a pending operation writes the collection and
    the queue in one transaction. Reads fail soft: unreadable data is logged
    and treated as empty.
    """

    def __init__(self, backend: DuckDBKeyValueStore, logger_obj: Optional[logging.Logger] = None):
        self.backend = backend
        self.logger = logger_obj or logging.getLogger(__name__)

    # ----------------------------- Helpers -----------------------------
    @staticmethod
    def generate_local_id() -> str:
        suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
        return f"{LOCAL_ID_PREFIX}{int(time.time() * 1000)}_{suffix}"

    def _read_json(self, key: str) -> Any:
        try:
            stored = self.backend.get_item(key)
            return json.loads(stored) if stored else None
        except json.JSONDecodeError as e:
            self.logger.error(f"Corrupt data under {key}, treating as empty: {e}")
            return None
        except duckdb.Error as e:
            self.logger.error(f"Error reading {key} from local storage: {e}")
            return None

    def _read_list(self, key: str) -> List[Dict[str, Any]]:
        data = self._read_json(key)
        if data is None:
            return []
        if not isinstance(data, list):
            self.logger.error(f"Unexpected shape under {key} ({type(data).__name__}), treating as empty")
            return []
        return data

    def _write(self, items: Dict[str, Any]) -> None:
        """Persist several collections atomically, surfacing quota exhaustion as a warning."""
        encoded = {key: json.dumps(value) for key, value in items.items()}
        try:
            self.backend.set_items(encoded)
        except StorageQuotaExceededError as e:
            self.logger.warning(f"Local storage is full; change not saved. Consider cleaning up old data. ({e})")
            raise
        except LocalStorageError as e:
            self.logger.error(f"Error saving to local storage: {e}")
            raise
        except duckdb.Error as e:
            self.logger.error(f"Error saving to local storage: {e}")
            raise LocalStorageError(str(e)) from e

    def _load_snippets(self) -> List[LocalSnippet]:
        snippets = []
        for raw in self._read_list(Settings.SNIPPETS_KEY):
            try:
                snippets.append(LocalSnippet.from_dict(raw))
            except (KeyError, ValueError, TypeError) as e:
                self.logger.warning(f"Skipping unreadable local snippet: {e}")
        return snippets

    def _queue_with(self, op_type: OperationType, data: Dict[str, Any]) -> List[Dict[str, Any]]:
        queue = [entry.to_dict() for entry in self.get_queue()]
        queue.append(
            QueueEntry(
                entry_id=uuid.uuid4().hex,
                type=op_type,
                data=data,
                timestamp=utcnow(),
            ).to_dict()
        )
        return queue

    # ----------------------------- Snippets -----------------------------
    def list_snippets(self) -> List[LocalSnippet]:
        """Return all locally stored snippets in storage order."""
        return self._load_snippets()

    def get_snippet(self, local_id: str) -> Optional[LocalSnippet]:
        return next((s for s in self._load_snippets() if s.local_id == local_id), None)

    def find_by_remote_id(self, remote_id: str) -> Optional[LocalSnippet]:
        return next((s for s in self._load_snippets() if s.remote_id == remote_id), None)

    def save_snippet(
        self,
        title: str,
        language: str,
        code: str,
        user_id: Optional[str] = None,
        analysis_results: Optional[List[AnalysisResult]] = None,
    ) -> LocalSnippet:
        """Store a new snippet as pending and enqueue its create operation.

        Raises:
            LocalStorageError: nothing was persisted
        """
        snippets = self._load_snippets()
        now = utcnow()
        snippet = LocalSnippet(
            local_id=self.generate_local_id(),
            title=title,
            language=language,
            code=code,
            created_at=now,
            updated_at=now,
            sync_status=SyncStatus.PENDING,
            user_id=user_id,
            analysis_results=analysis_results,
        )
        snippets.append(snippet)

        self._write({
            Settings.SNIPPETS_KEY: [s.to_dict() for s in snippets],
            Settings.SYNC_QUEUE_KEY: self._queue_with(OperationType.CREATE, snippet.to_dict()),
        })
        self.logger.debug(f"Saved local snippet {snippet.local_id}")
        return snippet

    def update_snippet(self, local_id: str, updates: Dict[str, Any]) -> Optional[LocalSnippet]:
        """Merge editable fields, re-stamp, mark pending and enqueue an update.

        Returns None when no snippet has ``local_id``.
        """
        snippets = self._load_snippets()
        index = next((i for i, s in enumerate(snippets) if s.local_id == local_id), None)
        if index is None:
            return None

        snippet = snippets[index]
        for name in EDITABLE_FIELDS:
            if name in updates and updates[name] is not None:
                setattr(snippet, name, updates[name])
        snippet.updated_at = utcnow()
        snippet.sync_status = SyncStatus.PENDING

        self._write({
            Settings.SNIPPETS_KEY: [s.to_dict() for s in snippets],
            Settings.SYNC_QUEUE_KEY: self._queue_with(OperationType.UPDATE, snippet.to_dict()),
        })
        return snippet

    def delete_snippet(self, local_id: str) -> bool:
        """Remove a snippet, enqueueing a delete that carries the removed record."""
        snippets = self._load_snippets()
        index = next((i for i, s in enumerate(snippets) if s.local_id == local_id), None)
        if index is None:
            return False

        removed = snippets.pop(index)
        self._write({
            Settings.SNIPPETS_KEY: [s.to_dict() for s in snippets],
            Settings.SYNC_QUEUE_KEY: self._queue_with(OperationType.DELETE, removed.to_dict()),
        })
        return True

    def track_remote_snippet(self, snippet: Snippet, user_id: Optional[str] = None) -> LocalSnippet:
        """Adopt a remote snippet into the local store as synced, without enqueueing.

        An already tracked copy is refreshed from ``snippet`` unless it carries
        local edits that are still pending.
        """
        snippets = self._load_snippets()
        existing = next((s for s in snippets if s.remote_id == snippet.id), None)
        if existing:
            if existing.sync_status == SyncStatus.SYNCED:
                existing.title = snippet.title
                existing.language = snippet.language
                existing.code = snippet.code
                existing.updated_at = snippet.updated_at
                existing.analysis_results = snippet.analysis_results
                self._write({Settings.SNIPPETS_KEY: [s.to_dict() for s in snippets]})
            return existing

        local = LocalSnippet(
            local_id=self.generate_local_id(),
            title=snippet.title,
            language=snippet.language,
            code=snippet.code,
            created_at=snippet.created_at,
            updated_at=snippet.updated_at,
            sync_status=SyncStatus.SYNCED,
            user_id=user_id,
            remote_id=snippet.id,
            analysis_results=snippet.analysis_results,
        )
        snippets.append(local)
        self._write({Settings.SNIPPETS_KEY: [s.to_dict() for s in snippets]})
        return local

    def discard_snippet(self, local_id: str) -> bool:
        """Drop a record already deleted remotely, along with its queued changes."""
        snippets = self._load_snippets()
        remaining = [s for s in snippets if s.local_id != local_id]
        if len(remaining) == len(snippets):
            return False
        queue = [e for e in self.get_queue() if e.data.get("local_id") != local_id]
        self._write({
            Settings.SNIPPETS_KEY: [s.to_dict() for s in remaining],
            Settings.SYNC_QUEUE_KEY: [e.to_dict() for e in queue],
        })
        return True

    def _set_snippet_status(
        self, local_id: str, status: Optional[SyncStatus], remote_id: Optional[str] = None
    ) -> bool:
        snippets = self._load_snippets()
        for snippet in snippets:
            if snippet.local_id == local_id:
                if status is not None:
                    snippet.sync_status = status
                if remote_id:
                    snippet.remote_id = remote_id
                self._write({Settings.SNIPPETS_KEY: [s.to_dict() for s in snippets]})
                return True
        return False

    def mark_snippet_synced(self, local_id: str, remote_id: Optional[str] = None) -> bool:
        """Flip a snippet to synced (recording its remote id) without touching the queue."""
        return self._set_snippet_status(local_id, SyncStatus.SYNCED, remote_id)

    def mark_snippet_remote_id(self, local_id: str, remote_id: str) -> bool:
        """Record the server-issued id while later queued changes are still pending."""
        return self._set_snippet_status(local_id, None, remote_id)

    def mark_snippet_error(self, local_id: str) -> bool:
        return self._set_snippet_status(local_id, SyncStatus.ERROR)

    # ----------------------------- Preferences -----------------------------
    def get_preferences(self) -> Optional[LocalPreferences]:
        data = self._read_json(Settings.PREFERENCES_KEY)
        if not isinstance(data, dict):
            return None
        try:
            return LocalPreferences.from_dict(data)
        except (KeyError, ValueError, TypeError) as e:
            self.logger.error(f"Error reading local preferences: {e}")
            return None

    def save_preferences(
        self,
        theme: str,
        editor_settings: Optional[Dict[str, Any]] = None,
        last_snippet_id: Optional[str] = None,
    ) -> LocalPreferences:
        """Replace the preferences record as pending and enqueue its upsert."""
        preferences = LocalPreferences(
            theme=theme,
            editor_settings=dict(editor_settings or {}),
            last_snippet_id=last_snippet_id,
            sync_status=SyncStatus.PENDING,
        )
        self._write({
            Settings.PREFERENCES_KEY: preferences.to_dict(),
            Settings.SYNC_QUEUE_KEY: self._queue_with(OperationType.PREFERENCES, preferences.to_dict()),
        })
        return preferences

    def cache_preferences(
        self,
        theme: str,
        editor_settings: Optional[Dict[str, Any]] = None,
        last_snippet_id: Optional[str] = None,
    ) -> Optional[LocalPreferences]:
        """Store remotely confirmed preferences as synced; pending local ones are kept.

        Returns the record now stored.
        """
        current = self.get_preferences()
        if current is not None and current.sync_status != SyncStatus.SYNCED:
            return current
        preferences = LocalPreferences(
            theme=theme,
            editor_settings=dict(editor_settings or {}),
            last_snippet_id=last_snippet_id,
            sync_status=SyncStatus.SYNCED,
        )
        self._write({Settings.PREFERENCES_KEY: preferences.to_dict()})
        return preferences

    def mark_preferences_synced(self) -> bool:
        preferences = self.get_preferences()
        if not preferences:
            return False
        preferences.sync_status = SyncStatus.SYNCED
        self._write({Settings.PREFERENCES_KEY: preferences.to_dict()})
        return True

    # ----------------------------- Queue -----------------------------
    def get_queue(self) -> List[QueueEntry]:
        """Pending operations in enqueue order."""
        entries = []
        for raw in self._read_list(Settings.SYNC_QUEUE_KEY):
            try:
                entries.append(QueueEntry.from_dict(raw))
            except (KeyError, ValueError, TypeError) as e:
                self.logger.warning(f"Skipping unreadable queue entry: {e}")
        return entries

    def pending_count(self) -> int:
        return len(self.get_queue())

    def remove_queue_entry(self, entry_id: str) -> bool:
        queue = self.get_queue()
        remaining = [entry for entry in queue if entry.entry_id != entry_id]
        if len(remaining) == len(queue):
            return False
        self._write({Settings.SYNC_QUEUE_KEY: [entry.to_dict() for entry in remaining]})
        return True

    def clear_queue(self) -> None:
        try:
            self.backend.remove_item(Settings.SYNC_QUEUE_KEY)
        except LocalStorageError as e:
            self.logger.error(f"Error clearing sync queue: {e}")
            raise

    # ----------------------------- Maintenance -----------------------------
    def clear_all(self) -> None:
        """Wipe snippets, preferences and queue (used on logout)."""
        try:
            self.backend.remove_items([Settings.SNIPPETS_KEY, Settings.PREFERENCES_KEY, Settings.SYNC_QUEUE_KEY])
            self.logger.info("Cleared all local data")
        except LocalStorageError as e:
            self.logger.error(f"Error clearing local data: {e}")
            raise

    def get_storage_usage(self) -> Dict[str, int]:
        try:
            used = self.backend.total_size()
        except duckdb.Error as e:
            self.logger.warning(f"Could not measure local storage usage: {e}")
            used = 0
        return {"used": used, "quota": self.backend.quota_bytes}
