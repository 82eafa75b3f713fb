"""Snippet domain service: offline-first create/read/update/delete."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from bugsentinel.api.error_handling import LocalStorageError, error_message
from bugsentinel.data.services.reconciliation import project_snippets
from bugsentinel.data.services.sync_types import (
    ConnectionStatus,
    LocalRef,
    LocalSnippet,
    ServiceResult,
    Snippet,
    SyncReport,
    parse_ref,
)

SUPPORTED_LANGUAGES = [
    ("javascript", "JavaScript"),
    ("typescript", "TypeScript"),
    ("python", "Python"),
    ("java", "Java"),
    ("cpp", "C++"),
    ("csharp", "C#"),
    ("go", "Go"),
    ("rust", "Rust"),
    ("php", "PHP"),
    ("ruby", "Ruby"),
    ("html", "HTML"),
    ("css", "CSS"),
    ("json", "JSON"),
    ("sql", "SQL"),
    ("bash", "Bash"),
]

_UPDATABLE = ("title", "language", "code")


class SnippetService:
    """
    Offline-first snippet operations.

    Mutations go to the remote gateway first when the engine reports online
    and a user is signed in; any failure there, or being offline, routes the
    change to the local store, which queues it for the sync engine. Methods
    never raise: every outcome is a ``ServiceResult``.
    """

    def __init__(self, local_store, gateway, state, engine, logger_obj: Optional[logging.Logger] = None):
        self.local_store = local_store
        self.gateway = gateway
        self.state = state
        self.engine = engine
        self.logger = logger_obj or logging.getLogger(__name__)

    def _remote_available(self) -> bool:
        return self.engine.is_online and self.state.user is not None and self.gateway.configured

    # ----------------------------- Validation -----------------------------
    @staticmethod
    def get_supported_languages() -> List[Dict[str, str]]:
        return [{"value": value, "label": label} for value, label in SUPPORTED_LANGUAGES]

    @staticmethod
    def get_language_label(language: str) -> str:
        labels = dict(SUPPORTED_LANGUAGES)
        if language in labels:
            return labels[language]
        return language[:1].upper() + language[1:]

    @classmethod
    def generate_default_title(cls, language: str, now: Optional[datetime] = None) -> str:
        """E.g. ``Python Snippet - Mar 4, 09:15 PM``."""
        now = now or datetime.now()
        return f"{cls.get_language_label(language)} Snippet - {now:%b} {now.day}, {now:%I:%M %p}"

    def _validate(self, fields: Dict[str, Any]) -> Optional[str]:
        if "title" in fields and not (fields["title"] or "").strip():
            return "Title is required"
        if "language" in fields and fields["language"] not in dict(SUPPORTED_LANGUAGES):
            return f"Unsupported language: {fields['language']}"
        return None

    # ----------------------------- Create -----------------------------
    async def create_snippet(self, title: str, language: str, code: str) -> ServiceResult:
        user = self.state.user
        if user is None:
            return ServiceResult(error="User not authenticated")
        problem = self._validate({"title": title, "language": language})
        if problem:
            return ServiceResult(error=problem)
        title = title.strip()

        snippet = await self._create_remote(user.id, title, language, code)
        if snippet is None:
            try:
                snippet = self.local_store.save_snippet(title, language, code, user_id=user.id).to_snippet()
            except LocalStorageError as e:
                return ServiceResult(error=error_message(e, "Failed to create snippet"))

        self.state.add_snippet(snippet)
        return ServiceResult(data=snippet)

    async def _create_remote(self, user_id: str, title: str, language: str, code: str) -> Optional[Snippet]:
        if not self._remote_available():
            return None
        try:
            result = await self.gateway.create_snippet(user_id, title, language, code)
        except Exception as e:
            self.logger.warning(f"Online create failed, falling back to local: {e}")
            return None
        if not result.ok:
            self.logger.warning(f"Online create rejected, falling back to local: {result.error}")
            return None
        self._track(result.data)
        return result.data

    def _track(self, snippet: Snippet) -> Optional[LocalSnippet]:
        """Keep a synced local copy of a remote snippet for offline reads."""
        try:
            return self.local_store.track_remote_snippet(snippet, user_id=self.state.user.id if self.state.user else None)
        except LocalStorageError as e:
            self.logger.warning(f"Could not keep a local copy of snippet {snippet.id}: {e}")
            return None

    # ----------------------------- Read -----------------------------
    async def load_snippets(self) -> ServiceResult:
        """Publish local snippets immediately, then the remote-merged set when online."""
        user = self.state.user
        if user is None:
            return ServiceResult(error="User not authenticated")

        local_records = self.local_store.list_snippets()
        self.state.set_snippets(
            sorted((s.to_snippet() for s in local_records), key=lambda s: s.updated_at, reverse=True)
        )

        if self._remote_available():
            try:
                result = await self.gateway.get_snippets(user.id)
            except Exception as e:
                self.logger.warning(f"Failed to fetch remote snippets, using local data: {e}")
            else:
                if result.ok:
                    # Re-read: local records may have changed while the fetch was in flight.
                    self.state.set_snippets(project_snippets(self.local_store.list_snippets(), result.data))
                else:
                    self.logger.warning(f"Remote snippet fetch rejected, using local data: {result.error}")

        return ServiceResult(data=list(self.state.snippets))

    def set_current_snippet(self, snippet: Optional[Snippet]) -> None:
        self.state.set_current_snippet(snippet)

    # ----------------------------- Update -----------------------------
    def _remote_id_for(self, snippet_id: str) -> Optional[str]:
        ref = parse_ref(snippet_id)
        if isinstance(ref, LocalRef):
            record = self.local_store.get_snippet(ref.local_id)
            return record.remote_id if record else None
        return ref.remote_id

    def _local_record_for(self, snippet_id: str) -> Optional[LocalSnippet]:
        """Local record behind ``snippet_id``, adopting a remote-only snippet from state if needed."""
        ref = parse_ref(snippet_id)
        if isinstance(ref, LocalRef):
            return self.local_store.get_snippet(ref.local_id)
        record = self.local_store.find_by_remote_id(ref.remote_id)
        if record is not None:
            return record
        projected = self.state.find_snippet(snippet_id)
        if projected is None:
            return None
        return self.local_store.track_remote_snippet(projected, user_id=self.state.user.id if self.state.user else None)

    async def update_snippet(self, snippet_id: str, updates: Dict[str, Any]) -> ServiceResult:
        fields = {k: v for k, v in updates.items() if k in _UPDATABLE and v is not None}
        problem = self._validate(fields)
        if problem:
            return ServiceResult(error=problem)
        if "title" in fields:
            fields["title"] = fields["title"].strip()

        snippet = await self._update_remote(snippet_id, fields)
        if snippet is None:
            try:
                record = self._local_record_for(snippet_id)
                updated = self.local_store.update_snippet(record.local_id, fields) if record else None
            except LocalStorageError as e:
                return ServiceResult(error=error_message(e, "Failed to update snippet"))
            if updated is None:
                return ServiceResult(error="Snippet not found")
            snippet = updated.to_snippet()

        self.state.replace_snippet(snippet_id, snippet)
        return ServiceResult(data=snippet)

    async def _update_remote(self, snippet_id: str, fields: Dict[str, Any]) -> Optional[Snippet]:
        remote_id = self._remote_id_for(snippet_id)
        if remote_id is None or not self._remote_available():
            return None
        try:
            result = await self.gateway.update_snippet(
                remote_id,
                title=fields.get("title"),
                language=fields.get("language"),
                code=fields.get("code"),
            )
        except Exception as e:
            self.logger.warning(f"Online update failed, falling back to local: {e}")
            return None
        if not result.ok:
            self.logger.warning(f"Online update rejected, falling back to local: {result.error}")
            return None
        self._track(result.data)
        return result.data

    # ----------------------------- Delete -----------------------------
    async def delete_snippet(self, snippet_id: str) -> ServiceResult:
        if await self._delete_remote(snippet_id):
            self.state.delete_snippet(snippet_id)
            return ServiceResult(data=True)

        try:
            record = self._local_record_for(snippet_id)
            deleted = self.local_store.delete_snippet(record.local_id) if record else False
        except LocalStorageError as e:
            return ServiceResult(error=error_message(e, "Failed to delete snippet"))
        if not deleted:
            return ServiceResult(error="Snippet not found")

        self.state.delete_snippet(snippet_id)
        return ServiceResult(data=True)

    async def _delete_remote(self, snippet_id: str) -> bool:
        remote_id = self._remote_id_for(snippet_id)
        if remote_id is None or not self._remote_available():
            return False
        try:
            result = await self.gateway.delete_snippet(remote_id)
        except Exception as e:
            self.logger.warning(f"Online delete failed, falling back to local: {e}")
            return False
        if not result.ok:
            self.logger.warning(f"Online delete rejected, falling back to local: {result.error}")
            return False

        record = self.local_store.find_by_remote_id(remote_id)
        if record is not None:
            try:
                self.local_store.discard_snippet(record.local_id)
            except LocalStorageError as e:
                self.logger.warning(f"Could not drop local copy of deleted snippet {remote_id}: {e}")
        return True

    # ----------------------------- Sync passthrough -----------------------------
    def get_connection_status(self) -> ConnectionStatus:
        return self.engine.get_connection_status()

    async def force_sync_now(self, progress_callback=None) -> Optional[SyncReport]:
        return await self.engine.force_sync_now(progress_callback=progress_callback)

    def initialize_sync(self, monitor):
        return self.engine.initialize(monitor)

    def cleanup_sync(self) -> None:
        self.engine.cleanup()
