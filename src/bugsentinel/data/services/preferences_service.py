"""User preferences: theme, editor settings and the last opened snippet."""

import logging
from typing import Any, Dict, Optional

from bugsentinel.api.error_handling import LocalStorageError, error_message
from bugsentinel.core.state import THEMES
from bugsentinel.data.services.sync_types import LocalPreferences, ServiceResult, Snippet

DEFAULT_EDITOR_SETTINGS = {
    "font_size": 14,
    "tab_size": 2,
    "word_wrap": "on",
    "minimap": False,
    "line_numbers": "on",
}


class PreferencesService:
    """Offline-first preferences, mirrored into the application state."""

    def __init__(self, local_store, gateway, state, engine, logger_obj: Optional[logging.Logger] = None):
        self.local_store = local_store
        self.gateway = gateway
        self.state = state
        self.engine = engine
        self.logger = logger_obj or logging.getLogger(__name__)

    @staticmethod
    def get_default_editor_settings() -> Dict[str, Any]:
        return dict(DEFAULT_EDITOR_SETTINGS)

    def _remote_available(self) -> bool:
        return self.engine.is_online and self.state.user is not None and self.gateway.configured

    def _current(self) -> LocalPreferences:
        stored = self.local_store.get_preferences()
        if stored is not None:
            return stored
        return LocalPreferences(theme=self.state.theme, editor_settings=self.get_default_editor_settings())

    def _apply_theme(self, theme: Optional[str]) -> None:
        if theme in THEMES and theme != self.state.theme:
            self.state.set_theme(theme)

    async def load_preferences(self) -> ServiceResult:
        """Apply stored preferences, then the remote record when reachable."""
        user = self.state.user
        if user is None:
            return ServiceResult(error="User not authenticated")

        preferences = self._current()
        self._apply_theme(preferences.theme)

        if self._remote_available():
            try:
                result = await self.gateway.get_preferences(user.id)
            except Exception as e:
                self.logger.warning(f"Could not load remote preferences, using local: {e}")
                return ServiceResult(data=preferences)
            if not result.ok:
                self.logger.warning(f"Remote preferences rejected: {result.error}")
                return ServiceResult(data=preferences)
            if result.data:
                row = result.data
                try:
                    cached = self.local_store.cache_preferences(
                        theme=row.get("theme") or preferences.theme,
                        editor_settings=row.get("editor_settings") or preferences.editor_settings,
                        last_snippet_id=row.get("last_snippet_id"),
                    )
                except LocalStorageError as e:
                    self.logger.warning(f"Could not cache remote preferences: {e}")
                    cached = None
                preferences = cached or preferences
                self._apply_theme(preferences.theme)

        return ServiceResult(data=preferences)

    async def save_preferences(
        self,
        theme: Optional[str] = None,
        editor_settings: Optional[Dict[str, Any]] = None,
        last_snippet_id: Optional[str] = None,
    ) -> ServiceResult:
        """Persist the given fields on top of the current record."""
        user = self.state.user
        if user is None:
            return ServiceResult(error="User not authenticated")
        if theme is not None and theme not in THEMES:
            return ServiceResult(error=f"Unknown theme: {theme}")

        current = self._current()
        merged = LocalPreferences(
            theme=theme or current.theme,
            editor_settings=editor_settings if editor_settings is not None else current.editor_settings,
            last_snippet_id=last_snippet_id if last_snippet_id is not None else current.last_snippet_id,
        )

        if self._remote_available():
            try:
                result = await self.gateway.upsert_preferences(
                    user.id,
                    theme=merged.theme,
                    editor_settings=merged.editor_settings,
                    last_snippet_id=merged.last_snippet_id,
                )
                if result.ok:
                    self.local_store.cache_preferences(merged.theme, merged.editor_settings, merged.last_snippet_id)
                    return ServiceResult(data=merged)
                self.logger.warning(f"Online preferences save rejected, queueing locally: {result.error}")
            except LocalStorageError as e:
                self.logger.warning(f"Preferences saved remotely but not cached: {e}")
                return ServiceResult(data=merged)
            except Exception as e:
                self.logger.warning(f"Online preferences save failed, queueing locally: {e}")

        try:
            saved = self.local_store.save_preferences(merged.theme, merged.editor_settings, merged.last_snippet_id)
        except LocalStorageError as e:
            return ServiceResult(error=error_message(e, "Failed to save preferences"))
        return ServiceResult(data=saved)

    async def set_theme(self, theme: str) -> ServiceResult:
        if theme not in THEMES:
            return ServiceResult(error=f"Unknown theme: {theme}")
        self.state.set_theme(theme)
        if self.state.user is None:
            return ServiceResult(data=theme)
        return await self.save_preferences(theme=theme)

    async def sync_last_snippet(self, snippet_id: str) -> ServiceResult:
        result = await self.save_preferences(last_snippet_id=snippet_id)
        if not result.ok:
            self.logger.warning(f"Failed to sync last snippet: {result.error}")
        return result

    def load_last_snippet(self) -> Optional[Snippet]:
        """Reopen the last snippet once the snippet list is loaded."""
        stored = self.local_store.get_preferences()
        if stored is None or not stored.last_snippet_id:
            return None

        wanted = {stored.last_snippet_id}
        record = self.local_store.get_snippet(stored.last_snippet_id)
        if record is not None and record.remote_id:
            wanted.add(record.remote_id)

        snippet = next((s for s in self.state.snippets if s.id in wanted), None)
        if snippet is not None:
            self.state.set_current_snippet(snippet)
        return snippet
