"""
Application state store shared by services, the sync engine and the CLI.

One instance is created by the dependency container and passed to every
component that reads or changes it. Changes go through the action methods,
which notify subscribers with the names of the fields they touched.
"""

import json
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

import duckdb

from bugsentinel.api.error_handling import LocalStorageError
from bugsentinel.config.settings import Settings
from bugsentinel.data.services.sync_types import (
    AnalysisResult,
    CodeSuggestion,
    RefactorResult,
    Snippet,
    User,
)
from bugsentinel.data.storage.kv_backend import DuckDBKeyValueStore

StateListener = Callable[[Tuple[str, ...]], None]

THEMES = ("light", "dark")


class AppStateStore:
    """In-memory application state with subscribe/notify."""

    PERSISTED_FIELDS = ("theme", "sidebar_open")

    def __init__(self, backend: Optional[DuckDBKeyValueStore] = None, logger_obj: Optional[logging.Logger] = None):
        self.backend = backend
        self.logger = logger_obj or logging.getLogger(__name__)
        self._listeners: List[StateListener] = []

        self.user: Optional[User] = None
        self.is_authenticated = False
        self.snippets: List[Snippet] = []
        self.current_snippet: Optional[Snippet] = None
        self.analysis_results: List[AnalysisResult] = []
        self.is_analyzing = False
        self.refactor_result: Optional[RefactorResult] = None
        self.code_suggestions: List[CodeSuggestion] = []
        self.theme = "light"
        self.sidebar_open = True

        self._load_ui_state()

    # ----------------------------- Subscription -----------------------------
    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register ``listener``; the returned callable removes it again."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, *changed: str) -> None:
        if any(name in self.PERSISTED_FIELDS for name in changed):
            self._save_ui_state()
        for listener in list(self._listeners):
            try:
                listener(changed)
            except Exception as e:
                self.logger.error(f"State listener failed for {changed}: {e}", exc_info=True)

    # ----------------------------- Persistence -----------------------------
    def _load_ui_state(self) -> None:
        if self.backend is None:
            return
        try:
            stored = self.backend.get_item(Settings.UI_STATE_KEY)
            data = json.loads(stored) if stored else {}
        except (json.JSONDecodeError, LocalStorageError, duckdb.Error) as e:
            self.logger.warning(f"Ignoring unreadable UI state: {e}")
            return
        if data.get("theme") in THEMES:
            self.theme = data["theme"]
        if isinstance(data.get("sidebar_open"), bool):
            self.sidebar_open = data["sidebar_open"]

    def _save_ui_state(self) -> None:
        if self.backend is None:
            return
        try:
            self.backend.set_item(
                Settings.UI_STATE_KEY,
                json.dumps({"theme": self.theme, "sidebar_open": self.sidebar_open}),
            )
        except (LocalStorageError, duckdb.Error) as e:
            self.logger.warning(f"Could not persist UI state: {e}")

    # ----------------------------- Auth -----------------------------
    def set_user(self, user: Optional[User]) -> None:
        self.user = user
        self.is_authenticated = user is not None
        self._notify("user", "is_authenticated")

    def set_authenticated(self, value: bool) -> None:
        self.is_authenticated = value
        self._notify("is_authenticated")

    def logout(self) -> None:
        """Drop everything tied to the signed-in user; UI preferences stay."""
        self.user = None
        self.is_authenticated = False
        self.snippets = []
        self.current_snippet = None
        self.analysis_results = []
        self.refactor_result = None
        self.code_suggestions = []
        self._notify(
            "user", "is_authenticated", "snippets", "current_snippet",
            "analysis_results", "refactor_result", "code_suggestions",
        )

    # ----------------------------- Snippets -----------------------------
    def set_snippets(self, snippets: List[Snippet]) -> None:
        self.snippets = list(snippets)
        self._notify("snippets")

    def add_snippet(self, snippet: Snippet) -> None:
        self.snippets = [snippet] + [s for s in self.snippets if s.id != snippet.id]
        self._notify("snippets")

    def update_snippet(self, snippet_id: str, updates: Dict[str, Any]) -> None:
        """Apply field updates to the projected snippet, and to the current one when it matches."""
        changed = ["snippets"]
        for snippet in self.snippets:
            if snippet.id == snippet_id:
                for name, value in updates.items():
                    setattr(snippet, name, value)
        if self.current_snippet is not None and self.current_snippet.id == snippet_id:
            for name, value in updates.items():
                setattr(self.current_snippet, name, value)
            changed.append("current_snippet")
        self._notify(*changed)

    def replace_snippet(self, snippet_id: str, snippet: Snippet) -> None:
        """Swap the projected snippet ``snippet_id`` for ``snippet`` (which may carry a new id)."""
        self.snippets = [snippet if s.id == snippet_id else s for s in self.snippets]
        changed = ["snippets"]
        if self.current_snippet is not None and self.current_snippet.id == snippet_id:
            self.current_snippet = snippet
            changed.append("current_snippet")
        self._notify(*changed)

    def delete_snippet(self, snippet_id: str) -> None:
        self.snippets = [s for s in self.snippets if s.id != snippet_id]
        changed = ["snippets"]
        if self.current_snippet is not None and self.current_snippet.id == snippet_id:
            self.current_snippet = None
            changed.append("current_snippet")
        self._notify(*changed)

    def find_snippet(self, snippet_id: str) -> Optional[Snippet]:
        return next((s for s in self.snippets if s.id == snippet_id), None)

    def set_current_snippet(self, snippet: Optional[Snippet]) -> None:
        self.current_snippet = snippet
        self._notify("current_snippet")

    # ----------------------------- Analysis -----------------------------
    def set_analysis_results(self, results: List[AnalysisResult]) -> None:
        self.analysis_results = list(results)
        self._notify("analysis_results")

    def set_analyzing(self, value: bool) -> None:
        self.is_analyzing = value
        self._notify("is_analyzing")

    def set_refactor_result(self, result: Optional[RefactorResult]) -> None:
        self.refactor_result = result
        self._notify("refactor_result")

    def set_code_suggestions(self, suggestions: List[CodeSuggestion]) -> None:
        self.code_suggestions = list(suggestions)
        self._notify("code_suggestions")

    # ----------------------------- UI -----------------------------
    def set_theme(self, theme: str) -> None:
        if theme not in THEMES:
            raise ValueError(f"Unknown theme: {theme}")
        self.theme = theme
        self._notify("theme")

    def set_sidebar_open(self, value: bool) -> None:
        self.sidebar_open = value
        self._notify("sidebar_open")
