# tests/conftest.py
import dataclasses
import itertools
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import pytest

from bugsentinel.api.error_handling import TransientRemoteError
from bugsentinel.core.state import AppStateStore
from bugsentinel.data.services.sync_engine import SyncEngine
from bugsentinel.data.services.sync_types import GatewayResult, Session, Snippet, User, utcnow
from bugsentinel.data.storage.kv_backend import DuckDBKeyValueStore
from bugsentinel.data.storage.local_store import LocalStore


class FakeGateway:
    """In-memory stand-in for SupabaseGateway.

    ``fail(method, *outcomes)`` scripts the next calls of ``method``: an
    exception is raised, a GatewayResult is returned as-is and None lets the
    call through. Setting ``down`` makes every call raise a 503.
    """

    def __init__(self, configured: bool = True):
        self.configured = configured
        self.down = False
        self.require_confirmation = False
        self.rows: Dict[str, Snippet] = {}
        self.preferences: Optional[Dict[str, Any]] = None
        self.calls: List[Tuple[str, Any]] = []
        self._scripted: Dict[str, List[Any]] = defaultdict(list)
        self._ids = itertools.count(1)
        self._session: Optional[Session] = None
        self._listeners = []

    # ----------------------------- Test helpers -----------------------------
    def fail(self, method: str, *outcomes) -> None:
        self._scripted[method].extend(outcomes)

    def add_remote(self, title: str, language: str, code: str = "", created_at: Optional[datetime] = None) -> Snippet:
        created_at = created_at or utcnow()
        snippet = Snippet(
            id=f"remote-{next(self._ids)}",
            title=title,
            language=language,
            code=code,
            created_at=created_at,
            updated_at=created_at,
        )
        self.rows[snippet.id] = snippet
        return dataclasses.replace(snippet)

    def called(self, method: str) -> List[Any]:
        return [arg for name, arg in self.calls if name == method]

    def _take(self, method: str, arg: Any = None):
        self.calls.append((method, arg))
        if self.down:
            raise TransientRemoteError("Server error 503", status=503)
        if self._scripted[method]:
            outcome = self._scripted[method].pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return None

    # ----------------------------- Snippets -----------------------------
    async def get_snippets(self, user_id: str) -> GatewayResult:
        scripted = self._take("get_snippets", user_id)
        if scripted is not None:
            return scripted
        rows = sorted(self.rows.values(), key=lambda s: s.updated_at, reverse=True)
        return GatewayResult(data=[dataclasses.replace(s) for s in rows], status=200)

    async def create_snippet(self, user_id: str, title: str, language: str, code: str) -> GatewayResult:
        scripted = self._take("create_snippet", title)
        if scripted is not None:
            return scripted
        snippet = self.add_remote(title, language, code)
        return GatewayResult(data=snippet, status=201)

    async def update_snippet(self, remote_id: str, title=None, language=None, code=None) -> GatewayResult:
        scripted = self._take("update_snippet", remote_id)
        if scripted is not None:
            return scripted
        if remote_id not in self.rows:
            return GatewayResult(error="Snippet not found", status=404)
        changes = {k: v for k, v in {"title": title, "language": language, "code": code}.items() if v is not None}
        updated = dataclasses.replace(self.rows[remote_id], updated_at=utcnow(), **changes)
        self.rows[remote_id] = updated
        return GatewayResult(data=dataclasses.replace(updated), status=200)

    async def delete_snippet(self, remote_id: str) -> GatewayResult:
        scripted = self._take("delete_snippet", remote_id)
        if scripted is not None:
            return scripted
        self.rows.pop(remote_id, None)
        return GatewayResult(status=204)

    # ----------------------------- Preferences -----------------------------
    async def get_preferences(self, user_id: str) -> GatewayResult:
        scripted = self._take("get_preferences", user_id)
        if scripted is not None:
            return scripted
        return GatewayResult(data=dict(self.preferences) if self.preferences else None, status=200)

    async def upsert_preferences(self, user_id, theme=None, editor_settings=None, last_snippet_id=None) -> GatewayResult:
        scripted = self._take("upsert_preferences", theme)
        if scripted is not None:
            return scripted
        row = dict(self.preferences or {}, user_id=user_id)
        for key, value in (("theme", theme), ("editor_settings", editor_settings), ("last_snippet_id", last_snippet_id)):
            if value is not None:
                row[key] = value
        self.preferences = row
        return GatewayResult(data=dict(row), status=200)

    # ----------------------------- Auth -----------------------------
    @property
    def current_session(self) -> Optional[Session]:
        return self._session

    def on_session_change(self, callback):
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def restore_session(self, session: Optional[Session]) -> None:
        self._session = session
        for listener in list(self._listeners):
            listener(session)

    async def sign_in(self, email: str, password: str) -> GatewayResult:
        scripted = self._take("sign_in", email)
        if scripted is not None:
            return scripted
        session = Session(access_token="token-1", user=User(id="user-1", email=email))
        self.restore_session(session)
        return GatewayResult(data=session, status=200)

    async def sign_up(self, email: str, password: str) -> GatewayResult:
        scripted = self._take("sign_up", email)
        if scripted is not None:
            return scripted
        user = User(id="user-new", email=email)
        if self.require_confirmation:
            return GatewayResult(data=user, status=200)
        session = Session(access_token="token-new", user=user)
        self.restore_session(session)
        return GatewayResult(data=session, status=200)

    async def sign_out(self) -> GatewayResult:
        try:
            scripted = self._take("sign_out")
        finally:
            self.restore_session(None)
        return scripted or GatewayResult(status=204)

    async def get_current_user(self) -> GatewayResult:
        scripted = self._take("get_current_user")
        if scripted is not None:
            return scripted
        return GatewayResult(data=self._session.user if self._session else None, status=200)

    async def health_check(self, timeout: float = 5) -> bool:
        return self.configured and not self.down

    async def close(self) -> None:
        pass


@pytest.fixture
def kv_backend(tmp_path):
    return DuckDBKeyValueStore(tmp_path / "test.duckdb")


@pytest.fixture
def local_store(kv_backend):
    return LocalStore(kv_backend)


@pytest.fixture
def state():
    return AppStateStore()


@pytest.fixture
def user():
    return User(id="user-1", email="dev@example.com")


@pytest.fixture
def signed_in_state(state, user):
    state.set_user(user)
    return state


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def engine(local_store, gateway, signed_in_state):
    """Online engine whose retries fire without delay."""
    return SyncEngine(local_store, gateway, signed_in_state, is_online=True, retry_base_delay=0)
