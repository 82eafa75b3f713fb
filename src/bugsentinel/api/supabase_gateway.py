"""Remote data gateway for the hosted backend (PostgREST tables + GoTrue auth)."""

import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

import aiohttp
import backoff

from bugsentinel.config.api import APIConfig
from bugsentinel.data.services.sync_types import (
    AnalysisResult,
    GatewayResult,
    Session,
    Snippet,
    User,
    parse_timestamp,
)

from .circuit_breaker import CircuitBreakerManager, circuit_breaker_manager
from .error_handling import (
    CircuitBreakerOpenException,
    MalformedResponseError,
    TransientRemoteError,
    categorize_error,
)

_module_logger = logging.getLogger(__name__)

SessionListener = Callable[[Optional[Session]], None]


def _backoff_handler(details):
    """Log backoff attempts with error categorization."""
    exception = details["exception"]
    error_category = categorize_error(exception)
    _module_logger.warning(
        f"Backing off {details['wait']:.1f}s after {error_category.value} error "
        f"(attempt {details['tries']}/{APIConfig.MAX_RETRIES}): {exception}"
    )


def snippet_from_row(row: Dict[str, Any]) -> Snippet:
    """Translate a snake_case wire row into a Snippet."""
    try:
        results = row.get("analysis_results")
        return Snippet(
            id=str(row["id"]),
            title=row["title"],
            language=row["language"],
            code=row.get("code") or "",
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row.get("updated_at") or row["created_at"]),
            analysis_results=[AnalysisResult.from_dict(r) for r in results] if results else None,
        )
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise MalformedResponseError(f"Malformed snippet row: {e}") from e


def _error_text(payload: Any, status: int) -> str:
    if isinstance(payload, dict):
        for key in ("error_description", "msg", "message", "error", "hint"):
            if payload.get(key):
                return str(payload[key])
    return f"Request failed with status {status}"


class SupabaseGateway:
    """Async client for snippet/preference CRUD and session primitives.

    Transport failures (connection errors, timeouts, 5xx) are retried with
    exponential backoff and then raised; 4xx answers come back as a
    ``GatewayResult`` carrying the server's message.
    """

    def __init__(
        self,
        url: Optional[str],
        api_key: Optional[str],
        http_session: Optional[aiohttp.ClientSession] = None,
        breakers: Optional[CircuitBreakerManager] = None,
        logger_obj: Optional[logging.Logger] = None,
    ):
        self.url = url.rstrip("/") if url else None
        self.api_key = api_key
        self.logger = logger_obj or logging.getLogger(__name__)
        self.breakers = breakers or circuit_breaker_manager
        self._http = http_session
        self._owns_http = http_session is None
        self._session: Optional[Session] = None
        self._listeners: List[SessionListener] = []

    @property
    def configured(self) -> bool:
        return bool(self.url and self.api_key)

    @property
    def current_session(self) -> Optional[Session]:
        return self._session

    @property
    def endpoint(self) -> str:
        parsed = urlparse(self.url or "")
        return f"{parsed.scheme}://{parsed.netloc}"

    async def _get_http(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
            self._owns_http = True
        return self._http

    async def close(self) -> None:
        if self._http is not None and self._owns_http and not self._http.closed:
            await self._http.close()

    async def __aenter__(self) -> "SupabaseGateway":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        token = self._session.access_token if self._session else self.api_key
        headers = {
            "apikey": self.api_key or "",
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    # ----------------------------- Transport -----------------------------
    @backoff.on_exception(
        backoff.expo,
        (aiohttp.ClientError, asyncio.TimeoutError, TransientRemoteError),
        max_tries=APIConfig.MAX_RETRIES,
        on_backoff=_backoff_handler,
        jitter=backoff.full_jitter,
        base=APIConfig.RETRY_BASE_DELAY,
        max_value=APIConfig.RETRY_MAX_DELAY,
    )
    async def _request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, str]] = None,
        json_body: Any = None,
        prefer: Optional[str] = None,
    ) -> GatewayResult:
        """Send one request with circuit breaker accounting."""
        if not self.configured:
            return GatewayResult(error="Remote backend is not configured")

        if not self.breakers.can_attempt(self.endpoint):
            raise CircuitBreakerOpenException(f"Circuit breaker is open for {self.endpoint}")

        try:
            http = await self._get_http()
            timeout = aiohttp.ClientTimeout(total=APIConfig.REQUEST_TIMEOUT)
            async with http.request(
                method, url, params=params, json=json_body, headers=self._headers(prefer), timeout=timeout
            ) as resp:
                text = await resp.text()
                if resp.status >= 500:
                    raise TransientRemoteError(f"Server error {resp.status}: {text[:200]}", status=resp.status)
                self.breakers.record_success(self.endpoint)
        except (aiohttp.ClientError, asyncio.TimeoutError, TransientRemoteError) as e:
            self.breakers.record_failure(self.endpoint)
            self.logger.error(f"{method} {url} failed with {categorize_error(e).value} error: {e}")
            raise

        try:
            payload = json.loads(text) if text else None
        except json.JSONDecodeError as e:
            if resp.status < 400:
                raise MalformedResponseError(f"Response from {url} is not JSON: {e}") from e
            payload = None

        if resp.status >= 400:
            return GatewayResult(error=_error_text(payload, resp.status), status=resp.status)
        return GatewayResult(data=payload, status=resp.status)

    def _table_url(self, table: str) -> str:
        return APIConfig.get_table_url(self.url or "", table)

    def _auth_url(self, endpoint: str) -> str:
        return APIConfig.get_auth_url(self.url or "", endpoint)

    # ----------------------------- Snippets -----------------------------
    async def get_snippets(self, user_id: str) -> GatewayResult:
        """All snippets of a user, most recently updated first."""
        result = await self._request(
            "GET",
            self._table_url(APIConfig.SNIPPETS_TABLE),
            params={"select": "*", "user_id": f"eq.{user_id}", "order": "updated_at.desc"},
        )
        if not result.ok:
            return result
        if not isinstance(result.data, list):
            raise MalformedResponseError("Expected a list of snippet rows")
        snippets = []
        for row in result.data:
            try:
                snippets.append(snippet_from_row(row))
            except MalformedResponseError as e:
                row_id = row.get("id") if isinstance(row, dict) else None
                self.logger.warning(f"Skipping snippet row {row_id}: {e}")
        return GatewayResult(data=snippets, status=result.status)

    async def create_snippet(self, user_id: str, title: str, language: str, code: str) -> GatewayResult:
        result = await self._request(
            "POST",
            self._table_url(APIConfig.SNIPPETS_TABLE),
            json_body={"user_id": user_id, "title": title, "language": language, "code": code},
            prefer="return=representation",
        )
        return self._single_snippet(result)

    async def update_snippet(
        self,
        remote_id: str,
        title: Optional[str] = None,
        language: Optional[str] = None,
        code: Optional[str] = None,
    ) -> GatewayResult:
        body = {k: v for k, v in {"title": title, "language": language, "code": code}.items() if v is not None}
        result = await self._request(
            "PATCH",
            self._table_url(APIConfig.SNIPPETS_TABLE),
            params={"id": f"eq.{remote_id}"},
            json_body=body,
            prefer="return=representation",
        )
        return self._single_snippet(result)

    async def delete_snippet(self, remote_id: str) -> GatewayResult:
        result = await self._request(
            "DELETE",
            self._table_url(APIConfig.SNIPPETS_TABLE),
            params={"id": f"eq.{remote_id}"},
        )
        return GatewayResult(error=result.error, status=result.status)

    def _single_snippet(self, result: GatewayResult) -> GatewayResult:
        if not result.ok:
            return result
        rows = result.data if isinstance(result.data, list) else [result.data]
        if not rows or rows[0] is None:
            return GatewayResult(error="Snippet not found", status=404)
        return GatewayResult(data=snippet_from_row(rows[0]), status=result.status)

    # ----------------------------- Preferences -----------------------------
    async def get_preferences(self, user_id: str) -> GatewayResult:
        """The user's preferences row, or ``data=None`` when none exists yet."""
        result = await self._request(
            "GET",
            self._table_url(APIConfig.PREFERENCES_TABLE),
            params={"select": "*", "user_id": f"eq.{user_id}"},
        )
        if not result.ok:
            return result
        rows = result.data or []
        if not isinstance(rows, list):
            raise MalformedResponseError("Expected a list of preference rows")
        return GatewayResult(data=rows[0] if rows else None, status=result.status)

    async def upsert_preferences(
        self,
        user_id: str,
        theme: Optional[str] = None,
        editor_settings: Optional[Dict[str, Any]] = None,
        last_snippet_id: Optional[str] = None,
    ) -> GatewayResult:
        body = {"user_id": user_id}
        if theme is not None:
            body["theme"] = theme
        if editor_settings is not None:
            body["editor_settings"] = editor_settings
        if last_snippet_id is not None:
            body["last_snippet_id"] = last_snippet_id

        result = await self._request(
            "POST",
            self._table_url(APIConfig.PREFERENCES_TABLE),
            params={"on_conflict": "user_id"},
            json_body=body,
            prefer="resolution=merge-duplicates,return=representation",
        )
        if not result.ok:
            return result
        rows = result.data if isinstance(result.data, list) else [result.data]
        return GatewayResult(data=rows[0] if rows else None, status=result.status)

    # ----------------------------- Auth -----------------------------
    def on_session_change(self, callback: SessionListener) -> Callable[[], None]:
        """Register a listener for sign-in/sign-out; returns an unsubscribe callable."""
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _set_session(self, session: Optional[Session]) -> None:
        self._session = session
        for listener in list(self._listeners):
            try:
                listener(session)
            except Exception as e:
                self.logger.error(f"Session listener failed: {e}", exc_info=True)

    def restore_session(self, session: Optional[Session]) -> None:
        self._set_session(session)

    @staticmethod
    def _session_from_payload(payload: Dict[str, Any]) -> Optional[Session]:
        if not isinstance(payload, dict) or not payload.get("access_token"):
            return None
        try:
            return Session.from_dict(payload)
        except (KeyError, TypeError) as e:
            raise MalformedResponseError(f"Malformed session payload: {e}") from e

    async def sign_up(self, email: str, password: str) -> GatewayResult:
        """Register; data is a Session when confirmation is not required, else a User."""
        result = await self._request(
            "POST", self._auth_url("signup"), json_body={"email": email, "password": password}
        )
        if not result.ok:
            return result
        session = self._session_from_payload(result.data)
        if session:
            self._set_session(session)
            return GatewayResult(data=session, status=result.status)
        user_payload = result.data.get("user", result.data) if isinstance(result.data, dict) else None
        if not user_payload or "id" not in user_payload:
            raise MalformedResponseError("Sign-up response carried neither session nor user")
        return GatewayResult(data=User.from_dict(user_payload), status=result.status)

    async def sign_in(self, email: str, password: str) -> GatewayResult:
        result = await self._request(
            "POST",
            self._auth_url("token"),
            params={"grant_type": "password"},
            json_body={"email": email, "password": password},
        )
        if not result.ok:
            return result
        session = self._session_from_payload(result.data)
        if not session:
            raise MalformedResponseError("Sign-in response carried no session")
        self._set_session(session)
        return GatewayResult(data=session, status=result.status)

    async def sign_out(self) -> GatewayResult:
        """End the session remotely; the local session is dropped regardless."""
        result = GatewayResult()
        try:
            if self._session:
                result = await self._request("POST", self._auth_url("logout"))
        finally:
            self._set_session(None)
        return GatewayResult(error=result.error, status=result.status)

    async def get_current_user(self) -> GatewayResult:
        if not self._session:
            return GatewayResult(data=None)
        result = await self._request("GET", self._auth_url("user"))
        if not result.ok:
            return result
        try:
            return GatewayResult(data=User.from_dict(result.data), status=result.status)
        except (KeyError, TypeError) as e:
            raise MalformedResponseError(f"Malformed user payload: {e}") from e

    async def health_check(self, timeout: float = 5) -> bool:
        """Single unretried probe of the auth health endpoint."""
        if not self.configured:
            return False
        try:
            http = await self._get_http()
            async with http.get(
                self._auth_url("health"),
                headers={"apikey": self.api_key},
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as resp:
                return resp.status < 500
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.debug(f"Health probe failed: {e}")
            return False
