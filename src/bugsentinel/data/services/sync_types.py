"""Typed contracts for local/remote synchronization flows."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

LOCAL_ID_PREFIX = "local_"


class SyncStatus(str, Enum):
    """Sync state of a locally stored record."""

    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"


class OperationType(str, Enum):
    """Kind of mutation recorded in the pending-operation queue."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    PREFERENCES = "preferences"


class EngineState(str, Enum):
    """Connectivity/progress state of the synchronization engine."""

    OFFLINE = "offline"
    ONLINE_IDLE = "online_idle"
    ONLINE_SYNCING = "online_syncing"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    return value.isoformat()


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string (``Z`` suffix allowed) into an aware datetime."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError(f"Not a timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Identifier spaces
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LocalRef:
    """Snippet known only by its locally generated identifier."""

    local_id: str


@dataclass(frozen=True)
class RemoteRef:
    """Snippet known by its server-issued identifier."""

    remote_id: str


SnippetRef = Union[LocalRef, RemoteRef]


def parse_ref(snippet_id: str) -> SnippetRef:
    """Classify an identifier into its identifier space."""
    if snippet_id.startswith(LOCAL_ID_PREFIX):
        return LocalRef(snippet_id)
    return RemoteRef(snippet_id)


# ---------------------------------------------------------------------------
# Users and sessions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class User:
    id: str
    email: str
    name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "email": self.email, "name": self.name}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        metadata = data.get("user_metadata") or {}
        return cls(
            id=str(data["id"]),
            email=data.get("email") or "",
            name=data.get("name") or metadata.get("name"),
        )


@dataclass(frozen=True)
class Session:
    access_token: str
    user: User
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "user": self.user.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=data.get("expires_at"),
            user=User.from_dict(data["user"]),
        )


# ---------------------------------------------------------------------------
# AI results
# ---------------------------------------------------------------------------

@dataclass
class AnalysisResult:
    id: str
    type: str
    severity: str
    message: str
    line: int
    column: int
    suggestion: Optional[str] = None
    fixed_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "severity": self.severity,
            "message": self.message,
            "line": self.line,
            "column": self.column,
            "suggestion": self.suggestion,
            "fixed_code": self.fixed_code,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisResult":
        return cls(
            id=str(data["id"]),
            type=data.get("type", "logic"),
            severity=data.get("severity", "medium"),
            message=data.get("message", ""),
            line=int(data.get("line", 1)),
            column=int(data.get("column", 1)),
            suggestion=data.get("suggestion"),
            fixed_code=data.get("fixed_code"),
        )


@dataclass
class RefactorResult:
    original_code: str
    refactored_code: str
    explanation: str
    improvements: List[str] = field(default_factory=list)


@dataclass
class CodeSuggestion:
    suggestion: str
    code: str
    explanation: str


# ---------------------------------------------------------------------------
# Snippets
# ---------------------------------------------------------------------------

@dataclass
class Snippet:
    """Snippet in the shape the UI consumes."""

    id: str
    title: str
    language: str
    code: str
    created_at: datetime
    updated_at: datetime
    analysis_results: Optional[List[AnalysisResult]] = None

    @property
    def ref(self) -> SnippetRef:
        return parse_ref(self.id)


@dataclass
class LocalSnippet:
    """Snippet as persisted in the local durable store."""

    local_id: str
    title: str
    language: str
    code: str
    created_at: datetime
    updated_at: datetime
    sync_status: SyncStatus = SyncStatus.PENDING
    user_id: Optional[str] = None
    remote_id: Optional[str] = None
    analysis_results: Optional[List[AnalysisResult]] = None

    @property
    def ref(self) -> SnippetRef:
        if self.remote_id:
            return RemoteRef(self.remote_id)
        return LocalRef(self.local_id)

    def to_snippet(self) -> Snippet:
        """Project into the UI shape; a known remote id is authoritative."""
        return Snippet(
            id=self.remote_id or self.local_id,
            title=self.title,
            language=self.language,
            code=self.code,
            created_at=self.created_at,
            updated_at=self.updated_at,
            analysis_results=self.analysis_results,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "local_id": self.local_id,
            "title": self.title,
            "language": self.language,
            "code": self.code,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "sync_status": self.sync_status.value,
            "user_id": self.user_id,
            "remote_id": self.remote_id,
            "analysis_results": (
                [r.to_dict() for r in self.analysis_results] if self.analysis_results is not None else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LocalSnippet":
        results = data.get("analysis_results")
        return cls(
            local_id=data["local_id"],
            title=data["title"],
            language=data["language"],
            code=data.get("code", ""),
            created_at=parse_timestamp(data["created_at"]),
            updated_at=parse_timestamp(data["updated_at"]),
            sync_status=SyncStatus(data.get("sync_status", SyncStatus.PENDING.value)),
            user_id=data.get("user_id"),
            remote_id=data.get("remote_id"),
            analysis_results=[AnalysisResult.from_dict(r) for r in results] if results is not None else None,
        )


@dataclass
class LocalPreferences:
    """The single per-profile preferences record."""

    theme: str = "light"
    editor_settings: Dict[str, Any] = field(default_factory=dict)
    last_snippet_id: Optional[str] = None
    sync_status: SyncStatus = SyncStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "theme": self.theme,
            "editor_settings": dict(self.editor_settings),
            "last_snippet_id": self.last_snippet_id,
            "sync_status": self.sync_status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LocalPreferences":
        return cls(
            theme=data.get("theme", "light"),
            editor_settings=dict(data.get("editor_settings") or {}),
            last_snippet_id=data.get("last_snippet_id"),
            sync_status=SyncStatus(data.get("sync_status", SyncStatus.PENDING.value)),
        )


@dataclass(frozen=True)
class QueueEntry:
    """A durable record of a mutation awaiting remote confirmation."""

    entry_id: str
    type: OperationType
    data: Dict[str, Any]
    timestamp: datetime

    def snippet(self) -> LocalSnippet:
        return LocalSnippet.from_dict(self.data)

    def preferences(self) -> LocalPreferences:
        return LocalPreferences.from_dict(self.data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "type": self.type.value,
            "data": self.data,
            "timestamp": to_iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueueEntry":
        return cls(
            entry_id=data["entry_id"],
            type=OperationType(data["type"]),
            data=data["data"],
            timestamp=parse_timestamp(data["timestamp"]),
        )


# ---------------------------------------------------------------------------
# Results and status
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ConnectionStatus:
    """Point-in-time connection/sync view for the UI."""

    is_online: bool
    sync_in_progress: bool
    pending_changes: int
    last_sync: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_online": self.is_online,
            "sync_in_progress": self.sync_in_progress,
            "pending_changes": self.pending_changes,
            "last_sync": to_iso(self.last_sync) if self.last_sync else None,
        }


@dataclass(frozen=True)
class ServiceResult:
    """Boundary result: exactly one of ``data``/``error`` is meaningful."""

    data: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class GatewayResult:
    """Outcome of a remote gateway call that reached the server."""

    data: Any = None
    error: Optional[str] = None
    status: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class SyncReport:
    """Result report for one sync pass."""

    success: bool
    trigger: str
    replayed: int = 0
    failed: int = 0
    skipped: bool = False
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
