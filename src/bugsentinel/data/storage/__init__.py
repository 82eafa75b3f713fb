"""Local durable storage."""

from .kv_backend import DuckDBKeyValueStore
from .local_store import LocalStore

__all__ = ["DuckDBKeyValueStore", "LocalStore"]
