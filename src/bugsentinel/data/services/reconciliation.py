"""Reconciliation of locally-originated and remotely-confirmed snippets.

Local and remote identifier spaces differ, so the same logical snippet can be
visible twice between a create replay and the next queue drain. The policy
lives here, behind two functions, so it can be swapped or tested on its own.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Iterable, List, Optional, Sequence

from bugsentinel.config.settings import Settings
from bugsentinel.data.services.sync_types import LocalSnippet, Snippet, SyncStatus

DEFAULT_WINDOW = timedelta(seconds=Settings.MERGE_WINDOW_SECONDS)


def same_logical_snippet(local: Snippet, remote: Snippet, window: timedelta = DEFAULT_WINDOW) -> bool:
    """Heuristic identity: same title and language, created within ``window``."""
    return (
        local.title == remote.title
        and local.language == remote.language
        and abs(remote.created_at - local.created_at) < window
    )


def merge_snippets(
    local_snippets: Iterable[Snippet],
    remote_snippets: Sequence[Snippet],
    window: timedelta = DEFAULT_WINDOW,
) -> List[Snippet]:
    """All remote snippets plus local ones with no remote counterpart, newest first.

    A local snippet whose id is already a remote id present in ``remote_snippets``
    is the same row and is dropped before the heuristic is consulted.
    """
    remote_ids = {s.id for s in remote_snippets}
    merged = list(remote_snippets)

    for local in local_snippets:
        if local.id in remote_ids:
            continue
        if any(same_logical_snippet(local, remote, window) for remote in remote_snippets):
            continue
        merged.append(local)

    return sorted(merged, key=lambda s: s.updated_at, reverse=True)


def find_remote_counterpart(local: LocalSnippet, remote_snippets: Sequence[Snippet]) -> Optional[Snippet]:
    """Locate the remote row a queued update/delete refers to.

    Matches on title and language; among several candidates the one created
    closest to the local record wins. A record that already knows its remote
    id only ever matches that row.
    """
    if local.remote_id:
        return next((s for s in remote_snippets if s.id == local.remote_id), None)

    candidates = [s for s in remote_snippets if s.title == local.title and s.language == local.language]
    if not candidates:
        return None
    return min(candidates, key=lambda s: abs(s.created_at - local.created_at))


def project_snippets(local_records: Iterable[LocalSnippet], remote_snippets: Sequence[Snippet]) -> List[Snippet]:
    """Visible snippet list after a successful remote fetch.

    Remote rows whose tracked local copy still has pending edits show the
    local version; records that never reached the server are merged in.
    """
    local_records = list(local_records)
    pending_edits = {
        s.remote_id: s.to_snippet()
        for s in local_records
        if s.remote_id and s.sync_status != SyncStatus.SYNCED
    }
    remote_view = [pending_edits.get(s.id, s) for s in remote_snippets]
    local_only = [s.to_snippet() for s in local_records if not s.remote_id]
    return merge_snippets(local_only, remote_view)
