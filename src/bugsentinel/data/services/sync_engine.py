"""
Synchronization engine: drains the pending-operation queue to the remote
gateway, pulls the remote snippet set back, and reports connection status.

State machine::

    offline --online--> online_idle --pass starts--> online_syncing
       ^                     ^                             |
       +------offline--------+---------pass ends-----------+

A failed pass is retried after ``retry_base_delay * 2**retry_count`` seconds
until ``max_retries`` consecutive failures; after that only a connectivity
change or a manual sync starts a new pass.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from bugsentinel.api.error_handling import BugSentinelError, categorize_error, error_message, is_transient
from bugsentinel.config.settings import Settings
from bugsentinel.data.services.reconciliation import find_remote_counterpart, project_snippets, same_logical_snippet
from bugsentinel.data.services.sync_types import (
    ConnectionStatus,
    EngineState,
    LocalSnippet,
    OperationType,
    QueueEntry,
    Snippet,
    SyncReport,
    utcnow,
)

ProgressCallback = Callable[[int, int, QueueEntry], None]


@dataclass
class _PassContext:
    """Per-pass scratch state; discarded when the pass ends."""

    user_id: str
    remote: Optional[List[Snippet]] = None
    created: Dict[str, str] = field(default_factory=dict)
    transient_failures: int = 0


class SyncEngine:
    """Offline-first queue replay and remote pull for one application session."""

    def __init__(
        self,
        local_store,
        gateway,
        state,
        logger_obj: Optional[logging.Logger] = None,
        is_online: bool = False,
        max_retries: int = Settings.SYNC_MAX_RETRIES,
        retry_base_delay: float = Settings.SYNC_RETRY_BASE_SECONDS,
    ):
        self.local_store = local_store
        self.gateway = gateway
        self.state = state
        self.logger = logger_obj or logging.getLogger(__name__)
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay

        self.retry_count = 0
        self.last_sync: Optional[datetime] = None
        self._online = is_online
        self._syncing = False
        self._retry_task: Optional[asyncio.Task] = None
        self._unsubscribers: List[Callable[[], None]] = []
        self._pass_tasks: Set[asyncio.Task] = set()

    # ----------------------------- Status -----------------------------
    @property
    def engine_state(self) -> EngineState:
        if not self._online:
            return EngineState.OFFLINE
        return EngineState.ONLINE_SYNCING if self._syncing else EngineState.ONLINE_IDLE

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def sync_in_progress(self) -> bool:
        return self._syncing

    @property
    def pending_retry(self) -> Optional[asyncio.Task]:
        if self._retry_task is not None and not self._retry_task.done():
            return self._retry_task
        return None

    def get_connection_status(self) -> ConnectionStatus:
        return ConnectionStatus(
            is_online=self._online,
            sync_in_progress=self._syncing,
            pending_changes=self.local_store.pending_count(),
            last_sync=self.last_sync,
        )

    # ----------------------------- Lifecycle -----------------------------
    def initialize(self, monitor) -> Optional[asyncio.Task]:
        """Attach to a ConnectivityMonitor; starts a pass right away when online."""
        self._detach()
        self._unsubscribers = [
            monitor.on_online(self.handle_online),
            monitor.on_offline(self.handle_offline),
        ]
        self._online = monitor.is_online
        self.logger.info(f"Sync engine initialized ({self.engine_state.value})")
        if self._online:
            return self._spawn_pass("startup")
        return None

    def cleanup(self) -> None:
        """Detach listeners and cancel a scheduled retry; persisted data is untouched."""
        self._detach()
        self._cancel_retry()

    def _detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def _spawn(self, coro) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            self.logger.debug("No running event loop; sync deferred until the next trigger")
            return None
        return loop.create_task(coro)

    def _spawn_pass(self, trigger: str) -> Optional[asyncio.Task]:
        task = self._spawn(self.sync_now(trigger))
        if task is not None:
            self._pass_tasks.add(task)
            task.add_done_callback(self._pass_tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for passes started by connectivity events to finish."""
        while self._pass_tasks:
            await asyncio.wait(list(self._pass_tasks))

    def _cancel_retry(self) -> None:
        if self._retry_task is not None and not self._retry_task.done():
            self._retry_task.cancel()
        self._retry_task = None

    # ----------------------------- Connectivity events -----------------------------
    def handle_online(self) -> Optional[asyncio.Task]:
        """Offline -> online_idle, then immediately attempt a pass."""
        if self._online:
            return None
        self._online = True
        self.retry_count = 0
        self.logger.info("Connection restored, syncing pending changes")
        return self._spawn_pass("online")

    def handle_offline(self) -> None:
        self._online = False
        self._cancel_retry()
        self.logger.info("Connection lost, changes will be queued locally")

    # ----------------------------- Passes -----------------------------
    async def force_sync_now(self, progress_callback: Optional[ProgressCallback] = None) -> Optional[SyncReport]:
        """Manual trigger; ignored while offline or while a pass is running."""
        if not self._online or self._syncing:
            self.logger.info(f"Manual sync ignored ({self.engine_state.value})")
            return None
        self.retry_count = 0
        self._cancel_retry()
        return await self.sync_now("manual", progress_callback=progress_callback)

    async def sync_now(self, trigger: str = "manual", progress_callback: Optional[ProgressCallback] = None) -> SyncReport:
        """Run one drain-then-pull pass if conditions allow."""
        if not self._online:
            return SyncReport(success=False, trigger=trigger, skipped=True, message="Offline")
        if self._syncing:
            return SyncReport(success=False, trigger=trigger, skipped=True, message="Sync already in progress")
        user = self.state.user
        if user is None:
            return SyncReport(success=False, trigger=trigger, skipped=True, message="No signed-in user")

        self._syncing = True
        self.logger.info(f"Sync pass started (trigger={trigger})")
        try:
            report = await self._run_pass(_PassContext(user_id=user.id), trigger, progress_callback)
        except Exception as e:
            self.logger.error(f"Sync pass failed with {categorize_error(e).value} error: {e}", exc_info=True)
            report = SyncReport(success=False, trigger=trigger, message=error_message(e, "Sync failed"))
        finally:
            self._syncing = False

        if report.success:
            self.retry_count = 0
            self.last_sync = utcnow()
            self.logger.info(f"Sync pass complete: {report.replayed} replayed, {report.failed} left queued")
        else:
            self._schedule_retry()
        return report

    async def _run_pass(
        self, ctx: _PassContext, trigger: str, progress_callback: Optional[ProgressCallback]
    ) -> SyncReport:
        queue = self.local_store.get_queue()
        total = len(queue)
        replayed = failed = 0

        for index, entry in enumerate(queue, start=1):
            try:
                ok = await self._replay(entry, ctx)
            except Exception as e:
                ok = False
                if is_transient(e):
                    ctx.transient_failures += 1
                self.logger.warning(
                    f"Replay of {entry.type.value} entry {entry.entry_id} failed "
                    f"({categorize_error(e).value}): {e}"
                )
            if ok:
                self.local_store.remove_queue_entry(entry.entry_id)
                replayed += 1
            else:
                failed += 1
            if progress_callback:
                progress_callback(index, total, entry)

        await self._pull(ctx)

        success = ctx.transient_failures == 0
        message = f"{replayed}/{total} queued changes synced"
        if not success:
            message += f", {ctx.transient_failures} failed transiently"
        return SyncReport(
            success=success,
            trigger=trigger,
            replayed=replayed,
            failed=failed,
            message=message,
            details={"transient_failures": ctx.transient_failures},
        )

    def _schedule_retry(self) -> None:
        self.retry_count += 1
        if self.retry_count >= self.max_retries:
            self.logger.warning(
                f"Sync failed {self.retry_count} times in a row; "
                "waiting for a connectivity change or a manual sync"
            )
            return
        delay = self.retry_base_delay * (2 ** self.retry_count)
        self._cancel_retry()
        self._retry_task = self._spawn(self._retry_after(delay))
        self.logger.info(f"Retrying sync in {delay:.1f}s (attempt {self.retry_count + 1}/{self.max_retries})")

    async def _retry_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._retry_task = None
        await self.sync_now("retry")

    # ----------------------------- Replay -----------------------------
    async def _replay(self, entry: QueueEntry, ctx: _PassContext) -> bool:
        self.logger.debug(f"Replaying {entry.type.value} entry {entry.entry_id}")
        if entry.type == OperationType.CREATE:
            return await self._replay_create(entry, ctx)
        if entry.type == OperationType.UPDATE:
            return await self._replay_update(entry, ctx)
        if entry.type == OperationType.DELETE:
            return await self._replay_delete(entry, ctx)
        return await self._replay_preferences(entry, ctx)

    async def _replay_create(self, entry: QueueEntry, ctx: _PassContext) -> bool:
        local = entry.snippet()
        current = self.local_store.get_snippet(local.local_id)
        if current is not None and current.remote_id:
            # Replayed before the entry could be removed.
            return True

        existing = await self._unclaimed_match(local, ctx)
        if existing is not None:
            self.logger.info(f"Create of {local.local_id} already present remotely as {existing.id}")
            remote = existing
        else:
            result = await self.gateway.create_snippet(ctx.user_id, local.title, local.language, local.code)
            if not result.ok:
                self._entry_rejected(entry, local, result.error)
                return False
            remote = result.data
            if ctx.remote is not None:
                ctx.remote.append(remote)

        ctx.created[local.local_id] = remote.id
        self._confirm_snippet(entry, local.local_id, remote.id)
        self.state.replace_snippet(local.local_id, remote)
        return True

    async def _replay_update(self, entry: QueueEntry, ctx: _PassContext) -> bool:
        local = entry.snippet()
        remote_id = await self._resolve_remote_id(local, ctx)
        if remote_id is None:
            self.logger.warning(f"No remote counterpart for update of {local.local_id}; leaving it queued")
            return False

        result = await self.gateway.update_snippet(remote_id, title=local.title, language=local.language, code=local.code)
        if not result.ok:
            self._entry_rejected(entry, local, result.error)
            return False
        if ctx.remote is not None:
            ctx.remote = [result.data if s.id == remote_id else s for s in ctx.remote]
        self._confirm_snippet(entry, local.local_id, remote_id)
        return True

    async def _replay_delete(self, entry: QueueEntry, ctx: _PassContext) -> bool:
        local = entry.snippet()
        remote_id = await self._resolve_remote_id(local, ctx)
        if remote_id is None:
            self.logger.debug(f"Delete of {local.local_id} has no remote counterpart; nothing to do")
            return True

        result = await self.gateway.delete_snippet(remote_id)
        if not result.ok:
            self.logger.warning(f"Remote delete of {remote_id} rejected: {result.error}")
            return False
        if ctx.remote is not None:
            ctx.remote = [s for s in ctx.remote if s.id != remote_id]
        return True

    async def _replay_preferences(self, entry: QueueEntry, ctx: _PassContext) -> bool:
        preferences = entry.preferences()
        last_snippet_id = preferences.last_snippet_id
        if last_snippet_id:
            tracked = self.local_store.get_snippet(last_snippet_id)
            if tracked is not None and tracked.remote_id:
                last_snippet_id = tracked.remote_id

        result = await self.gateway.upsert_preferences(
            ctx.user_id,
            theme=preferences.theme,
            editor_settings=preferences.editor_settings,
            last_snippet_id=last_snippet_id,
        )
        if not result.ok:
            self.logger.warning(f"Preferences upsert rejected: {result.error}")
            return False
        if not self._queued_after(entry, lambda other: other.type == OperationType.PREFERENCES):
            self.local_store.mark_preferences_synced()
        return True

    def _entry_rejected(self, entry: QueueEntry, local: LocalSnippet, error: Optional[str]) -> None:
        self.logger.warning(f"Remote rejected {entry.type.value} of {local.local_id}: {error}")
        self.local_store.mark_snippet_error(local.local_id)

    def _confirm_snippet(self, entry: QueueEntry, local_id: str, remote_id: str) -> None:
        """Record the remote id; the record only reads as synced once no later entry touches it."""
        if self._queued_after(entry, lambda other: other.data.get("local_id") == local_id):
            self.local_store.mark_snippet_remote_id(local_id, remote_id)
        else:
            self.local_store.mark_snippet_synced(local_id, remote_id)

    def _queued_after(self, entry: QueueEntry, predicate: Callable[[QueueEntry], bool]) -> bool:
        return any(
            other.entry_id != entry.entry_id and predicate(other)
            for other in self.local_store.get_queue()
        )

    # ----------------------------- Remote lookups -----------------------------
    async def _remote_snapshot(self, ctx: _PassContext) -> List[Snippet]:
        if ctx.remote is None:
            result = await self.gateway.get_snippets(ctx.user_id)
            if not result.ok:
                raise BugSentinelError(f"Could not list remote snippets: {result.error}")
            ctx.remote = list(result.data)
        return ctx.remote

    def _claimed_remote_ids(self, ctx: _PassContext) -> set:
        claimed = {s.remote_id for s in self.local_store.list_snippets() if s.remote_id}
        return claimed | set(ctx.created.values())

    async def _unclaimed_match(self, local: LocalSnippet, ctx: _PassContext) -> Optional[Snippet]:
        remote = await self._remote_snapshot(ctx)
        claimed = self._claimed_remote_ids(ctx)
        candidate = local.to_snippet()
        return next(
            (s for s in remote if s.id not in claimed and same_logical_snippet(candidate, s)),
            None,
        )

    async def _resolve_remote_id(self, local: LocalSnippet, ctx: _PassContext) -> Optional[str]:
        """Entry's remote id, then the live record's, then this pass's creates, then a content match."""
        if local.remote_id:
            return local.remote_id
        current = self.local_store.get_snippet(local.local_id)
        if current is not None and current.remote_id:
            return current.remote_id
        if local.local_id in ctx.created:
            return ctx.created[local.local_id]

        remote = await self._remote_snapshot(ctx)
        claimed = self._claimed_remote_ids(ctx)
        match = find_remote_counterpart(local, [s for s in remote if s.id not in claimed])
        return match.id if match else None

    # ----------------------------- Pull -----------------------------
    async def _pull(self, ctx: _PassContext) -> None:
        """Replace the state projection with the remote set overlaid with local state."""
        result = await self.gateway.get_snippets(ctx.user_id)
        if not result.ok:
            raise BugSentinelError(f"Could not fetch remote snippets: {result.error}")

        self.state.set_snippets(project_snippets(self.local_store.list_snippets(), result.data))

        preferences = await self.gateway.get_preferences(ctx.user_id)
        if preferences.ok and preferences.data:
            theme = preferences.data.get("theme")
            if theme and theme != self.state.theme:
                try:
                    self.state.set_theme(theme)
                except ValueError:
                    self.logger.warning(f"Ignoring unknown remote theme {theme!r}")
