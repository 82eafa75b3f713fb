"""
Unit tests for the SyncEngine.

Tests cover:
- Queue replay order, idempotency and partial-failure isolation
- Bounded pass-level retry
- Connectivity state machine and re-entrancy guard
- Pull of the remote snippet set and preferences
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from bugsentinel.api.circuit_breaker import CircuitBreakerManager
from bugsentinel.api.error_handling import MalformedResponseError, TransientRemoteError
from bugsentinel.api.supabase_gateway import SupabaseGateway
from bugsentinel.core.connectivity import ConnectivityMonitor
from bugsentinel.data.services.snippet_service import SnippetService
from bugsentinel.data.services.sync_engine import SyncEngine
from bugsentinel.data.services.sync_types import EngineState, GatewayResult, OperationType, SyncStatus


def _queue_create(local_store, user, title="Test", language="javascript", code="let x = 1;"):
    return local_store.save_snippet(title, language, code, user_id=user.id)


class TestReplay:
    """Test draining the pending-operation queue."""

    @pytest.mark.asyncio
    async def test_offline_create_then_manual_sync(self, local_store, gateway, engine, signed_in_state):
        """Offline create, reconnect, force sync: one remote create and a synced record."""
        service = SnippetService(local_store, gateway, signed_in_state, engine)
        engine.handle_offline()

        created = await service.create_snippet("Test", "javascript", "let x = 1;")
        assert created.ok
        assert [s.sync_status for s in local_store.list_snippets()] == [SyncStatus.PENDING]
        assert local_store.pending_count() == 1

        engine.handle_online()
        await engine.wait_idle()
        report = await engine.force_sync_now()

        assert report.success
        assert local_store.pending_count() == 0
        assert len(gateway.called("create_snippet")) == 1
        assert [s.sync_status for s in local_store.list_snippets()] == [SyncStatus.SYNCED]
        assert [s.id for s in signed_in_state.snippets] == list(gateway.rows)

    @pytest.mark.asyncio
    async def test_replaying_a_create_twice_creates_one_row(self, local_store, gateway, engine, user):
        _queue_create(local_store, user)

        with patch.object(local_store, "remove_queue_entry", return_value=False):
            first = await engine.sync_now()
        assert first.success
        assert local_store.pending_count() == 1

        second = await engine.sync_now()

        assert second.success
        assert local_store.pending_count() == 0
        assert len(gateway.called("create_snippet")) == 1
        assert len(gateway.rows) == 1

    @pytest.mark.asyncio
    async def test_create_adopts_row_left_by_an_interrupted_replay(self, local_store, gateway, engine, user):
        local = _queue_create(local_store, user)
        orphan = gateway.add_remote("Test", "javascript", "let x = 1;", created_at=local.created_at + timedelta(seconds=5))

        report = await engine.sync_now()

        assert report.success
        assert gateway.called("create_snippet") == []
        assert local_store.get_snippet(local.local_id).remote_id == orphan.id
        assert [s.id for s in engine.state.snippets] == [orphan.id]

    @pytest.mark.asyncio
    async def test_entries_replay_in_enqueue_order(self, local_store, gateway, engine, user):
        local = _queue_create(local_store, user, title="A")
        local_store.update_snippet(local.local_id, {"code": "v2"})
        local_store.delete_snippet(local.local_id)

        report = await engine.sync_now()

        mutations = [name for name, _ in gateway.calls if name in ("create_snippet", "update_snippet", "delete_snippet")]
        assert mutations == ["create_snippet", "update_snippet", "delete_snippet"]
        assert report.replayed == 3
        assert gateway.rows == {}
        assert local_store.pending_count() == 0

    @pytest.mark.asyncio
    async def test_rejected_entry_stays_queued_and_others_proceed(self, local_store, gateway, engine, user):
        a = _queue_create(local_store, user, title="A")
        b = _queue_create(local_store, user, title="B")
        c = _queue_create(local_store, user, title="C")
        gateway.fail("create_snippet", None, GatewayResult(error="new row violates check constraint", status=400))

        report = await engine.sync_now()

        assert report.success
        assert (report.replayed, report.failed) == (2, 1)
        assert [e.data["local_id"] for e in local_store.get_queue()] == [b.local_id]
        assert local_store.get_snippet(a.local_id).sync_status == SyncStatus.SYNCED
        assert local_store.get_snippet(b.local_id).sync_status == SyncStatus.ERROR
        assert local_store.get_snippet(c.local_id).sync_status == SyncStatus.SYNCED
        assert engine.pending_retry is None

    @pytest.mark.asyncio
    async def test_transient_failure_fails_the_pass_and_schedules_retry(self, local_store, gateway, engine, user):
        _queue_create(local_store, user, title="A")
        b = _queue_create(local_store, user, title="B")
        _queue_create(local_store, user, title="C")
        gateway.fail("create_snippet", None, TransientRemoteError("Server error 503", status=503))

        report = await engine.sync_now()

        assert not report.success
        assert report.details["transient_failures"] == 1
        assert [e.data["local_id"] for e in local_store.get_queue()] == [b.local_id]
        assert local_store.get_snippet(b.local_id).sync_status == SyncStatus.PENDING
        assert engine.retry_count == 1
        assert engine.pending_retry is not None

        engine.cleanup()
        assert engine.pending_retry is None

    @pytest.mark.asyncio
    async def test_two_offline_updates_last_one_wins(self, local_store, gateway, engine, user):
        row = gateway.add_remote("Sort", "python", "v0")
        tracked = local_store.track_remote_snippet(row, user_id=user.id)
        local_store.update_snippet(tracked.local_id, {"code": "v1"})
        local_store.update_snippet(tracked.local_id, {"code": "v2", "title": "Sorted"})
        assert [e.type for e in local_store.get_queue()] == [OperationType.UPDATE, OperationType.UPDATE]

        report = await engine.sync_now()

        assert report.success
        assert gateway.called("update_snippet") == [row.id, row.id]
        assert (gateway.rows[row.id].code, gateway.rows[row.id].title) == ("v2", "Sorted")
        assert local_store.get_snippet(tracked.local_id).sync_status == SyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_updates_follow_a_create_from_the_same_pass(self, local_store, gateway, engine, user):
        local = _queue_create(local_store, user, title="Sort", language="python")
        local_store.update_snippet(local.local_id, {"code": "v1"})
        local_store.update_snippet(local.local_id, {"code": "v2"})

        report = await engine.sync_now()

        assert report.success
        assert len(gateway.rows) == 1
        assert [s.code for s in gateway.rows.values()] == ["v2"]
        assert local_store.get_snippet(local.local_id).sync_status == SyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_update_without_counterpart_stays_queued(self, local_store, gateway, engine, user):
        local = _queue_create(local_store, user)
        local_store.remove_queue_entry(local_store.get_queue()[0].entry_id)
        local_store.update_snippet(local.local_id, {"code": "v1"})

        report = await engine.sync_now()

        assert report.success
        assert report.failed == 1
        assert [e.type for e in local_store.get_queue()] == [OperationType.UPDATE]
        assert gateway.called("update_snippet") == []

    @pytest.mark.asyncio
    async def test_delete_without_counterpart_is_done(self, local_store, gateway, engine, user):
        local = _queue_create(local_store, user)
        local_store.remove_queue_entry(local_store.get_queue()[0].entry_id)
        local_store.delete_snippet(local.local_id)

        report = await engine.sync_now()

        assert report.success
        assert local_store.pending_count() == 0
        assert gateway.called("delete_snippet") == []

    @pytest.mark.asyncio
    async def test_preferences_entry_uses_remote_snippet_id(self, local_store, gateway, engine, user):
        tracked = local_store.track_remote_snippet(gateway.add_remote("Sort", "python"), user_id=user.id)
        local_store.save_preferences("dark", {"font_size": 16}, last_snippet_id=tracked.local_id)

        report = await engine.sync_now()

        assert report.success
        assert gateway.preferences["last_snippet_id"] == tracked.remote_id
        assert gateway.preferences["theme"] == "dark"
        assert local_store.get_preferences().sync_status == SyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_progress_callback_sees_each_entry(self, local_store, engine, user):
        _queue_create(local_store, user, title="A")
        _queue_create(local_store, user, title="B")
        seen = []

        await engine.sync_now(progress_callback=lambda done, total, entry: seen.append((done, total)))

        assert seen == [(1, 2), (2, 2)]


class TestRetry:
    """Test pass-level bounded retry."""

    @pytest.mark.asyncio
    async def test_retries_stop_after_three_failed_passes(self, local_store, gateway, engine, user):
        _queue_create(local_store, user)
        gateway.down = True

        report = await engine.force_sync_now()
        assert not report.success
        while engine.pending_retry is not None:
            await engine.pending_retry

        assert engine.retry_count == 3
        assert len(gateway.called("get_snippets")) == 6
        assert engine.pending_retry is None
        assert local_store.pending_count() == 1

        gateway.down = False
        report = await engine.force_sync_now()

        assert report.success
        assert engine.retry_count == 0
        assert local_store.pending_count() == 0

    @pytest.mark.asyncio
    async def test_failed_pull_fails_the_pass(self, gateway, engine):
        gateway.fail("get_snippets", GatewayResult(error="permission denied", status=403))

        report = await engine.sync_now()

        assert not report.success
        assert "permission denied" in report.message
        engine.cleanup()

    @pytest.mark.asyncio
    async def test_going_offline_cancels_retry(self, gateway, engine):
        gateway.down = True
        await engine.sync_now()
        assert engine.pending_retry is not None

        engine.handle_offline()

        assert engine.pending_retry is None

    @pytest.mark.asyncio
    async def test_coming_online_resets_the_counter(self, engine):
        engine.handle_offline()
        engine.retry_count = 3

        task = engine.handle_online()
        await task

        assert engine.retry_count == 0


class TestStateMachine:
    """Test connectivity states and pass guards."""

    @pytest.mark.asyncio
    async def test_transitions(self, engine):
        assert engine.engine_state == EngineState.ONLINE_IDLE

        engine.handle_offline()
        assert engine.engine_state == EngineState.OFFLINE

        task = engine.handle_online()
        assert engine.engine_state == EngineState.ONLINE_IDLE
        report = await task
        assert report.trigger == "online"
        assert engine.handle_online() is None

    @pytest.mark.asyncio
    async def test_pass_is_skipped_while_offline(self, engine):
        engine.handle_offline()

        report = await engine.sync_now()

        assert report.skipped
        assert report.message == "Offline"
        assert await engine.force_sync_now() is None

    @pytest.mark.asyncio
    async def test_pass_is_skipped_without_user(self, engine, gateway):
        engine.state.set_user(None)

        report = await engine.sync_now()

        assert report.skipped
        assert report.message == "No signed-in user"
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_only_one_pass_at_a_time(self, gateway, engine):
        release = asyncio.Event()
        original = gateway.get_snippets

        async def slow_get_snippets(user_id):
            await release.wait()
            return await original(user_id)

        gateway.get_snippets = slow_get_snippets
        first = asyncio.ensure_future(engine.sync_now())
        await asyncio.sleep(0)

        assert engine.sync_in_progress
        assert engine.engine_state == EngineState.ONLINE_SYNCING
        second = await engine.sync_now()
        assert second.skipped
        assert second.message == "Sync already in progress"
        assert await engine.force_sync_now() is None

        release.set()
        report = await first

        assert report.success
        assert engine.engine_state == EngineState.ONLINE_IDLE

    @pytest.mark.asyncio
    async def test_monitor_events_drive_the_engine(self, local_store, gateway, signed_in_state, user):
        engine = SyncEngine(local_store, gateway, signed_in_state, retry_base_delay=0)
        monitor = ConnectivityMonitor(initial=False)
        assert engine.initialize(monitor) is None
        assert engine.engine_state == EngineState.OFFLINE
        _queue_create(local_store, user)

        monitor.set_online(True)
        await engine.wait_idle()

        assert local_store.pending_count() == 0
        assert len(gateway.called("create_snippet")) == 1

        monitor.set_online(False)
        assert engine.engine_state == EngineState.OFFLINE

        engine.cleanup()
        monitor.set_online(True)
        assert engine.engine_state == EngineState.OFFLINE

    @pytest.mark.asyncio
    async def test_initialize_online_starts_a_pass(self, local_store, gateway, signed_in_state):
        engine = SyncEngine(local_store, gateway, signed_in_state)

        task = engine.initialize(ConnectivityMonitor(initial=True))
        report = await task

        assert report.trigger == "startup"
        assert report.success


class TestPull:
    """Test the pull half of a pass."""

    @pytest.mark.asyncio
    async def test_pull_publishes_remote_and_unsynced_local(self, local_store, gateway, engine, user):
        gateway.add_remote("Remote", "python")
        local_store.save_snippet("Local", "python", "", user_id=user.id)
        local_store.remove_queue_entry(local_store.get_queue()[0].entry_id)

        await engine.sync_now()

        assert {s.title for s in engine.state.snippets} == {"Remote", "Local"}

    @pytest.mark.asyncio
    async def test_pull_applies_remote_theme(self, gateway, engine):
        gateway.preferences = {"user_id": "user-1", "theme": "dark"}

        await engine.sync_now()

        assert engine.state.theme == "dark"

    @pytest.mark.asyncio
    async def test_connection_status(self, local_store, engine, user):
        _queue_create(local_store, user)

        before = engine.get_connection_status()
        assert (before.is_online, before.sync_in_progress, before.pending_changes) == (True, False, 1)
        assert before.last_sync is None

        await engine.sync_now()

        after = engine.get_connection_status()
        assert after.pending_changes == 0
        assert after.last_sync is not None
        assert after.to_dict()["last_sync"] == after.last_sync.isoformat()


class TestMalformedResponses:
    """Test that unreadable remote answers only cost the entry they belong to."""

    @pytest.mark.asyncio
    async def test_malformed_create_answer_stays_queued(self, local_store, gateway, engine, user):
        _queue_create(local_store, user, title="A")
        b = _queue_create(local_store, user, title="B")
        _queue_create(local_store, user, title="C")
        gateway.fail("create_snippet", None, MalformedResponseError("Malformed snippet row: 'id'"))

        report = await engine.sync_now()

        assert report.success
        assert (report.replayed, report.failed) == (2, 1)
        assert [e.data["local_id"] for e in local_store.get_queue()] == [b.local_id]
        assert local_store.get_snippet(b.local_id).sync_status == SyncStatus.PENDING
        assert engine.retry_count == 0
        assert engine.pending_retry is None

    @pytest.mark.asyncio
    async def test_unreadable_remote_row_does_not_block_the_pass(self, local_store, signed_in_state, user):
        valid = {
            "id": "1f0c",
            "user_id": user.id,
            "title": "Sort",
            "language": "python",
            "code": "sorted(x)",
            "created_at": "2024-03-04T12:00:00Z",
            "updated_at": "2024-03-04T12:00:00Z",
        }
        rows = [valid, dict(valid, id="9b2e", title="Broken", created_at=None, updated_at=None)]

        async def respond(method, url, params=None, json_body=None, prefer=None):
            if not url.endswith("/snippets"):
                return GatewayResult(data=[], status=200)
            if method == "POST":
                row = dict(valid, id="new-1", **{k: json_body[k] for k in ("title", "language", "code")})
                rows.append(row)
                return GatewayResult(data=[row], status=201)
            return GatewayResult(data=list(rows), status=200)

        remote = SupabaseGateway("https://example.supabase.co", "anon-key", breakers=CircuitBreakerManager())
        engine = SyncEngine(local_store, remote, signed_in_state, is_online=True, retry_base_delay=0)
        created = _queue_create(local_store, user)

        with patch.object(remote, "_request", new=AsyncMock(side_effect=respond)):
            report = await engine.force_sync_now()

        assert report.success
        assert report.replayed == 1
        assert local_store.pending_count() == 0
        stored = local_store.get_snippet(created.local_id)
        assert (stored.sync_status, stored.remote_id) == (SyncStatus.SYNCED, "new-1")
        assert sorted(s.id for s in signed_in_state.snippets) == ["1f0c", "new-1"]
