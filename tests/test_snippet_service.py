"""Tests for offline-first snippet CRUD."""

from datetime import datetime

import pytest

from bugsentinel.api.error_handling import TransientRemoteError
from bugsentinel.data.services.snippet_service import SnippetService
from bugsentinel.data.services.sync_engine import SyncEngine
from bugsentinel.data.services.sync_types import GatewayResult, OperationType, SyncStatus
from bugsentinel.data.storage.kv_backend import DuckDBKeyValueStore
from bugsentinel.data.storage.local_store import LocalStore


@pytest.fixture
def service(local_store, gateway, signed_in_state, engine):
    return SnippetService(local_store, gateway, signed_in_state, engine)


class TestCreate:
    """Test snippet creation online, offline and on fallback."""

    @pytest.mark.asyncio
    async def test_online_create_goes_remote_and_keeps_a_synced_copy(self, service, local_store, gateway):
        result = await service.create_snippet("Test", "javascript", "let x = 1;")

        assert result.ok
        assert result.data.id in gateway.rows
        copy = local_store.find_by_remote_id(result.data.id)
        assert copy.sync_status == SyncStatus.SYNCED
        assert local_store.pending_count() == 0
        assert service.state.snippets[0].id == result.data.id

    @pytest.mark.asyncio
    async def test_failed_remote_create_falls_back_to_local(self, service, local_store, gateway):
        gateway.fail("create_snippet", TransientRemoteError("Server error 503", status=503))

        result = await service.create_snippet("Test", "javascript", "let x = 1;")

        assert result.ok
        assert result.error is None
        assert result.data.id.startswith("local_")
        assert [s.sync_status for s in local_store.list_snippets()] == [SyncStatus.PENDING]
        assert [e.type for e in local_store.get_queue()] == [OperationType.CREATE]
        assert service.state.snippets[0].id == result.data.id

    @pytest.mark.asyncio
    async def test_rejected_remote_create_falls_back_to_local(self, service, local_store, gateway):
        gateway.fail("create_snippet", GatewayResult(error="JWT expired", status=401))

        result = await service.create_snippet("Test", "python", "")

        assert result.ok
        assert local_store.pending_count() == 1

    @pytest.mark.asyncio
    async def test_offline_create_is_queued(self, service, local_store, gateway, engine):
        engine.handle_offline()

        result = await service.create_snippet("  Test  ", "python", "x = 1")

        assert result.data.title == "Test"
        assert gateway.called("create_snippet") == []
        assert local_store.pending_count() == 1

    @pytest.mark.asyncio
    async def test_validation(self, service, local_store):
        assert (await service.create_snippet("   ", "python", "")).error == "Title is required"
        assert (await service.create_snippet("T", "cobol", "")).error == "Unsupported language: cobol"
        assert local_store.list_snippets() == []

    @pytest.mark.asyncio
    async def test_requires_user(self, service):
        service.state.set_user(None)
        result = await service.create_snippet("Test", "python", "")
        assert result.error == "User not authenticated"

    @pytest.mark.asyncio
    async def test_full_local_storage_is_reported(self, tmp_path, gateway, signed_in_state):
        tiny = LocalStore(DuckDBKeyValueStore(tmp_path / "tiny.duckdb", quota_bytes=100))
        offline = SyncEngine(tiny, gateway, signed_in_state)
        service = SnippetService(tiny, gateway, signed_in_state, offline)

        result = await service.create_snippet("Big", "python", "x" * 500)

        assert not result.ok
        assert "quota exceeded" in result.error
        assert signed_in_state.snippets == []


class TestLoad:
    """Test the two-phase snippet load."""

    @pytest.mark.asyncio
    async def test_local_first_then_merged(self, service, local_store, gateway, user):
        gateway.add_remote("Remote one", "python")
        local_store.save_snippet("Local one", "python", "", user_id=user.id)
        published = []
        service.state.subscribe(
            lambda changed: published.append({s.title for s in service.state.snippets}) if "snippets" in changed else None
        )

        result = await service.load_snippets()

        assert published == [{"Local one"}, {"Local one", "Remote one"}]
        assert {s.title for s in result.data} == {"Local one", "Remote one"}

    @pytest.mark.asyncio
    async def test_remote_failure_keeps_local_list(self, service, local_store, gateway, user):
        local_store.save_snippet("Local one", "python", "", user_id=user.id)
        gateway.fail("get_snippets", TransientRemoteError("Server error 502", status=502))

        result = await service.load_snippets()

        assert result.ok
        assert [s.title for s in result.data] == ["Local one"]

    @pytest.mark.asyncio
    async def test_offline_load_does_not_call_remote(self, service, gateway, engine):
        engine.handle_offline()

        result = await service.load_snippets()

        assert result.data == []
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_requires_user(self, service):
        service.state.set_user(None)
        assert (await service.load_snippets()).error == "User not authenticated"


class TestUpdateAndDelete:
    """Test edits and deletes through either identifier space."""

    @pytest.mark.asyncio
    async def test_online_update(self, service, local_store, gateway):
        created = (await service.create_snippet("Test", "python", "v1")).data

        result = await service.update_snippet(created.id, {"code": "v2", "user_id": "ignored"})

        assert result.data.code == "v2"
        assert gateway.rows[created.id].code == "v2"
        assert local_store.find_by_remote_id(created.id).code == "v2"
        assert local_store.pending_count() == 0
        assert service.state.find_snippet(created.id).code == "v2"

    @pytest.mark.asyncio
    async def test_offline_edit_of_remote_only_snippet(self, service, local_store, gateway, engine):
        row = gateway.add_remote("Remote", "python", "v1")
        await service.load_snippets()
        engine.handle_offline()

        result = await service.update_snippet(row.id, {"code": "v2"})

        assert result.data.id == row.id
        tracked = local_store.find_by_remote_id(row.id)
        assert tracked.sync_status == SyncStatus.PENDING
        queue = local_store.get_queue()
        assert [e.type for e in queue] == [OperationType.UPDATE]
        assert queue[0].data["remote_id"] == row.id
        assert service.state.find_snippet(row.id).code == "v2"

        engine.handle_online()
        await engine.wait_idle()

        assert gateway.rows[row.id].code == "v2"
        assert local_store.pending_count() == 0

    @pytest.mark.asyncio
    async def test_update_validation_and_not_found(self, service):
        assert (await service.update_snippet("local_1_missing", {"title": ""})).error == "Title is required"
        assert (await service.update_snippet("local_1_missing", {"title": "x"})).error == "Snippet not found"

    @pytest.mark.asyncio
    async def test_online_delete_drops_local_copy(self, service, local_store, gateway):
        created = (await service.create_snippet("Test", "python", "")).data

        result = await service.delete_snippet(created.id)

        assert result.data is True
        assert gateway.rows == {}
        assert local_store.list_snippets() == []
        assert local_store.pending_count() == 0
        assert service.state.snippets == []

    @pytest.mark.asyncio
    async def test_offline_delete_is_queued(self, service, local_store, engine):
        engine.handle_offline()
        created = (await service.create_snippet("Test", "python", "")).data

        result = await service.delete_snippet(created.id)

        assert result.ok
        assert [e.type for e in local_store.get_queue()] == [OperationType.CREATE, OperationType.DELETE]
        assert service.state.snippets == []

    @pytest.mark.asyncio
    async def test_offline_delete_of_unknown_snippet(self, service, engine):
        engine.handle_offline()
        assert (await service.delete_snippet("remote-404")).error == "Snippet not found"


class TestLanguages:
    """Test language metadata and default titles."""

    def test_supported_languages(self):
        languages = SnippetService.get_supported_languages()
        assert len(languages) == 15
        assert languages[0] == {"value": "javascript", "label": "JavaScript"}

    def test_language_label(self):
        assert SnippetService.get_language_label("cpp") == "C++"
        assert SnippetService.get_language_label("elixir") == "Elixir"

    def test_default_title(self):
        title = SnippetService.generate_default_title("python", now=datetime(2024, 3, 4, 21, 15))
        assert title == "Python Snippet - Mar 4, 09:15 PM"


class TestSyncPassthrough:
    """Test the engine passthroughs."""

    @pytest.mark.asyncio
    async def test_connection_status_and_force_sync(self, service, engine):
        assert service.get_connection_status() == engine.get_connection_status()

        report = await service.force_sync_now()

        assert report.success
        assert service.get_connection_status().last_sync is not None
