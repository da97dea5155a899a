"""Tests for the VaultRuntime."""

from __future__ import annotations

from pathlib import Path

import pytest

from fake_remote import OWNER, REPO, TOKEN, FakeGitHub
from vaultnote.models import ItemKind
from vaultnote.runtime import VaultRuntime
from vaultnote.sync.models import RemoteConfig
from vaultnote.sync.remote import NotConfiguredError


@pytest.fixture
def runtime(initialized_vault_home: Path, fake_github: FakeGitHub) -> VaultRuntime:
    return VaultRuntime(home=initialized_vault_home, transport=fake_github.transport())


@pytest.fixture
def remote() -> RemoteConfig:
    return RemoteConfig(owner=OWNER, repo=REPO, token=TOKEN)


class TestEditing:
    """Tests for item edits and their sync bookkeeping."""

    def test_add_note_is_dirty(self, runtime: VaultRuntime) -> None:
        note = runtime.add_note("Hello", "body", tags=["a"])
        assert not note.is_synced
        assert runtime.store.get(ItemKind.NOTE, note.id).title == "Hello"

    def test_save_bumps_updated_at(self, runtime: VaultRuntime) -> None:
        note = runtime.add_note("Hello")
        updated = runtime.update_note(note.id, content="more")
        assert updated.updated_at >= note.updated_at
        assert updated.content == "more"

    def test_update_missing(self, runtime: VaultRuntime) -> None:
        assert runtime.update_note("1", title="x") is None
        assert runtime.update_bookmark("1", title="x") is None

    def test_unsynced_delete_queues_nothing(self, runtime: VaultRuntime) -> None:
        note = runtime.add_note("draft")
        assert runtime.delete(ItemKind.NOTE, note.id)
        assert runtime.store.pending_deletions() == []

    def test_synced_delete_queues_remote_path(self, runtime: VaultRuntime) -> None:
        note = runtime.add_note("published", folder="Work")
        runtime.store.upsert(runtime.store.get(ItemKind.NOTE, note.id).model_copy(update={"is_synced": True}))
        runtime.delete(ItemKind.NOTE, note.id)
        assert [d.path for d in runtime.store.pending_deletions()] == [f"notes/Work/{note.id}.md"]

    def test_folder_move_queues_old_path(self, runtime: VaultRuntime) -> None:
        note = runtime.add_note("moving", folder="Old")
        runtime.store.upsert(runtime.store.get(ItemKind.NOTE, note.id).model_copy(update={"is_synced": True}))
        runtime.update_note(note.id, folder="New")
        assert [d.path for d in runtime.store.pending_deletions()] == [f"notes/Old/{note.id}.md"]

    def test_moving_back_cancels_deletion(self, runtime: VaultRuntime) -> None:
        note = runtime.add_note("moving", folder="Old")
        runtime.store.upsert(runtime.store.get(ItemKind.NOTE, note.id).model_copy(update={"is_synced": True}))
        runtime.update_note(note.id, folder="New")
        runtime.update_note(note.id, folder="Old")
        assert runtime.store.pending_deletions() == []

    def test_add_bookmark(self, runtime: VaultRuntime) -> None:
        bm = runtime.add_bookmark("https://example.com", "Example", tags="a,b")
        assert bm.tags == ["a", "b"]
        assert bm.remote_path.startswith("bookmarks/Bookmarks/")

    def test_items_changed_event(self, runtime: VaultRuntime) -> None:
        runtime.add_note("x")
        assert runtime.events.recent("items.changed")


class TestQueries:
    def test_search(self, runtime: VaultRuntime) -> None:
        runtime.add_note("Groceries", "Milk and eggs")
        runtime.add_bookmark("https://python.org", "Python", notes="milk the docs")
        assert len(runtime.search("milk")) == 2
        assert len(runtime.search("MILK", ItemKind.NOTE)) == 1

    def test_by_tag_and_folders(self, runtime: VaultRuntime) -> None:
        runtime.add_note("a", tags=["x"], folder="Work")
        runtime.add_note("b", folder="Home")
        assert [i.title for i in runtime.by_tag("x")] == ["a"]
        assert runtime.folders() == ["Home", "Work"]


class TestRemoteLifecycle:
    """Tests for configuring, syncing and disconnecting."""

    @pytest.mark.asyncio
    async def test_sync_requires_remote(self, runtime: VaultRuntime) -> None:
        assert not runtime.is_remote_configured
        with pytest.raises(NotConfiguredError):
            await runtime.sync_now()

    @pytest.mark.asyncio
    async def test_configure_and_sync(
        self, runtime: VaultRuntime, remote: RemoteConfig, fake_github: FakeGitHub
    ) -> None:
        note = runtime.add_note("Hello", "world")
        await runtime.configure_remote(remote)

        report = await runtime.sync_now()

        assert report.ok
        assert note.remote_path in fake_github.files()
        assert runtime.status()["dirty"] == 0
        assert runtime.status()["remote"] == "alice/notes"
        await runtime.stop()

    @pytest.mark.asyncio
    async def test_configuration_persists(
        self, runtime: VaultRuntime, remote: RemoteConfig, initialized_vault_home: Path
    ) -> None:
        await runtime.configure_remote(remote)
        reloaded = VaultRuntime(home=initialized_vault_home)
        assert reloaded.is_remote_configured
        assert reloaded.config.remote.repo_key == "alice/notes"

    @pytest.mark.asyncio
    async def test_disconnect_marks_everything_dirty(self, runtime: VaultRuntime, remote: RemoteConfig) -> None:
        runtime.add_note("one")
        await runtime.configure_remote(remote)
        await runtime.sync_now()

        await runtime.disconnect()

        assert not runtime.is_remote_configured
        assert len(runtime.store.dirty_items()) == 1
        assert runtime.store.load_sha_cache() == {}

    @pytest.mark.asyncio
    async def test_move_after_password_change_leaves_one_path(
        self, runtime: VaultRuntime, remote: RemoteConfig, fake_github: FakeGitHub
    ) -> None:
        note = runtime.add_note("Plans", "secret plans", folder="Work")
        await runtime.configure_remote(remote)
        runtime.config.sync.sync_after_save = False
        await runtime.sync_now()
        await runtime.coordinator.enable("p1")
        await runtime.sync_now()
        await runtime.coordinator.change_password("p1", "p2")

        runtime.update_note(note.id, folder="Home")
        report = await runtime.sync_now()

        assert report.ok
        assert [p for p in fake_github.files() if p.startswith("notes/")] == [f"notes/Home/{note.id}.md"]
        assert runtime.store.pending_deletions() == []
        await runtime.stop()

    @pytest.mark.asyncio
    async def test_move_after_forced_reupload_leaves_one_path(
        self, runtime: VaultRuntime, remote: RemoteConfig, fake_github: FakeGitHub
    ) -> None:
        note = runtime.add_note("Plans", folder="Work")
        await runtime.configure_remote(remote)
        runtime.config.sync.sync_after_save = False
        await runtime.sync_now()
        runtime.mark_all_for_sync()

        runtime.update_note(note.id, folder="Home")
        await runtime.sync_now()

        assert [p for p in fake_github.files() if p.startswith("notes/")] == [f"notes/Home/{note.id}.md"]
        await runtime.stop()

    @pytest.mark.asyncio
    async def test_deleting_dirty_item_removes_remote_copy(
        self, runtime: VaultRuntime, remote: RemoteConfig, fake_github: FakeGitHub
    ) -> None:
        note = runtime.add_note("Temp")
        await runtime.configure_remote(remote)
        runtime.config.sync.sync_after_save = False
        await runtime.sync_now()
        runtime.mark_all_for_sync()

        runtime.delete(ItemKind.NOTE, note.id)
        await runtime.sync_now()

        assert note.remote_path not in fake_github.files()
        assert runtime.store.notes() == []
        await runtime.stop()

    def test_status_lists_recent_events(self, runtime: VaultRuntime) -> None:
        runtime.add_note("x")
        assert runtime.status()["recent_events"][0] == "items.changed"

    @pytest.mark.asyncio
    async def test_start_without_remote_is_noop(self, runtime: VaultRuntime) -> None:
        await runtime.start()
        assert runtime.scheduler is None

    def test_mark_all_for_sync(self, runtime: VaultRuntime) -> None:
        note = runtime.add_note("x")
        runtime.store.upsert(runtime.store.get(ItemKind.NOTE, note.id).model_copy(update={"is_synced": True}))
        runtime.store.save_sha_cache({"notes/Uncategorized/1.md": "abc"})
        assert runtime.mark_all_for_sync() == 1
        assert runtime.store.load_sha_cache() == {}
