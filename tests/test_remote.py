"""Tests for the GitHub-backed remote store client."""

from __future__ import annotations

import httpx
import pytest

from fake_remote import FakeGitHub, no_sleep
from vaultnote.sync.models import RemoteConfig, SyncSettings
from vaultnote.sync.remote import (
    AuthError,
    ConflictError,
    HistoryRewriteError,
    NotConfiguredError,
    RemoteError,
    RemoteStoreClient,
    TransientRemoteError,
    friendly_error,
    git_blob_sha,
)


@pytest.fixture
def client(fake_github: FakeGitHub, remote_config: RemoteConfig, fast_settings: SyncSettings) -> RemoteStoreClient:
    return RemoteStoreClient(remote_config, fast_settings, transport=fake_github.transport(), sleep=no_sleep)


class TestGitBlobSha:
    def test_matches_git(self) -> None:
        # `printf 'hello\n' | git hash-object --stdin`
        assert git_blob_sha("hello\n") == "ce013625030ba8dba906f756967f9e9ca394464a"


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


class TestFiles:
    """Tests for read/write/delete through the contents API."""

    @pytest.mark.asyncio
    async def test_read_missing_is_none(self, client: RemoteStoreClient) -> None:
        assert await client.read_file("notes/A/1.md") is None

    @pytest.mark.asyncio
    async def test_write_then_read(self, client: RemoteStoreClient, fake_github: FakeGitHub) -> None:
        sha = await client.write_file("notes/A/1.md", "héllo")
        assert sha == git_blob_sha("héllo")
        remote = await client.read_file("notes/A/1.md")
        assert remote.content == "héllo"
        assert remote.sha == sha
        assert fake_github.files() == {"notes/A/1.md": "héllo"}

    @pytest.mark.asyncio
    async def test_stale_sha_conflicts(self, client: RemoteStoreClient, fake_github: FakeGitHub) -> None:
        first = await client.write_file("notes/A/1.md", "v1")
        fake_github.put("notes/A/1.md", "v2 from elsewhere")
        with pytest.raises(ConflictError):
            await client.write_file("notes/A/1.md", "v3", expected_sha=first)

    @pytest.mark.asyncio
    async def test_missing_sha_on_existing_file_conflicts(
        self, client: RemoteStoreClient, fake_github: FakeGitHub
    ) -> None:
        """GitHub answers 422 when the sha is omitted for an existing file."""
        fake_github.put("notes/A/1.md", "exists")
        with pytest.raises(ConflictError):
            await client.write_file("notes/A/1.md", "new")

    @pytest.mark.asyncio
    async def test_delete(self, client: RemoteStoreClient, fake_github: FakeGitHub) -> None:
        fake_github.put("notes/A/1.md", "x")
        assert await client.delete_file("notes/A/1.md")
        assert fake_github.files() == {}
        assert not await client.delete_file("notes/A/1.md")


class TestErrors:
    """Tests for retry and status classification."""

    @pytest.mark.asyncio
    async def test_transient_retried(self, client: RemoteStoreClient, fake_github: FakeGitHub) -> None:
        fake_github.put("notes/A/1.md", "x")
        fake_github.fail("GET", "/contents/", 503, times=2)
        remote = await client.read_file("notes/A/1.md")
        assert remote.content == "x"

    @pytest.mark.asyncio
    async def test_transient_exhausted(self, client: RemoteStoreClient, fake_github: FakeGitHub) -> None:
        fake_github.fail("GET", "/contents/", 502, times=5)
        with pytest.raises(TransientRemoteError):
            await client.read_file("notes/A/1.md")

    @pytest.mark.asyncio
    async def test_rate_limited_403_is_transient(self, client: RemoteStoreClient, fake_github: FakeGitHub) -> None:
        fake_github.fail("GET", "/contents/", 403, times=1, message="API rate limit exceeded")
        assert await client.read_file("notes/A/1.md") is None

    @pytest.mark.asyncio
    async def test_plain_403_not_retried(self, client: RemoteStoreClient, fake_github: FakeGitHub) -> None:
        fake_github.fail("GET", "/contents/", 403, times=1, message="Resource not accessible")
        with pytest.raises(RemoteError) as excinfo:
            await client.read_file("notes/A/1.md")
        assert excinfo.value.status_code == 403
        assert not isinstance(excinfo.value, TransientRemoteError)

    @pytest.mark.asyncio
    async def test_backoff_doubles(self, remote_config: RemoteConfig, fake_github: FakeGitHub) -> None:
        delays: list[float] = []

        async def record(seconds: float) -> None:
            delays.append(seconds)

        settings = SyncSettings(backoff_base_seconds=1.0, max_attempts=3)
        client = RemoteStoreClient(remote_config, settings, transport=fake_github.transport(), sleep=record)
        fake_github.fail("GET", "/contents/", 500, times=3)
        with pytest.raises(TransientRemoteError):
            await client.read_file("x.md")
        assert delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_no_attempts_still_raises(self, remote_config: RemoteConfig, fake_github: FakeGitHub) -> None:
        settings = SyncSettings.model_construct(max_attempts=0)
        client = RemoteStoreClient(remote_config, settings, transport=fake_github.transport(), sleep=no_sleep)
        with pytest.raises(TransientRemoteError):
            await client.read_file("notes/A/1.md")
        assert fake_github.requests == []

    @pytest.mark.asyncio
    async def test_bad_token(self, fake_github: FakeGitHub, fast_settings: SyncSettings) -> None:
        config = RemoteConfig(owner="alice", repo="notes", token="wrong")
        client = RemoteStoreClient(config, fast_settings, transport=fake_github.transport(), sleep=no_sleep)
        with pytest.raises(AuthError):
            await client.list_tree()
        assert len(fake_github.requests) == 1

    @pytest.mark.asyncio
    async def test_not_configured_makes_no_request(self, fake_github: FakeGitHub, monkeypatch) -> None:
        monkeypatch.delenv("VAULTNOTE_GITHUB_TOKEN", raising=False)
        client = RemoteStoreClient(RemoteConfig(owner="alice"), transport=fake_github.transport())
        with pytest.raises(NotConfiguredError):
            await client.read_file("notes/A/1.md")
        assert fake_github.requests == []

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, remote_config: RemoteConfig, fast_settings: SyncSettings) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = RemoteStoreClient(remote_config, fast_settings, transport=httpx.MockTransport(refuse), sleep=no_sleep)
        with pytest.raises(TransientRemoteError) as excinfo:
            await client.read_file("notes/A/1.md")
        assert friendly_error(excinfo.value) == "Network error. Check your connection."

    def test_friendly_messages(self) -> None:
        assert "token" in friendly_error(AuthError("x", 401))
        assert "not configured" in friendly_error(NotConfiguredError("x"))
        assert "not found" in friendly_error(RemoteError("x", 404))


# ---------------------------------------------------------------------------
# Tree listing
# ---------------------------------------------------------------------------


class TestListTree:
    @pytest.mark.asyncio
    async def test_missing_branch_is_empty(self, client: RemoteStoreClient) -> None:
        assert await client.list_tree() == {}

    @pytest.mark.asyncio
    async def test_blobs_with_hashes(self, client: RemoteStoreClient, fake_github: FakeGitHub) -> None:
        fake_github.put("notes/A/1.md", "one")
        fake_github.put("bookmarks/B/2.json", "{}")
        fake_github.put("README.md", "readme")
        listing = await client.list_tree(("notes/", "bookmarks/"))
        assert listing == {
            "notes/A/1.md": git_blob_sha("one"),
            "bookmarks/B/2.json": git_blob_sha("{}"),
        }

    @pytest.mark.asyncio
    async def test_two_requests(self, client: RemoteStoreClient, fake_github: FakeGitHub) -> None:
        for i in range(20):
            fake_github.put(f"notes/A/{i}.md", str(i))
        await client.list_tree()
        assert len(fake_github.requests) == 2


# ---------------------------------------------------------------------------
# History rewrite
# ---------------------------------------------------------------------------


class TestRewriteHistory:
    """Tests for replacing the branch with an orphan commit."""

    @pytest.mark.asyncio
    async def test_single_commit_result(self, client: RemoteStoreClient, fake_github: FakeGitHub) -> None:
        for i in range(3):
            fake_github.put(f"notes/A/{i}.md", f"plain {i}")
        assert fake_github.history_length() == 3

        commit = await client.rewrite_history({"notes/A/0.md": "ENC:x", ".notes-sync/encryption.json": "{}"}, "snap")

        assert fake_github.refs["main"] == commit
        assert fake_github.history_length() == 1
        assert fake_github.files() == {"notes/A/0.md": "ENC:x", ".notes-sync/encryption.json": "{}"}
        assert fake_github.default_branch == "main"
        assert set(fake_github.refs) == {"main"}

    @pytest.mark.asyncio
    async def test_step_order(self, client: RemoteStoreClient, fake_github: FakeGitHub) -> None:
        fake_github.put("notes/A/0.md", "plain")
        fake_github.requests.clear()
        await client.rewrite_history({"notes/A/0.md": "ENC:x"}, "snap")

        steps = [(m, p.rsplit("/repos/alice/notes", 1)[-1]) for m, p in fake_github.requests]
        writes = [s for s in steps if s[0] != "GET"]
        assert writes[0] == ("POST", "/git/blobs")
        assert writes[1] == ("POST", "/git/trees")
        assert writes[2] == ("POST", "/git/commits")
        assert writes[3] == ("POST", "/git/refs")
        assert writes[4] == ("PATCH", "")
        assert writes[5] == ("DELETE", "/git/refs/heads/main")
        assert writes[6] == ("POST", "/git/refs")
        assert writes[7] == ("PATCH", "")
        assert writes[8][0] == "DELETE" and "temp-clean-" in writes[8][1]

    @pytest.mark.asyncio
    async def test_failure_before_branch_touched(self, client: RemoteStoreClient, fake_github: FakeGitHub) -> None:
        fake_github.put("notes/A/0.md", "plain")
        original = fake_github.refs["main"]
        fake_github.fail("POST", "/git/commits", 400)

        with pytest.raises(HistoryRewriteError) as excinfo:
            await client.rewrite_history({"notes/A/0.md": "ENC:x"}, "snap")

        assert excinfo.value.stage == "commit"
        assert excinfo.value.commit_sha is None
        assert fake_github.refs["main"] == original

    @pytest.mark.asyncio
    async def test_failure_after_branch_deleted(self, client: RemoteStoreClient, fake_github: FakeGitHub) -> None:
        fake_github.put("notes/A/0.md", "plain")
        fake_github.fail("DELETE", "/git/refs/heads/main", 400)

        with pytest.raises(HistoryRewriteError) as excinfo:
            await client.rewrite_history({"notes/A/0.md": "ENC:x"}, "snap")

        err = excinfo.value
        assert err.stage == "delete_branch"
        assert err.commit_sha is not None
        assert fake_github.refs[err.temp_branch] == err.commit_sha

    @pytest.mark.asyncio
    async def test_empty_files_rejected(self, client: RemoteStoreClient) -> None:
        with pytest.raises(ValueError):
            await client.rewrite_history({}, "snap")
