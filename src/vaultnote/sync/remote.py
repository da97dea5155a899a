"""
Remote Store Client — a GitHub repository used as a file store.

Speaks the REST contents API for single files and the Git Data API for
listing the whole tree with hashes in two calls and for rebuilding the
history from scratch.

Every request carries a short timeout. Transient failures (timeouts,
dropped connections, 5xx, rate limiting) are retried with exponential
backoff; authorization failures and conflicts are surfaced immediately.
A 404 on read or delete means "absent", not an error.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import time
from typing import Any, Awaitable, Callable, Iterable, Optional
from urllib.parse import quote

import httpx
from pydantic import BaseModel

from .models import RemoteConfig, SyncSettings

logger = logging.getLogger("vaultnote.sync.remote")

USER_AGENT = "vaultnote-sync"
TEMP_BRANCH_PREFIX = "temp-clean-"
DEFAULT_BRANCH_SETTLE_SECONDS = 0.5

Sleep = Callable[[float], Awaitable[Any]]


class RemoteError(Exception):
    """Base class for remote store failures."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientRemoteError(RemoteError):
    """Timeout, connection failure, 5xx or rate limiting. Retryable."""


class AuthError(RemoteError):
    """The token was rejected. Requires re-authentication."""


class ConflictError(RemoteError):
    """A conditional write lost against a newer remote version."""


class NotConfiguredError(RemoteError):
    """No remote repository is configured."""


class HistoryRewriteError(RemoteError):
    """A history rewrite stopped part-way.

    Attributes:
        stage: The step that failed.
        commit_sha: The orphan commit, if it had been created.
        temp_branch: The temporary branch anchoring it, if created.
    """

    def __init__(
        self,
        message: str,
        stage: str,
        commit_sha: Optional[str] = None,
        temp_branch: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, status_code)
        self.stage = stage
        self.commit_sha = commit_sha
        self.temp_branch = temp_branch


class RemoteFile(BaseModel):
    path: str
    content: str
    sha: str


def git_blob_sha(text: str) -> str:
    """The hash Git assigns to a blob with this UTF-8 content."""
    data = text.encode("utf-8")
    header = f"blob {len(data)}\0".encode("ascii")
    return hashlib.sha1(header + data).hexdigest()


def friendly_error(exc: BaseException) -> str:
    """Map an exception to a message fit for the user.

    Args:
        exc: Any exception raised during a remote operation.

    Returns:
        str: A short human explanation.
    """
    if isinstance(exc, NotConfiguredError):
        return "Sync is not configured. Set a repository and token first."
    if isinstance(exc, AuthError):
        return "Authentication failed. Check your access token."
    if isinstance(exc, ConflictError):
        return "The remote changed while saving. Try syncing again."
    if isinstance(exc, HistoryRewriteError):
        return f"History rewrite failed during '{exc.stage}'."
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        return "The connection timed out. Try again later."
    if isinstance(exc, httpx.TransportError):
        return "No internet connection."
    if isinstance(exc, RemoteError):
        if exc.status_code == 403:
            return "Access denied. The token may lack repository permissions."
        if exc.status_code == 404:
            return "Repository not found. Check the owner and name."
        if isinstance(exc, TransientRemoteError):
            if exc.status_code is None:
                return "Network error. Check your connection."
            return "The server is having trouble. Try again later."
    return f"Network error: {exc}"


def _is_rate_limited(response: httpx.Response) -> bool:
    if response.headers.get("x-ratelimit-remaining") == "0":
        return True
    return "rate limit" in response.text.lower()


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return response.text[:200]


class RemoteStoreClient:
    """Async client for the repository configured in ``RemoteConfig``.

    Args:
        config: Owner, repo, branch and token.
        settings: Retry and timeout policy.
        transport: Optional httpx transport, used to fake the API in tests.
        sleep: Awaitable sleep used for backoff and settle pauses.
    """

    def __init__(
        self,
        config: RemoteConfig,
        settings: Optional[SyncSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.config = config
        self.settings = settings or SyncSettings()
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def branch(self) -> str:
        return self.config.branch

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            headers = {
                "Accept": "application/vnd.github.v3+json",
                "User-Agent": USER_AGENT,
            }
            token = self.config.resolved_token()
            if token:
                headers["Authorization"] = f"token {token}"
            self._client = httpx.AsyncClient(
                base_url=self.config.api_url,
                headers=headers,
                timeout=self.settings.request_timeout_seconds,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "RemoteStoreClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def _repo_url(self) -> str:
        return f"/repos/{self.config.owner}/{self.config.repo}"

    def _contents_url(self, path: str) -> str:
        return f"{self._repo_url}/contents/{quote(path, safe='/')}"

    # ------------------------------------------------------------------
    # Request core
    # ------------------------------------------------------------------

    def _classify(self, response: httpx.Response) -> RemoteError:
        status = response.status_code
        message = f"{response.request.method} {response.request.url.path}: {status} {_error_message(response)}"
        if status == 401:
            return AuthError(message, status)
        if status == 403:
            if _is_rate_limited(response):
                return TransientRemoteError(message, status)
            return RemoteError(message, status)
        if status == 429 or status >= 500:
            return TransientRemoteError(message, status)
        if status == 409:
            return ConflictError(message, status)
        if status == 422 and "sha" in message.lower():
            return ConflictError(message, status)
        return RemoteError(message, status)

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
        allow: Iterable[int] = (),
    ) -> httpx.Response:
        """Send one request with retry on transient failures.

        Args:
            method: HTTP method.
            url: Path relative to the API base URL.
            json: Optional JSON body.
            params: Optional query parameters.
            allow: Error statuses returned to the caller instead of raised.

        Raises:
            NotConfiguredError: Before any I/O if the remote is incomplete.
            AuthError: On 401.
            ConflictError: On 409 or a stale-sha 422.
            TransientRemoteError: When retries are exhausted.
            RemoteError: For any other failure.
        """
        if not self.config.is_configured:
            raise NotConfiguredError("remote repository is not configured")

        allowed = set(allow)
        attempts = self.settings.max_attempts
        last_error: Optional[RemoteError] = None

        for attempt in range(attempts):
            try:
                response = await self.client.request(method, url, json=json, params=params)
            except httpx.TransportError as exc:
                last_error = TransientRemoteError(f"{method} {url}: {exc!r}")
                last_error.__cause__ = exc
            else:
                if response.status_code < 400 or response.status_code in allowed:
                    return response
                error = self._classify(response)
                if not isinstance(error, TransientRemoteError):
                    raise error
                last_error = error

            if attempt + 1 < attempts:
                delay = self.settings.backoff_base_seconds * (2 ** attempt)
                logger.warning(
                    "Transient failure (attempt %d/%d), retrying in %.1fs: %s",
                    attempt + 1, attempts, delay, last_error,
                )
                await self._sleep(delay)

        if last_error is None:
            raise TransientRemoteError(f"{method} {url}: no attempts allowed")
        logger.error("Giving up after %d attempts: %s", attempts, last_error)
        raise last_error

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def read_file(self, path: str) -> Optional[RemoteFile]:
        """Read a file and its hash.

        Returns:
            RemoteFile, or None if the path does not exist.
        """
        response = await self._request(
            "GET", self._contents_url(path), params={"ref": self.branch}, allow=(404,)
        )
        if response.status_code == 404:
            return None
        data = response.json()
        if not isinstance(data, dict) or data.get("type", "file") != "file":
            raise RemoteError(f"{path} is not a file")
        raw = base64.b64decode(data.get("content") or "")
        try:
            content = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise RemoteError(f"{path} is not UTF-8 text") from exc
        return RemoteFile(path=path, content=content, sha=data["sha"])

    async def get_file_sha(self, path: str) -> Optional[str]:
        remote = await self.read_file(path)
        return remote.sha if remote else None

    async def write_file(
        self,
        path: str,
        content: str,
        expected_sha: Optional[str] = None,
        message: Optional[str] = None,
    ) -> str:
        """Create or conditionally update a file.

        Args:
            path: Remote path.
            content: New text content.
            expected_sha: The hash being replaced. Omit to create.
            message: Commit message.

        Returns:
            str: The hash of the new content.

        Raises:
            ConflictError: If the remote hash no longer matches.
        """
        body: dict[str, Any] = {
            "message": message or f"Update {path}",
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": self.branch,
        }
        if expected_sha:
            body["sha"] = expected_sha
        response = await self._request("PUT", self._contents_url(path), json=body)
        sha = response.json()["content"]["sha"]
        logger.debug("Wrote %s (%s)", path, sha[:8])
        return sha

    async def delete_file(
        self, path: str, sha: Optional[str] = None, message: Optional[str] = None
    ) -> bool:
        """Delete a file.

        Returns:
            True if deleted, False if it was already absent.
        """
        if sha is None:
            sha = await self.get_file_sha(path)
            if sha is None:
                return False
        body = {"message": message or f"Delete {path}", "sha": sha, "branch": self.branch}
        response = await self._request("DELETE", self._contents_url(path), json=body, allow=(404,))
        if response.status_code == 404:
            return False
        logger.debug("Deleted %s", path)
        return True

    async def list_tree(self, prefixes: Optional[Iterable[str]] = None) -> dict[str, str]:
        """List every file on the branch with its hash.

        Args:
            prefixes: If given, only paths starting with one of these.

        Returns:
            dict mapping path to blob hash. Empty if the branch is absent.
        """
        response = await self._request(
            "GET", f"{self._repo_url}/branches/{quote(self.branch, safe='')}", allow=(404,)
        )
        if response.status_code == 404:
            logger.info("Branch %s not found, treating remote as empty", self.branch)
            return {}
        commit_sha = response.json()["commit"]["sha"]

        response = await self._request(
            "GET", f"{self._repo_url}/git/trees/{commit_sha}", params={"recursive": "1"}
        )
        data = response.json()
        if data.get("truncated"):
            logger.warning("Tree listing was truncated; some files may be missed")

        wanted = tuple(prefixes) if prefixes else ()
        listing: dict[str, str] = {}
        for entry in data.get("tree", []):
            if entry.get("type") != "blob":
                continue
            path = entry["path"]
            if wanted and not path.startswith(wanted):
                continue
            listing[path] = entry["sha"]
        return listing

    # ------------------------------------------------------------------
    # Git data primitives
    # ------------------------------------------------------------------

    async def create_blob(self, content: str) -> str:
        response = await self._request(
            "POST", f"{self._repo_url}/git/blobs", json={"content": content, "encoding": "utf-8"}
        )
        return response.json()["sha"]

    async def create_tree(self, entries: dict[str, str]) -> str:
        """Create a tree from ``{path: blob_sha}``."""
        tree = [
            {"path": path, "mode": "100644", "type": "blob", "sha": sha}
            for path, sha in sorted(entries.items())
        ]
        response = await self._request("POST", f"{self._repo_url}/git/trees", json={"tree": tree})
        return response.json()["sha"]

    async def create_commit(self, message: str, tree_sha: str, parents: list[str]) -> str:
        response = await self._request(
            "POST",
            f"{self._repo_url}/git/commits",
            json={"message": message, "tree": tree_sha, "parents": parents},
        )
        return response.json()["sha"]

    async def create_ref(self, branch: str, sha: str) -> None:
        await self._request(
            "POST", f"{self._repo_url}/git/refs", json={"ref": f"refs/heads/{branch}", "sha": sha}
        )

    async def delete_ref(self, branch: str) -> bool:
        """Delete a branch ref. Returns False if it did not exist."""
        response = await self._request(
            "DELETE", f"{self._repo_url}/git/refs/heads/{quote(branch, safe='')}", allow=(404, 422)
        )
        return response.status_code < 400

    async def get_default_branch(self) -> str:
        response = await self._request("GET", self._repo_url)
        return response.json()["default_branch"]

    async def set_default_branch(self, branch: str) -> None:
        await self._request("PATCH", self._repo_url, json={"default_branch": branch})

    # ------------------------------------------------------------------
    # History rewrite
    # ------------------------------------------------------------------

    async def rewrite_history(self, files: dict[str, str], message: str) -> str:
        """Replace the branch with a single parentless commit.

        The orphan commit is created and anchored on a temporary branch
        before the original ref is touched, so the new history survives a
        failure in any later step.

        Args:
            files: Complete new content, ``{path: text}``.
            message: Commit message for the orphan commit.

        Returns:
            str: The new commit hash.

        Raises:
            HistoryRewriteError: With the failing stage and whatever was
                created before it.
        """
        if not files:
            raise ValueError("history rewrite needs at least one file")

        stage = "blobs"
        commit_sha: Optional[str] = None
        temp_branch: Optional[str] = None
        try:
            blobs: dict[str, str] = {}
            for path, text in files.items():
                blobs[path] = await self.create_blob(text)

            stage = "tree"
            tree_sha = await self.create_tree(blobs)

            stage = "commit"
            commit_sha = await self.create_commit(message, tree_sha, parents=[])

            stage = "temp_branch"
            candidate = f"{TEMP_BRANCH_PREFIX}{int(time.time() * 1000)}"
            await self.create_ref(candidate, commit_sha)
            temp_branch = candidate

            stage = "default_branch"
            was_default = (await self.get_default_branch()) == self.branch
            if was_default:
                await self.set_default_branch(temp_branch)
                await self._sleep(DEFAULT_BRANCH_SETTLE_SECONDS)

            stage = "delete_branch"
            await self.delete_ref(self.branch)

            stage = "recreate_branch"
            await self.create_ref(self.branch, commit_sha)

            stage = "restore_default"
            if was_default:
                await self.set_default_branch(self.branch)
        except RemoteError as exc:
            logger.error(
                "History rewrite failed at %s (commit=%s, temp=%s): %s",
                stage, commit_sha, temp_branch, exc,
            )
            raise HistoryRewriteError(
                f"history rewrite failed at {stage}: {exc}",
                stage=stage,
                commit_sha=commit_sha,
                temp_branch=temp_branch,
                status_code=exc.status_code,
            ) from exc

        try:
            await self.delete_ref(temp_branch)
        except RemoteError as exc:
            logger.warning("Could not delete temporary branch %s: %s", temp_branch, exc)

        logger.info("Rewrote %s history to orphan commit %s", self.branch, commit_sha[:8])
        return commit_sha
