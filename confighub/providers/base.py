import base64
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

import httpx

from confighub.core.exceptions import (
    AuthenticationFailedError,
    NotFoundError,
    PermissionDeniedError,
    RemoteError,
)
from confighub.providers.schemas import (
    Author,
    FileChange,
    FileDiff,
    GitBranch,
    GitCommit,
    GitFile,
    GitFileContent,
    GitProviderType,
    GitRepositoryInfo,
    MergeResult,
    PullRequest,
)


def iso_from_millis(millis: int | None) -> str:
    if not millis:
        return ""
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc).isoformat()


def decode_content(data: bytes) -> tuple[str, str]:
    """Text as-is when it is UTF-8, otherwise base64. Returns ``(content, encoding)``."""
    try:
        return data.decode("utf-8"), "utf-8"
    except UnicodeDecodeError:
        return base64.b64encode(data).decode("ascii"), "base64"


def error_detail(response: httpx.Response) -> str:
    """Best-effort human message from a Bitbucket error body."""
    try:
        data = response.json()
    except ValueError:
        return response.text.strip() or response.reason_phrase
    if isinstance(data, dict):
        # Bitbucket Server: {"errors": [{"message": ...}]}
        errors = data.get("errors")
        if isinstance(errors, list) and errors:
            return ", ".join(str(e.get("message", e)) for e in errors if isinstance(e, dict)) or str(errors)
        # Bitbucket Cloud: {"type": "error", "error": {"message": ...}}
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return response.text.strip() or response.reason_phrase


class GitProvider(ABC):
    """Abstract interface for Git hosting backends."""

    provider_type: GitProviderType = GitProviderType.UNKNOWN

    def __init__(self, repository_info: GitRepositoryInfo, client: httpx.AsyncClient) -> None:
        self._repository_info = repository_info
        self._client = client

    @property
    def repository_info(self) -> GitRepositoryInfo:
        """Derived once from the constructor's URL; never recomputed."""
        return self._repository_info

    # ── HTTP plumbing ────────────────────────────────────────────────────────

    async def _send(self, method: str, url: str, operation: str, **kwargs: Any) -> httpx.Response:
        """Issue a request; transport failures become RemoteError, status codes are left to the caller."""
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise RemoteError(operation, str(e) or type(e).__name__) from e

    def _raise_for_status(self, response: httpx.Response, operation: str) -> None:
        if response.is_success:
            return
        status = response.status_code
        if status == 401:
            raise AuthenticationFailedError(operation)
        if status == 403:
            raise PermissionDeniedError(operation)
        if status == 404:
            raise NotFoundError("Resource", f"{operation} ({response.request.url.path})")
        raise RemoteError(operation, error_detail(response), http_status=status)

    async def _request(self, method: str, url: str, operation: str, **kwargs: Any) -> httpx.Response:
        response = await self._send(method, url, operation, **kwargs)
        self._raise_for_status(response, operation)
        return response

    async def _json(self, method: str, url: str, operation: str, **kwargs: Any) -> Any:
        response = await self._request(method, url, operation, **kwargs)
        try:
            return response.json()
        except ValueError as e:
            raise RemoteError(operation, "response was not valid JSON", http_status=response.status_code) from e

    # ── contract ─────────────────────────────────────────────────────────────

    @abstractmethod
    async def list_files(self, path: str, branch: str, recursive: bool = False) -> list[GitFile]:
        ...

    @abstractmethod
    async def get_file_content(self, path: str, branch: str) -> GitFileContent:
        ...

    @abstractmethod
    async def get_branches(self) -> list[GitBranch]:
        ...

    @abstractmethod
    async def create_branch(self, name: str, from_branch: str) -> GitBranch:
        ...

    @abstractmethod
    async def delete_branch(self, name: str) -> None:
        ...

    @abstractmethod
    async def create_commit(
        self,
        branch: str,
        changes: list[FileChange],
        message: str,
        author: Author,
    ) -> GitCommit:
        ...

    @abstractmethod
    async def create_pull_request(
        self,
        source_branch: str,
        target_branch: str,
        title: str,
        description: str,
        reviewers: list[str] | None = None,
    ) -> PullRequest:
        ...

    @abstractmethod
    async def get_pull_request(self, pr_id: int) -> PullRequest:
        ...

    @abstractmethod
    async def list_pull_requests(self, state: str = "open", limit: int = 25) -> list[PullRequest]:
        """``state`` is one of open, merged, declined or all."""
        ...

    @abstractmethod
    async def merge_pull_request(self, pr_id: int, message: str | None = None) -> MergeResult:
        """Conflicts come back as ``MergeResult(success=False)``, not as exceptions."""
        ...

    @abstractmethod
    async def approve_pull_request(self, pr_id: int) -> PullRequest:
        ...

    @abstractmethod
    async def decline_pull_request(self, pr_id: int) -> PullRequest:
        ...

    @abstractmethod
    async def get_pull_request_diff(self, pr_id: int) -> list[FileDiff]:
        ...

    @abstractmethod
    async def get_file_commits(self, path: str, branch: str, limit: int = 10) -> list[GitCommit]:
        ...

    @abstractmethod
    async def test_connection(self) -> bool:
        """Check the configured credential can reach the repository."""
        ...

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "GitProvider":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
