"""
Bitbucket Cloud (bitbucket.org) provider over the REST API 2.0.

Differences from Bitbucket Server that callers can observe:
- create_branch does not create anything remotely. Cloud creates a branch on
  the first commit to it, so the returned GitBranch is where it *will* point.
- create_commit is a single multipart POST to ``/src`` and therefore atomic.
"""
import logging
import re
from typing import Any, AsyncIterator
from urllib.parse import quote

import httpx

from confighub.core.exceptions import AppError, InvalidCredentialError, InvalidRepositoryURLError, RemoteError
from confighub.providers.base import GitProvider, decode_content, error_detail
from confighub.providers.diff import split_unified_diff
from confighub.providers.schemas import (
    Author,
    FileAction,
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
    PullRequestAuthor,
    PullRequestReviewer,
    PullRequestState,
    Signature,
)
from confighub.vault.models import GitCredential

logger = logging.getLogger(__name__)

BITBUCKET_CLOUD_API_URL = "https://api.bitbucket.org/2.0"

_CLOUD_PATH = re.compile(r"bitbucket\.org[/:]([^/]+)/([^/?#]+)")

_STATES = {
    "OPEN": PullRequestState.OPEN,
    "MERGED": PullRequestState.MERGED,
    "DECLINED": PullRequestState.DECLINED,
    "SUPERSEDED": PullRequestState.SUPERSEDED,
}


def parse_repository_url(repo_url: str, api_url: str = BITBUCKET_CLOUD_API_URL) -> GitRepositoryInfo:
    """Extract ``workspace/repo-slug`` from https, ssh or scp-style bitbucket.org URLs."""
    match = _CLOUD_PATH.search(repo_url.strip())
    if not match:
        raise InvalidRepositoryURLError(repo_url, "expected bitbucket.org/{workspace}/{repository}")

    workspace, slug = match.group(1), match.group(2)
    if slug.endswith(".git"):
        slug = slug[: -len(".git")]
    if not slug:
        raise InvalidRepositoryURLError(repo_url, "missing repository slug")

    return GitRepositoryInfo(
        provider_type=GitProviderType.BITBUCKET_CLOUD,
        base_url=api_url.rstrip("/"),
        workspace=workspace,
        repository_slug=slug,
    )


def _segment(value: str) -> str:
    return quote(value, safe="")


class PendingBranches:
    """
    Branches announced by create_branch but not yet committed to, mapped to
    the parent sha their first commit must carry. Shared across provider
    instances so the announcement survives between requests.
    """

    def __init__(self) -> None:
        self._parents: dict[tuple[str, str, str, str], str] = {}

    @staticmethod
    def _key(info: GitRepositoryInfo, branch: str) -> tuple[str, str, str, str]:
        return (info.base_url, info.workspace or "", info.repository_slug or "", branch)

    def add(self, info: GitRepositoryInfo, branch: str, sha: str) -> None:
        self._parents[self._key(info, branch)] = sha

    def get(self, info: GitRepositoryInfo, branch: str) -> str | None:
        return self._parents.get(self._key(info, branch))

    def discard(self, info: GitRepositoryInfo, branch: str) -> None:
        self._parents.pop(self._key(info, branch), None)


class BitbucketCloudProvider(GitProvider):
    provider_type = GitProviderType.BITBUCKET_CLOUD
    PAGE_SIZE = 100

    def __init__(
        self,
        repo_url: str,
        credential: GitCredential,
        *,
        api_url: str = BITBUCKET_CLOUD_API_URL,
        timeout: float = 30.0,
        max_pages: int = 500,
        transport: httpx.AsyncBaseTransport | None = None,
        pending: PendingBranches | None = None,
    ) -> None:
        info = parse_repository_url(repo_url, api_url)

        token = credential.token or credential.password
        if not token:
            raise InvalidCredentialError("Bitbucket Cloud requires an access token")

        client = httpx.AsyncClient(
            base_url=info.base_url,
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            timeout=timeout,
            # /pullrequests/{id}/diff answers with a redirect to the raw diff
            follow_redirects=True,
            transport=transport,
        )
        super().__init__(info, client)
        self._max_pages = max_pages
        self._repo_path = f"/repositories/{_segment(info.workspace)}/{_segment(info.repository_slug)}"
        self._pending = pending if pending is not None else PendingBranches()
        self._main_branch: str | None = None

    async def _paged(self, url: str, operation: str, params: dict[str, Any] | None = None) -> AsyncIterator[dict]:
        """Yield ``values`` across pages by following ``next`` links."""
        next_url: str | None = url
        next_params = params
        for _ in range(self._max_pages):
            data = await self._json("GET", next_url, operation, params=next_params)
            for value in data.get("values", []):
                yield value
            next_url = data.get("next")
            next_params = None  # the next link already carries the query string
            if not next_url:
                return

        logger.warning(f"{operation}: stopped after {self._max_pages} pages")
        raise RemoteError(operation, f"pagination did not finish within {self._max_pages} pages")

    # ── browsing ─────────────────────────────────────────────────────────────

    def _src(self, branch: str, path: str) -> str:
        return f"{self._repo_path}/src/{_segment(branch)}/{quote(path.strip('/'))}"

    async def list_files(self, path: str, branch: str, recursive: bool = False) -> list[GitFile]:
        endpoint = self._src(branch, path)
        if not endpoint.endswith("/"):
            endpoint += "/"

        files: list[GitFile] = []
        async for item in self._paged(endpoint, "listFiles", params={"pagelen": self.PAGE_SIZE}):
            is_dir = item.get("type") == "commit_directory"
            item_path = item["path"]
            files.append(GitFile(
                path=item_path,
                name=item_path.rstrip("/").rsplit("/", 1)[-1],
                type="directory" if is_dir else "file",
                size=item.get("size") or 0,
            ))
            if recursive and is_dir:
                files.extend(await self.list_files(item_path, branch, recursive=True))
        return files

    async def get_file_content(self, path: str, branch: str) -> GitFileContent:
        normalized = path.lstrip("/")
        response = await self._request(
            "GET", self._src(branch, normalized), "getFileContent",
            headers={"Accept": "text/plain"},
        )
        content, encoding = decode_content(response.content)
        meta = await self._json("GET", self._src(branch, normalized), "getFileContent", params={"format": "meta"})

        return GitFileContent(
            path=normalized,
            content=content,
            encoding=encoding,
            sha=(meta.get("commit") or {}).get("hash", ""),
            size=meta.get("size") or len(response.content),
            branch=branch,
        )

    async def get_file_commits(self, path: str, branch: str, limit: int = 10) -> list[GitCommit]:
        data = await self._json(
            "GET", f"{self._repo_path}/commits/{_segment(branch)}", "getFileCommits",
            params={"path": path.lstrip("/"), "pagelen": limit},
        )
        return [self._convert_commit(c) for c in data.get("values", [])[:limit]]

    # ── branches ─────────────────────────────────────────────────────────────

    async def _default_branch(self) -> str | None:
        if self._main_branch is None:
            data = await self._json("GET", self._repo_path, "getBranches")
            self._main_branch = (data.get("mainbranch") or {}).get("name", "")
        return self._main_branch or None

    async def get_branches(self) -> list[GitBranch]:
        default = await self._default_branch()
        return [
            GitBranch(
                name=b["name"],
                sha=(b.get("target") or {}).get("hash", ""),
                is_default=b["name"] == default,
            )
            async for b in self._paged(f"{self._repo_path}/refs/branches", "getBranches", params={"pagelen": self.PAGE_SIZE})
        ]

    async def create_branch(self, name: str, from_branch: str) -> GitBranch:
        data = await self._json(
            "GET", f"{self._repo_path}/refs/branches/{_segment(from_branch)}", "createBranch"
        )
        commit_hash = (data.get("target") or {}).get("hash")
        if not commit_hash:
            raise RemoteError("createBranch", f"Could not find commit hash for branch {from_branch}")

        self._pending.add(self.repository_info, name, commit_hash)
        return GitBranch(name=name, sha=commit_hash)

    async def delete_branch(self, name: str) -> None:
        self._pending.discard(self.repository_info, name)
        await self._request("DELETE", f"{self._repo_path}/refs/branches/{_segment(name)}", "deleteBranch")

    # ── commits ──────────────────────────────────────────────────────────────

    async def create_commit(
        self,
        branch: str,
        changes: list[FileChange],
        message: str,
        author: Author,
    ) -> GitCommit:
        if not changes:
            raise AppError("No changes to commit", status_code=400)

        form: dict[str, Any] = {
            "message": message,
            "branch": branch,
            "author": f"{author.name} <{author.email}>",
        }
        parent = self._pending.get(self.repository_info, branch)
        if parent:
            form["parents"] = parent

        deleted = [c.path.lstrip("/") for c in changes if c.action == FileAction.DELETE]
        if deleted:
            form["files"] = deleted
        uploads = [
            (c.path.lstrip("/"), (c.path.rsplit("/", 1)[-1], c.content.encode()))
            for c in changes
            if c.action != FileAction.DELETE
        ]

        await self._request(
            "POST", f"{self._repo_path}/src", "createCommit",
            data=form,
            files=uploads or None,
        )
        self._pending.discard(self.repository_info, branch)

        data = await self._json(
            "GET", f"{self._repo_path}/commits/{_segment(branch)}", "createCommit",
            params={"pagelen": 1},
        )
        values = data.get("values", [])
        if not values:
            raise RemoteError("createCommit", f"branch {branch!r} has no commits after committing")
        return self._convert_commit(values[0])

    # ── pull requests ────────────────────────────────────────────────────────

    async def create_pull_request(
        self,
        source_branch: str,
        target_branch: str,
        title: str,
        description: str,
        reviewers: list[str] | None = None,
    ) -> PullRequest:
        body: dict[str, Any] = {
            "title": title,
            "description": description,
            "source": {"branch": {"name": source_branch}},
            "destination": {"branch": {"name": target_branch}},
            "close_source_branch": False,
        }
        if reviewers:
            # Cloud identifies users by {uuid} or account id
            body["reviewers"] = [
                {"uuid": r} if r.startswith("{") else {"account_id": r} for r in reviewers
            ]

        data = await self._json("POST", f"{self._repo_path}/pullrequests", "createPullRequest", json=body)
        return self._convert_pull_request(data)

    async def get_pull_request(self, pr_id: int) -> PullRequest:
        data = await self._json("GET", f"{self._repo_path}/pullrequests/{pr_id}", "getPullRequest")
        return self._convert_pull_request(data)

    async def list_pull_requests(self, state: str = "open", limit: int = 25) -> list[PullRequest]:
        if state == "all":
            states = [s.upper() for s in _STATES]
        else:
            states = [state.upper()]
        data = await self._json(
            "GET", f"{self._repo_path}/pullrequests", "listPullRequests",
            params={"state": states, "pagelen": limit},
        )
        return [self._convert_pull_request(pr) for pr in data.get("values", [])[:limit]]

    async def merge_pull_request(self, pr_id: int, message: str | None = None) -> MergeResult:
        body: dict[str, Any] = {"close_source_branch": False}
        if message:
            body["message"] = message

        response = await self._send("POST", f"{self._repo_path}/pullrequests/{pr_id}/merge", "mergePullRequest", json=body)
        if response.status_code in (400, 409):
            return self._merge_refusal(response)
        self._raise_for_status(response, "mergePullRequest")

        if response.status_code == 202:
            # Long-running merges are queued and polled by the caller
            return MergeResult(success=True, message="Merge queued")
        data = response.json()
        return MergeResult(
            success=True,
            sha=(data.get("merge_commit") or {}).get("hash"),
            message="Pull request merged successfully",
        )

    @staticmethod
    def _merge_refusal(response: httpx.Response) -> MergeResult:
        message = error_detail(response)
        try:
            fields = (response.json().get("error") or {}).get("fields") or {}
        except (ValueError, AttributeError):
            fields = {}
        return MergeResult(success=False, message=message, conflicts=list(fields) or [message])

    async def approve_pull_request(self, pr_id: int) -> PullRequest:
        await self._request("POST", f"{self._repo_path}/pullrequests/{pr_id}/approve", "approvePullRequest")
        return await self.get_pull_request(pr_id)

    async def decline_pull_request(self, pr_id: int) -> PullRequest:
        data = await self._json("POST", f"{self._repo_path}/pullrequests/{pr_id}/decline", "declinePullRequest", json={})
        return self._convert_pull_request(data)

    async def get_pull_request_diff(self, pr_id: int) -> list[FileDiff]:
        response = await self._request(
            "GET", f"{self._repo_path}/pullrequests/{pr_id}/diff", "getPullRequestDiff",
            headers={"Accept": "text/plain"},
        )
        return split_unified_diff(response.text)

    async def test_connection(self) -> bool:
        await self._request("GET", self._repo_path, "testConnection")
        return True

    # ── conversion ───────────────────────────────────────────────────────────

    @staticmethod
    def _convert_pull_request(pr: dict) -> PullRequest:
        reviewers = []
        for p in pr.get("participants", []):
            if p.get("role") != "REVIEWER":
                continue
            user = p.get("user") or {}
            status = "approved" if p.get("approved") else (
                "needs_work" if p.get("state") == "changes_requested" else "unapproved"
            )
            reviewers.append(PullRequestReviewer(
                name=user.get("nickname") or user.get("username", ""),
                display_name=user.get("display_name") or user.get("nickname", ""),
                approved=p.get("approved", False),
                status=status,
            ))

        author = pr.get("author") or {}
        return PullRequest(
            id=pr["id"],
            title=pr.get("title", ""),
            description=pr.get("description") or "",
            state=_STATES.get(pr.get("state", ""), PullRequestState.OPEN),
            author=PullRequestAuthor(
                name=author.get("nickname") or author.get("username", ""),
                display_name=author.get("display_name") or author.get("nickname", ""),
            ),
            source_branch=((pr.get("source") or {}).get("branch") or {}).get("name", ""),
            target_branch=((pr.get("destination") or {}).get("branch") or {}).get("name", ""),
            created_at=pr.get("created_on", ""),
            updated_at=pr.get("updated_on", ""),
            reviewers=reviewers,
            approvals=sum(1 for p in pr.get("participants", []) if p.get("approved")),
            url=((pr.get("links") or {}).get("html") or {}).get("href", ""),
            merge_commit=(pr.get("merge_commit") or {}).get("hash"),
        )

    @staticmethod
    def _convert_commit(commit: dict) -> GitCommit:
        author = commit.get("author") or {}
        user = author.get("user") or {}
        raw = author.get("raw", "")
        name = user.get("display_name") or raw.split("<", 1)[0].strip()
        email = raw.split("<", 1)[1].rstrip(">").strip() if "<" in raw else ""
        signature = Signature(name=name, email=email, date=commit.get("date", ""))
        return GitCommit(
            sha=commit["hash"],
            message=commit.get("message", ""),
            author=signature,
            committer=signature,
            parents=[p["hash"] for p in commit.get("parents", [])],
        )
