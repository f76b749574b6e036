"""
Bitbucket Server (self-hosted) provider over the REST API 1.0.

No local Git: browsing, file edits, branches and pull requests all go through
``/rest/api/1.0/projects/{project}/repos/{repo}``. The file-edit API takes one
file per request, so a multi-file commit is a sequence of edits that is not
rolled back when a later edit fails.
"""
import logging
import re
from typing import Any, AsyncIterator
from urllib.parse import quote, urlsplit

import httpx

from confighub.core.exceptions import (
    AppError,
    ConflictError,
    InvalidCredentialError,
    InvalidRepositoryURLError,
    NotFoundError,
    PartialCommitFailureError,
    RemoteError,
)
from confighub.providers.base import GitProvider, decode_content, error_detail, iso_from_millis
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

_SCM_PATH = re.compile(r"/scm/([^/]+)/([^/]+)")
_PROJECTS_PATH = re.compile(r"/projects/([^/]+)/repos/([^/]+)")

_STATES = {
    "OPEN": PullRequestState.OPEN,
    "MERGED": PullRequestState.MERGED,
    "DECLINED": PullRequestState.DECLINED,
    "SUPERSEDED": PullRequestState.SUPERSEDED,
}

# Bitbucket reports a PR that is no longer open with this exception on merge.
_ILLEGAL_STATE_MARKERS = ("IllegalPullRequestState", "already been merged", "is not open", "declined")


def parse_repository_url(repo_url: str) -> GitRepositoryInfo:
    """
    Supports:
    - https://bitbucket.example.com/scm/PROJECT/repo.git
    - https://bitbucket.example.com/projects/PROJECT/repos/repo
    - http://localhost:7990/scm/PROJECT/repo.git
    """
    parts = urlsplit(repo_url.strip())
    if not parts.scheme or not parts.netloc:
        raise InvalidRepositoryURLError(repo_url, "expected an http(s) URL")

    # Drop any user-info so credentials embedded in clone URLs never reach base_url
    host = parts.netloc.rsplit("@", 1)[-1]
    pathname = parts.path.rstrip("/")
    if pathname.endswith(".git"):
        pathname = pathname[: -len(".git")]

    project_key = repository_slug = None
    for pattern in (_SCM_PATH, _PROJECTS_PATH):
        match = pattern.search(pathname)
        if match:
            project_key, repository_slug = match.group(1), match.group(2)

    if not project_key or not repository_slug:
        raise InvalidRepositoryURLError(repo_url, "could not extract project key and repository slug")

    return GitRepositoryInfo(
        provider_type=GitProviderType.BITBUCKET_SERVER,
        base_url=f"{parts.scheme}://{host}",
        project_key=project_key,
        repository_slug=repository_slug,
    )


class BitbucketServerProvider(GitProvider):
    provider_type = GitProviderType.BITBUCKET_SERVER
    PAGE_SIZE = 100

    def __init__(
        self,
        repo_url: str,
        credential: GitCredential,
        *,
        allow_self_signed: bool = False,
        timeout: float = 30.0,
        max_pages: int = 500,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        info = parse_repository_url(repo_url)

        headers = {"Accept": "application/json"}
        auth = None
        if credential.auth_type == "token" and credential.token:
            headers["Authorization"] = f"Bearer {credential.token}"
        elif credential.auth_type == "userpass" and credential.username and credential.password:
            auth = httpx.BasicAuth(credential.username, credential.password)
        else:
            raise InvalidCredentialError(
                "Invalid credential type for Bitbucket Server. Use token or userpass."
            )

        client = httpx.AsyncClient(
            base_url=info.base_url,
            headers=headers,
            auth=auth,
            timeout=timeout,
            # Self-hosted servers often present internal certificates; trusting them is opt-in.
            verify=not allow_self_signed,
            transport=transport,
        )
        super().__init__(info, client)
        self._max_pages = max_pages
        self._repo_path = (
            f"/rest/api/1.0/projects/{quote(info.project_key, safe='')}"
            f"/repos/{quote(info.repository_slug, safe='')}"
        )

    # ── pagination ───────────────────────────────────────────────────────────

    async def _paged(
        self,
        url: str,
        operation: str,
        params: dict[str, Any] | None = None,
        container: str | None = None,
    ) -> AsyncIterator[dict]:
        """Yield values across isLastPage/nextPageStart pages, at most ``max_pages`` pages."""
        start = 0
        for _ in range(self._max_pages):
            data = await self._json(
                "GET", url, operation,
                params={**(params or {}), "start": start, "limit": self.PAGE_SIZE},
            )
            page = data.get(container) if container else data
            if not isinstance(page, dict) or not isinstance(page.get("values"), list):
                where = f"{container}.values" if container else "values"
                raise RemoteError(operation, f"Invalid response from Bitbucket Server: {where} not found")

            for value in page["values"]:
                yield value

            next_start = page.get("nextPageStart")
            if page.get("isLastPage", True) or next_start is None:
                return
            start = next_start

        logger.warning(f"{operation}: stopped after {self._max_pages} pages without isLastPage")
        raise RemoteError(operation, f"pagination did not finish within {self._max_pages} pages")

    # ── browsing ─────────────────────────────────────────────────────────────

    async def list_files(self, path: str, branch: str, recursive: bool = False) -> list[GitFile]:
        normalized = path.strip("/")
        endpoint = f"{self._repo_path}/browse"
        if normalized:
            endpoint += f"/{quote(normalized)}"

        files: list[GitFile] = []
        async for item in self._paged(endpoint, "listFiles", params={"at": branch}, container="children"):
            # Child paths are relative to the directory being browsed
            relative = item["path"]["toString"]
            full_path = f"{normalized}/{relative}" if normalized else relative
            is_file = item.get("type") == "FILE"
            files.append(GitFile(
                path=full_path,
                name=item["path"].get("name") or relative.rsplit("/", 1)[-1],
                type="file" if is_file else "directory",
                size=item.get("size") or 0,
            ))
            if recursive and not is_file:
                files.extend(await self.list_files(full_path, branch, recursive=True))
        return files

    async def get_file_content(self, path: str, branch: str) -> GitFileContent:
        normalized = path.lstrip("/")
        raw = await self._request(
            "GET", f"{self._repo_path}/raw/{quote(normalized)}", "getFileContent",
            params={"at": branch},
        )
        content, encoding = decode_content(raw.content)

        metadata = await self._json(
            "GET", f"{self._repo_path}/browse/{quote(normalized)}", "getFileContent",
            params={"at": branch},
        )
        commits = await self.get_file_commits(normalized, branch, limit=1)

        return GitFileContent(
            path=normalized,
            content=content,
            encoding=encoding,
            sha=commits[0].sha if commits else "",
            size=metadata.get("size") or len(raw.content),
            branch=branch,
        )

    async def get_file_commits(self, path: str, branch: str, limit: int = 10) -> list[GitCommit]:
        data = await self._json(
            "GET", f"{self._repo_path}/commits", "getFileCommits",
            params={"until": branch, "path": path.lstrip("/"), "limit": limit},
        )
        return [self._convert_commit(c) for c in data.get("values", [])]

    # ── branches ─────────────────────────────────────────────────────────────

    async def get_branches(self) -> list[GitBranch]:
        return [
            GitBranch(
                name=b["displayId"],
                sha=b.get("latestCommit", ""),
                is_default=b.get("isDefault", False),
            )
            async for b in self._paged(f"{self._repo_path}/branches", "getBranches")
        ]

    async def _find_branch(self, name: str) -> GitBranch:
        for branch in await self.get_branches():
            if branch.name == name:
                return branch
        raise NotFoundError("Branch", name)

    async def create_branch(self, name: str, from_branch: str) -> GitBranch:
        source = await self._find_branch(from_branch)
        response = await self._send(
            "POST", f"{self._repo_path}/branches", "createBranch",
            json={
                "name": name,
                "startPoint": source.sha,
                "message": f"Create branch {name} from {from_branch}",
            },
        )
        if response.status_code == 409:
            raise ConflictError(f"Branch '{name}' already exists. Please use a different name.")
        self._raise_for_status(response, "createBranch")
        data = response.json()
        return GitBranch(name=data.get("displayId", name), sha=data.get("latestCommit", source.sha))

    async def delete_branch(self, name: str) -> None:
        await self._find_branch(name)
        await self._request(
            "DELETE",
            f"/rest/branch-utils/1.0/projects/{quote(self.repository_info.project_key, safe='')}"
            f"/repos/{quote(self.repository_info.repository_slug, safe='')}/branches",
            "deleteBranch",
            json={"name": f"refs/heads/{name}", "dryRun": False},
        )

    async def _latest_commit(self, branch: str, operation: str) -> GitCommit | None:
        data = await self._json(
            "GET", f"{self._repo_path}/commits", operation,
            params={"until": branch, "limit": 1},
        )
        values = data.get("values", [])
        return self._convert_commit(values[0]) if values else None

    # ── commits ──────────────────────────────────────────────────────────────

    async def create_commit(
        self,
        branch: str,
        changes: list[FileChange],
        message: str,
        author: Author,
    ) -> GitCommit:
        """
        Apply ``changes`` in order, one edit request per file.

        If an edit fails after earlier ones succeeded, PartialCommitFailureError
        reports which paths are already on the branch. The commit author is the
        authenticated user; ``author`` is only recorded in the log.
        """
        if not changes:
            raise AppError("No changes to commit", status_code=400)

        head = await self._latest_commit(branch, "createCommit")
        head_sha = head.sha if head else None
        logger.debug(f"Committing {len(changes)} change(s) to {branch} as {author.name}")

        applied: list[str] = []
        for change in changes:
            try:
                head_sha = await self._apply_change(branch, change, message, head_sha)
            except AppError as e:
                if not applied:
                    raise
                logger.error(
                    f"createCommit: {change.path} failed after {len(applied)} change(s) were applied to {branch}"
                )
                raise PartialCommitFailureError(branch, applied, change.path, e) from e
            applied.append(change.path)

        commit = await self._latest_commit(branch, "createCommit")
        if commit is None:
            raise RemoteError("createCommit", f"branch {branch!r} has no commits after applying changes")
        return commit

    async def _apply_change(self, branch: str, change: FileChange, message: str, head_sha: str | None) -> str | None:
        """Apply one file edit; returns the branch head after the edit."""
        endpoint = f"{self._repo_path}/browse/{quote(change.path.lstrip('/'))}"
        form: dict[str, str] = {"message": message, "branch": branch}
        # A brand-new file must not name a source commit; edits and deletes must.
        if change.action != FileAction.ADD and head_sha:
            form["sourceCommitId"] = head_sha

        if change.action == FileAction.DELETE:
            response = await self._request("DELETE", endpoint, "createCommit", params=form)
        else:
            response = await self._request(
                "PUT", endpoint, "createCommit",
                data=form,
                files={"content": (change.path.rsplit("/", 1)[-1], change.content.encode())},
            )

        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict) and data.get("id"):
            return data["id"]
        latest = await self._latest_commit(branch, "createCommit")
        return latest.sha if latest else head_sha

    # ── pull requests ────────────────────────────────────────────────────────

    def _ref(self, branch: str) -> dict:
        return {
            "id": f"refs/heads/{branch}",
            "repository": {
                "slug": self.repository_info.repository_slug,
                "project": {"key": self.repository_info.project_key},
            },
        }

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
            "state": "OPEN",
            "open": True,
            "closed": False,
            "fromRef": self._ref(source_branch),
            "toRef": self._ref(target_branch),
            "locked": False,
        }
        if reviewers:
            body["reviewers"] = [{"user": {"name": username}} for username in reviewers]

        response = await self._send("POST", f"{self._repo_path}/pull-requests", "createPullRequest", json=body)
        if response.status_code in (400, 409):
            detail = error_detail(response)
            if "already exists" in detail:
                raise ConflictError("A pull request already exists for these branches.")
            if "no changes" in detail.lower():
                raise ConflictError("Cannot create pull request: no changes between branches.")
        self._raise_for_status(response, "createPullRequest")
        return self._convert_pull_request(response.json())

    async def _raw_pull_request(self, pr_id: int, operation: str) -> dict:
        return await self._json("GET", f"{self._repo_path}/pull-requests/{pr_id}", operation)

    async def get_pull_request(self, pr_id: int) -> PullRequest:
        return self._convert_pull_request(await self._raw_pull_request(pr_id, "getPullRequest"))

    async def list_pull_requests(self, state: str = "open", limit: int = 25) -> list[PullRequest]:
        data = await self._json(
            "GET", f"{self._repo_path}/pull-requests", "listPullRequests",
            params={"state": state.upper(), "start": 0, "limit": limit},
        )
        return [self._convert_pull_request(pr) for pr in data.get("values", [])]

    async def merge_pull_request(self, pr_id: int, message: str | None = None) -> MergeResult:
        # The version is an optimistic-concurrency token and must be fresh.
        raw = await self._raw_pull_request(pr_id, "mergePullRequest")
        state = _STATES.get(raw.get("state", ""), PullRequestState.OPEN)
        if state != PullRequestState.OPEN:
            return MergeResult(success=False, message=f"Pull request is {state.value} and cannot be merged")

        version = raw.get("version", 0)
        response = await self._send(
            "POST", f"{self._repo_path}/pull-requests/{pr_id}/merge", "mergePullRequest",
            params={"version": version},
            json={"version": version, "message": message or f"Merge pull request #{pr_id}", "autoSubject": not message},
        )
        if response.status_code == 409:
            return self._merge_refusal(response)
        self._raise_for_status(response, "mergePullRequest")

        data = response.json()
        merge_commit = (data.get("properties") or {}).get("mergeCommit") or {}
        return MergeResult(
            success=True,
            sha=merge_commit.get("id") or (data.get("toRef") or {}).get("latestCommit"),
            message="Pull request merged successfully",
        )

    def _merge_refusal(self, response: httpx.Response) -> MergeResult:
        try:
            errors = response.json().get("errors") or []
        except (ValueError, AttributeError):
            errors = []

        text = " ".join(f"{e.get('exceptionName', '')} {e.get('message', '')}" for e in errors)
        if any(marker in text for marker in _ILLEGAL_STATE_MARKERS):
            return MergeResult(
                success=False,
                message=errors[0].get("message") or "Pull request is no longer open",
                conflicts=[],
            )

        conflicts: list[str] = []
        for error in errors:
            vetoes = error.get("vetoes") or []
            conflicts.extend(v.get("detailedMessage") or v.get("summaryMessage", "") for v in vetoes)
            if not vetoes and error.get("message"):
                conflicts.append(error["message"])
        return MergeResult(
            success=False,
            message="Merge conflict detected",
            conflicts=[c for c in conflicts if c] or ["Unknown conflict"],
        )

    async def approve_pull_request(self, pr_id: int) -> PullRequest:
        await self._request("POST", f"{self._repo_path}/pull-requests/{pr_id}/approve", "approvePullRequest")
        return await self.get_pull_request(pr_id)

    async def decline_pull_request(self, pr_id: int) -> PullRequest:
        raw = await self._raw_pull_request(pr_id, "declinePullRequest")
        data = await self._json(
            "POST", f"{self._repo_path}/pull-requests/{pr_id}/decline", "declinePullRequest",
            params={"version": raw.get("version", 0)},
            json={"version": raw.get("version", 0)},
        )
        return self._convert_pull_request(data)

    async def get_pull_request_diff(self, pr_id: int) -> list[FileDiff]:
        response = await self._request(
            "GET", f"{self._repo_path}/pull-requests/{pr_id}.diff", "getPullRequestDiff",
            headers={"Accept": "text/plain"},
        )
        return split_unified_diff(response.text)

    async def test_connection(self) -> bool:
        await self._request("GET", self._repo_path, "testConnection")
        return True

    # ── conversion ───────────────────────────────────────────────────────────

    def _convert_pull_request(self, pr: dict) -> PullRequest:
        reviewers = [
            PullRequestReviewer(
                name=r["user"].get("name", ""),
                email=r["user"].get("emailAddress"),
                display_name=r["user"].get("displayName") or r["user"].get("name", ""),
                approved=r.get("approved", False),
                status=(r.get("status") or "UNAPPROVED").lower(),
            )
            for r in pr.get("reviewers", [])
        ]
        user = (pr.get("author") or {}).get("user") or {}
        state = _STATES.get(pr.get("state", ""), PullRequestState.OPEN)
        info = self.repository_info

        return PullRequest(
            id=pr["id"],
            title=pr.get("title", ""),
            description=pr.get("description") or "",
            state=state,
            author=PullRequestAuthor(
                name=user.get("name", ""),
                email=user.get("emailAddress"),
                display_name=user.get("displayName") or user.get("name", ""),
            ),
            source_branch=pr["fromRef"]["displayId"],
            target_branch=pr["toRef"]["displayId"],
            created_at=iso_from_millis(pr.get("createdDate")),
            updated_at=iso_from_millis(pr.get("updatedDate")),
            reviewers=reviewers,
            approvals=sum(1 for r in reviewers if r.approved),
            url=f"{info.base_url}/projects/{info.project_key}/repos/{info.repository_slug}/pull-requests/{pr['id']}",
            merge_commit=pr["toRef"].get("latestCommit") if state == PullRequestState.MERGED else None,
        )

    @staticmethod
    def _convert_commit(commit: dict) -> GitCommit:
        author = commit.get("author") or {}
        committer = commit.get("committer") or author
        return GitCommit(
            sha=commit["id"],
            message=commit.get("message", ""),
            author=Signature(
                name=author.get("name", ""),
                email=author.get("emailAddress", ""),
                date=iso_from_millis(commit.get("authorTimestamp")),
            ),
            committer=Signature(
                name=committer.get("name", ""),
                email=committer.get("emailAddress", ""),
                date=iso_from_millis(commit.get("committerTimestamp") or commit.get("authorTimestamp")),
            ),
            parents=[p["id"] for p in commit.get("parents", [])],
        )
