"""
Provider-agnostic Git DTOs.

Every backend maps its native payloads onto these shapes; field names and
enumerated states never depend on which Git host produced them.
"""
import enum
from typing import Literal

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class _Model(BaseModel):
    model_config = {"alias_generator": to_camel, "populate_by_name": True}


class GitProviderType(str, enum.Enum):
    BITBUCKET_CLOUD = "bitbucket-cloud"
    BITBUCKET_SERVER = "bitbucket-server"
    UNKNOWN = "unknown"


class PullRequestState(str, enum.Enum):
    OPEN = "open"
    MERGED = "merged"
    DECLINED = "declined"
    SUPERSEDED = "superseded"


class FileAction(str, enum.Enum):
    ADD = "add"
    MODIFY = "modify"
    DELETE = "delete"


class GitRepositoryInfo(_Model):
    model_config = {**_Model.model_config, "frozen": True}

    provider_type: GitProviderType
    base_url: str
    project_key: str | None = None
    repository_slug: str | None = None
    workspace: str | None = None


class GitFile(_Model):
    path: str
    name: str
    type: Literal["file", "directory"]
    size: int = 0


class GitFileContent(_Model):
    path: str
    content: str
    encoding: Literal["utf-8", "base64"] = "utf-8"
    sha: str = ""
    size: int = 0
    branch: str


class GitBranch(_Model):
    name: str
    sha: str
    is_default: bool = False


class Signature(_Model):
    name: str
    email: str = ""
    date: str = ""


class GitCommit(_Model):
    sha: str
    message: str
    author: Signature
    committer: Signature
    parents: list[str] = Field(default_factory=list)


class Author(_Model):
    name: str
    email: str


class FileChange(_Model):
    path: str
    content: str = ""
    action: FileAction = FileAction.MODIFY


class PullRequestAuthor(_Model):
    name: str
    email: str | None = None
    display_name: str


class PullRequestReviewer(_Model):
    name: str
    email: str | None = None
    display_name: str
    approved: bool = False
    status: Literal["unapproved", "needs_work", "approved"] = "unapproved"


class PullRequest(_Model):
    id: int
    title: str
    description: str = ""
    state: PullRequestState
    author: PullRequestAuthor
    source_branch: str
    target_branch: str
    created_at: str
    updated_at: str
    reviewers: list[PullRequestReviewer] = Field(default_factory=list)
    approvals: int = 0
    url: str = ""
    merge_commit: str | None = None


class MergeResult(_Model):
    success: bool
    sha: str | None = None
    message: str | None = None
    conflicts: list[str] | None = None


class FileDiff(_Model):
    path: str
    diff: str


# ── request bodies ───────────────────────────────────────────────────────────

class CreateBranchRequest(_Model):
    name: str
    from_branch: str


class CommitRequest(_Model):
    branch: str
    changes: list[FileChange]
    message: str
    author: Author


class CreatePullRequestRequest(_Model):
    source_branch: str
    target_branch: str
    title: str
    description: str = ""
    reviewers: list[str] | None = None


class MergeRequest(_Model):
    message: str | None = None


class ProposeChangeRequest(_Model):
    target_branch: str
    new_branch: str
    changes: list[FileChange]
    message: str
    author: Author
    title: str
    description: str = ""
    reviewers: list[str] | None = None
    webhook_url: str | None = None
