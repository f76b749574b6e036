from fastapi import APIRouter

from confighub.core.dependencies import Notifier, Provider
from confighub.providers.schemas import (
    CommitRequest,
    CreateBranchRequest,
    CreatePullRequestRequest,
    FileDiff,
    GitBranch,
    GitCommit,
    GitFile,
    GitFileContent,
    GitRepositoryInfo,
    MergeRequest,
    MergeResult,
    ProposeChangeRequest,
    PullRequest,
)
from confighub.providers.workflow import propose_change

router = APIRouter(prefix="/git/{credential_id}", tags=["git"])


@router.get("/repository", response_model=GitRepositoryInfo)
async def repository_info(provider: Provider):
    return provider.repository_info


@router.get("/files", response_model=list[GitFile])
async def list_files(provider: Provider, branch: str, path: str = "", recursive: bool = False):
    return await provider.list_files(path, branch, recursive)


@router.get("/file", response_model=GitFileContent)
async def get_file_content(provider: Provider, path: str, branch: str):
    return await provider.get_file_content(path, branch)


@router.get("/file/commits", response_model=list[GitCommit])
async def get_file_commits(provider: Provider, path: str, branch: str, limit: int = 10):
    return await provider.get_file_commits(path, branch, limit)


@router.get("/branches", response_model=list[GitBranch])
async def get_branches(provider: Provider):
    return await provider.get_branches()


@router.post("/branches", response_model=GitBranch, status_code=201)
async def create_branch(body: CreateBranchRequest, provider: Provider):
    return await provider.create_branch(body.name, body.from_branch)


# Branch names may contain slashes (feature/x)
@router.delete("/branches/{name:path}", status_code=204)
async def delete_branch(name: str, provider: Provider) -> None:
    await provider.delete_branch(name)


@router.post("/commits", response_model=GitCommit, status_code=201)
async def create_commit(body: CommitRequest, provider: Provider):
    return await provider.create_commit(body.branch, body.changes, body.message, body.author)


@router.post("/pull-requests", response_model=PullRequest, status_code=201)
async def create_pull_request(body: CreatePullRequestRequest, provider: Provider):
    return await provider.create_pull_request(
        body.source_branch, body.target_branch, body.title, body.description, body.reviewers
    )


@router.get("/pull-requests", response_model=list[PullRequest])
async def list_pull_requests(provider: Provider, state: str = "open", limit: int = 25):
    return await provider.list_pull_requests(state, limit)


@router.get("/pull-requests/{pr_id}", response_model=PullRequest)
async def get_pull_request(pr_id: int, provider: Provider):
    return await provider.get_pull_request(pr_id)


@router.get("/pull-requests/{pr_id}/diff", response_model=list[FileDiff])
async def get_pull_request_diff(pr_id: int, provider: Provider):
    return await provider.get_pull_request_diff(pr_id)


@router.post("/pull-requests/{pr_id}/merge", response_model=MergeResult)
async def merge_pull_request(pr_id: int, body: MergeRequest, provider: Provider):
    return await provider.merge_pull_request(pr_id, body.message)


@router.post("/pull-requests/{pr_id}/approve", response_model=PullRequest)
async def approve_pull_request(pr_id: int, provider: Provider):
    return await provider.approve_pull_request(pr_id)


@router.post("/pull-requests/{pr_id}/decline", response_model=PullRequest)
async def decline_pull_request(pr_id: int, provider: Provider):
    return await provider.decline_pull_request(pr_id)


@router.post("/propose", status_code=201)
async def propose(body: ProposeChangeRequest, provider: Provider, notifier: Notifier):
    result = await propose_change(
        provider,
        target_branch=body.target_branch,
        new_branch=body.new_branch,
        changes=body.changes,
        message=body.message,
        author=body.author,
        title=body.title,
        description=body.description,
        reviewers=body.reviewers,
        notifier=notifier,
        webhook_url=body.webhook_url,
    )
    return result.to_dict()


@router.get("/test")
async def test_connection(provider: Provider):
    return {"ok": await provider.test_connection()}
