"""
Propose a change: branch from target -> commit -> pull request back to target.

Steps run in order and the first failure stops the sequence. Nothing already
done remotely is undone; WorkflowStepError.state says what exists.
"""
import logging
from dataclasses import dataclass
from typing import Any

from confighub.core.exceptions import AppError, PartialCommitFailureError, WorkflowStepError
from confighub.providers.base import GitProvider
from confighub.providers.notify import WebhookNotifier, pull_request_payload
from confighub.providers.schemas import Author, FileChange, GitBranch, GitCommit, PullRequest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProposalResult:
    branch: GitBranch
    commit: GitCommit
    pull_request: PullRequest
    notified: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "branch": self.branch.model_dump(mode="json", by_alias=True),
            "commit": self.commit.model_dump(mode="json", by_alias=True),
            "pullRequest": self.pull_request.model_dump(mode="json", by_alias=True),
            "notified": self.notified,
        }


async def propose_change(
    provider: GitProvider,
    *,
    target_branch: str,
    new_branch: str,
    changes: list[FileChange],
    message: str,
    author: Author,
    title: str,
    description: str = "",
    reviewers: list[str] | None = None,
    notifier: WebhookNotifier | None = None,
    webhook_url: str | None = None,
) -> ProposalResult:
    state: dict[str, Any] = {"branch": None, "commit": None, "pullRequest": None}

    try:
        branch = await provider.create_branch(new_branch, target_branch)
    except AppError as e:
        raise WorkflowStepError("create_branch", state, e) from e
    state["branch"] = branch.model_dump(mode="json", by_alias=True)

    try:
        commit = await provider.create_commit(new_branch, changes, message, author)
    except AppError as e:
        if isinstance(e, PartialCommitFailureError):
            state["appliedChanges"] = e.applied
        raise WorkflowStepError("create_commit", state, e) from e
    state["commit"] = commit.model_dump(mode="json", by_alias=True)

    try:
        pull_request = await provider.create_pull_request(
            new_branch, target_branch, title, description, reviewers
        )
    except AppError as e:
        raise WorkflowStepError("create_pull_request", state, e) from e

    notified = None
    if webhook_url:
        notifier = notifier or WebhookNotifier()
        payload = pull_request_payload("pull_request_created", pull_request, provider.repository_info)
        notified = await notifier.send(webhook_url, payload)
        if not notified:
            logger.warning(f"Pull request #{pull_request.id} created but notification failed")

    return ProposalResult(branch=branch, commit=commit, pull_request=pull_request, notified=notified)
