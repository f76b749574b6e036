"""
Webhook delivery for pull request events.

Delivery is best-effort: a failed notification is logged and reported as
``False``, never raised into the Git workflow that triggered it.
"""
import logging
from datetime import datetime, timezone
from typing import Any

import httpx

from confighub.providers.schemas import GitRepositoryInfo, PullRequest

logger = logging.getLogger(__name__)


def pull_request_payload(
    event: str,
    pull_request: PullRequest,
    repository: GitRepositoryInfo,
) -> dict[str, Any]:
    return {
        "type": event,
        "pullRequest": {
            "id": pull_request.id,
            "title": pull_request.title,
            "url": pull_request.url,
            "author": pull_request.author.display_name or pull_request.author.name,
            "sourceBranch": pull_request.source_branch,
            "targetBranch": pull_request.target_branch,
        },
        "repository": {
            "name": repository.repository_slug or "",
            "url": repository.base_url,
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


class WebhookNotifier:
    def __init__(self, timeout: float = 10.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._timeout = timeout
        self._transport = transport

    async def send(self, webhook_url: str, payload: dict[str, Any]) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(webhook_url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Webhook delivery to {webhook_url} failed: {e}")
            return False
        return True
