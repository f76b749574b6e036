"""Provider router.

Picks the backend for a repository URL once, at construction time:
  - bitbucket.org hosts              -> BitbucketCloudProvider
  - self-hosted Bitbucket heuristics -> BitbucketServerProvider
  - anything else                    -> UnsupportedProviderError
"""
import re
from typing import Callable
from urllib.parse import urlsplit

import httpx

from confighub.config import Settings
from confighub.core.exceptions import UnsupportedProviderError
from confighub.providers.base import GitProvider
from confighub.providers.bitbucket_cloud import BitbucketCloudProvider, PendingBranches
from confighub.providers.bitbucket_server import BitbucketServerProvider
from confighub.providers.schemas import GitProviderType
from confighub.vault.models import GitCredential

_DEFAULT_PORTS = {"http": 80, "https": 443, "ssh": 22}
_SCP_HOST = re.compile(r"^[\w.-]+@([\w.-]+):")


def _host_and_port(url: str) -> tuple[str, int | None, str]:
    scp = _SCP_HOST.match(url)
    if scp:
        return scp.group(1).lower(), None, "ssh"
    parts = urlsplit(url)
    try:
        port = parts.port
    except ValueError:
        port = None
    return (parts.hostname or "").lower(), port, parts.scheme


def detect_provider_type(url: str) -> GitProviderType:
    """
    Heuristic classification from URL shape alone.

    Server indicators: localhost, a non-default port, an ``/scm/`` path, or no
    ``.git`` suffix. A ``.git`` URL on a default port without ``/scm/`` is
    ambiguous and comes back as UNKNOWN even when it is a Bitbucket Server.
    """
    url = url.strip()
    host, port, scheme = _host_and_port(url)

    if "bitbucket.org" in host:
        return GitProviderType.BITBUCKET_CLOUD

    non_default_port = port is not None and port != _DEFAULT_PORTS.get(scheme)
    if (
        "localhost" in url
        or non_default_port
        or "/scm/" in url
        or not url.endswith(".git")
    ):
        return GitProviderType.BITBUCKET_SERVER

    return GitProviderType.UNKNOWN


def create_provider(
    credential: GitCredential,
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
    pending: PendingBranches | None = None,
) -> GitProvider:
    """
    Construct the provider for ``credential.repo_url``.

    ``pending`` is the branch announcement store Cloud providers share; pass the
    same instance to every call so create_branch and create_commit can land in
    different requests.
    """
    provider_type = detect_provider_type(credential.repo_url)

    if provider_type == GitProviderType.BITBUCKET_CLOUD:
        return BitbucketCloudProvider(
            credential.repo_url,
            credential,
            api_url=settings.bitbucket_cloud_api_url,
            timeout=settings.request_timeout,
            max_pages=settings.max_pages,
            transport=transport,
            pending=pending,
        )
    if provider_type == GitProviderType.BITBUCKET_SERVER:
        return BitbucketServerProvider(
            credential.repo_url,
            credential,
            allow_self_signed=settings.allow_self_signed,
            timeout=settings.request_timeout,
            max_pages=settings.max_pages,
            transport=transport,
        )
    raise UnsupportedProviderError(credential.repo_url)


ProviderFactory = Callable[[GitCredential], GitProvider]
