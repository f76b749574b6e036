"""
Git providers - one interface over Bitbucket Server and Bitbucket Cloud.
"""

from .base import GitProvider
from .bitbucket_cloud import BitbucketCloudProvider
from .bitbucket_server import BitbucketServerProvider
from .registry import create_provider, detect_provider_type
from .workflow import ProposalResult, propose_change

__all__ = [
    "GitProvider",
    "BitbucketServerProvider",
    "BitbucketCloudProvider",
    "create_provider",
    "detect_provider_type",
    "propose_change",
    "ProposalResult",
]
