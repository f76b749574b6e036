from functools import lru_cache
from typing import Annotated, AsyncIterator

from fastapi import Depends

from confighub.config import settings
from confighub.core.exceptions import NotFoundError
from confighub.providers.base import GitProvider
from confighub.providers.bitbucket_cloud import PendingBranches
from confighub.providers.notify import WebhookNotifier
from confighub.providers.registry import ProviderFactory, create_provider
from confighub.vault.models import GitCredential
from confighub.vault.service import CredentialVault


@lru_cache
def get_vault() -> CredentialVault:
    return CredentialVault.from_settings(settings)


@lru_cache
def get_pending_branches() -> PendingBranches:
    return PendingBranches()


def get_provider_factory() -> ProviderFactory:
    pending = get_pending_branches()
    return lambda credential: create_provider(credential, settings, pending=pending)


def get_notifier() -> WebhookNotifier:
    return WebhookNotifier(timeout=settings.webhook_timeout)


Vault = Annotated[CredentialVault, Depends(get_vault)]


async def get_git_provider(
    credential_id: str,
    vault: Vault,
    factory: Annotated[ProviderFactory, Depends(get_provider_factory)],
) -> AsyncIterator[GitProvider]:
    credential = await vault.get(credential_id)
    if not isinstance(credential, GitCredential):
        raise NotFoundError("Git credential", credential_id)
    provider = factory(credential)
    try:
        yield provider
    finally:
        await provider.close()


Provider = Annotated[GitProvider, Depends(get_git_provider)]
Notifier = Annotated[WebhookNotifier, Depends(get_notifier)]
