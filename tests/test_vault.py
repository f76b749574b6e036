import json
import re

import pytest

from confighub.core.exceptions import NotFoundError
from confighub.vault.keychain import KeychainIntegration
from confighub.vault.models import (
    ArgoCDCredential,
    CredentialType,
    GitCredential,
    HelmCredential,
    SearchCriteria,
    VaultCredential,
)
from confighub.vault.service import normalize_url

from .conftest import InMemoryKeyring

REPO = "https://bitbucket.example.com/scm/PROJ/config.git"


def _git(**overrides) -> GitCredential:
    fields = {"name": "config repo", "repo_url": REPO, "auth_type": "token", "token": "tok-123"}
    fields.update(overrides)
    return GitCredential(**fields)


@pytest.mark.asyncio
async def test_store_then_get_round_trip(vault):
    stored = await vault.store(_git(username="jdoe", environment="dev", tags=["team-a"]))

    assert re.fullmatch(r"[0-9a-f]{16}", stored.id)
    assert stored.created_at == stored.updated_at

    fetched = await vault.get(stored.id)
    assert fetched == stored
    assert fetched.token == "tok-123"


@pytest.mark.asyncio
async def test_secrets_never_reach_metadata_file(vault, tmp_path, keyring_backend):
    stored = await vault.store(_git(token="tok-123", passphrase="pp-456"))

    metadata = (tmp_path / "credentials-metadata.json").read_text()
    assert "tok-123" not in metadata
    assert "pp-456" not in metadata
    assert json.loads(metadata)[stored.id]["repoUrl"] == REPO

    payload = keyring_backend.entries[("config-hub", stored.id)]
    assert payload.startswith("forge:")
    assert "tok-123" not in payload


@pytest.mark.asyncio
async def test_locked_keychain_still_stores(vault, tmp_path, keyring_backend):
    keyring_backend.locked = True

    stored = await vault.store(_git())

    assert (tmp_path / "sensitive" / f"{stored.id}.enc").exists()
    assert (await vault.get(stored.id)).token == "tok-123"


@pytest.mark.asyncio
async def test_update_replaces_payload_and_keeps_created_at(vault, clock):
    stored = await vault.store(_git(username="jdoe"))
    clock.advance(60)

    updated = await vault.update(stored.model_copy(update={"token": "rotated", "username": None}))

    assert updated.id == stored.id
    assert updated.created_at == stored.created_at
    assert updated.updated_at > stored.updated_at
    fetched = await vault.get(stored.id)
    assert fetched.token == "rotated"
    assert fetched.username is None


@pytest.mark.asyncio
async def test_update_unknown_id_raises(vault):
    with pytest.raises(NotFoundError):
        await vault.update(_git(id="0123456789abcdef"))


@pytest.mark.asyncio
async def test_store_without_secrets_clears_old_payload(vault, keyring_backend):
    stored = await vault.store(_git())
    await vault.store(stored.model_copy(update={"token": None}))

    assert ("config-hub", stored.id) not in keyring_backend.entries
    assert (await vault.get(stored.id)).token is None


@pytest.mark.asyncio
async def test_empty_secret_is_kept(vault):
    stored = await vault.store(_git(token=None, username="jdoe", password=""))

    fetched = await vault.get(stored.id)
    assert fetched.password == ""
    assert fetched.token is None


@pytest.mark.asyncio
async def test_ids_unique_for_same_identifier_at_same_instant(vault):
    first = await vault.store(_git())
    second = await vault.store(_git())
    assert first.id != second.id


@pytest.mark.asyncio
async def test_delete_is_idempotent(vault, keyring_backend):
    stored = await vault.store(_git())

    assert await vault.delete(stored.id) is True
    assert await vault.get(stored.id) is None
    assert ("config-hub", stored.id) not in keyring_backend.entries
    assert await vault.delete(stored.id) is False


@pytest.mark.asyncio
async def test_get_unknown_returns_none(vault):
    assert await vault.get("does-not-exist") is None


@pytest.mark.asyncio
async def test_corrupted_payload_degrades_to_metadata(vault, keyring_backend):
    stored = await vault.store(_git(environment="prod"))
    keyring_backend.entries[("config-hub", stored.id)] = "forge:" + "A" * 64

    fetched = await vault.get(stored.id)

    assert fetched is not None
    assert fetched.token is None
    assert fetched.environment == "prod"


@pytest.mark.asyncio
async def test_list_sorted_newest_first_and_filtered(vault, clock):
    git = await vault.store(_git(environment="dev"))
    clock.advance()
    helm = await vault.store(HelmCredential(name="charts", registry_url="https://charts.example.com", password="pw"))
    clock.advance()
    argo = await vault.store(ArgoCDCredential(name="argo", server_url="https://argo.example.com", token="t", environment="dev"))

    assert [c.id for c in await vault.list()] == [argo.id, helm.id, git.id]
    assert [c.id for c in await vault.list(type=CredentialType.HELM)] == [helm.id]
    assert [c.id for c in await vault.list(environment="dev")] == [argo.id, git.id]
    assert all(c.secrets() == {} for c in await vault.list())


@pytest.mark.asyncio
async def test_find_normalizes_urls(vault):
    stored = await vault.store(_git())

    for variant in (
        "https://bitbucket.example.com/scm/PROJ/config",
        "HTTPS://Bitbucket.Example.com/scm/proj/config.git/",
        "  https://bitbucket.example.com/scm/PROJ/config/  ",
    ):
        found = await vault.find(SearchCriteria(repo_url=variant))
        assert [c.id for c in found] == [stored.id]


@pytest.mark.asyncio
async def test_find_skips_credentials_without_the_searched_url(vault):
    await vault.store(VaultCredential(name="vault", server_url="https://vault.example.com", token="t"))
    git = await vault.store(_git())

    found = await vault.find(SearchCriteria(repo_url=REPO))
    assert [c.id for c in found] == [git.id]

    found = await vault.find(SearchCriteria(server_url="https://VAULT.example.com/"))
    assert [c.type for c in found] == ["vault"]


@pytest.mark.asyncio
async def test_find_by_tags_and_type(vault):
    tagged = await vault.store(_git(tags=["platform", "prod"]))
    await vault.store(_git(tags=["sandbox"]))
    await vault.store(HelmCredential(name="charts", registry_url="https://charts.example.com", tags=["prod"]))

    found = await vault.find(SearchCriteria(type=CredentialType.GIT, tags=["prod"]))
    assert [c.id for c in found] == [tagged.id]


@pytest.mark.asyncio
async def test_access_check(vault):
    assert await vault.test_access() is True


@pytest.mark.asyncio
async def test_migrate_keychain_copies_known_accounts(vault, keyring_backend):
    stored = await vault.store(_git())
    other = await vault.store(_git())

    legacy_backend = InMemoryKeyring()
    legacy = KeychainIntegration("electron-devops-app", backend=legacy_backend)
    legacy_backend.entries[("electron-devops-app", stored.id)] = "forge:old-one"
    legacy_backend.entries[("electron-devops-app", "unrelated")] = "ignored"

    target_backend = InMemoryKeyring()
    target = KeychainIntegration("config-hub", backend=target_backend)
    target_backend.entries[("config-hub", other.id)] = "forge:current"
    legacy_backend.entries[("electron-devops-app", other.id)] = "forge:old-two"

    result = await vault.migrate_keychain(legacy, target)

    assert result.migrated == 1
    assert result.skipped == 1
    assert result.errors == []
    assert target_backend.entries[("config-hub", stored.id)] == "forge:old-one"
    assert target_backend.entries[("config-hub", other.id)] == "forge:current"
    assert ("config-hub", "unrelated") not in target_backend.entries


def test_normalize_url():
    assert normalize_url(" https://Host/scm/P/repo.git/ ") == "https://host/scm/p/repo"
    assert normalize_url(None) == ""
