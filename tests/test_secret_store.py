import stat

import pytest

from confighub.vault.store import MetadataIndex, SecretStore


def test_keychain_tier_preferred(tmp_path, keychain, keyring_backend):
    store = SecretStore(tmp_path / "sensitive", keychain=keychain)

    assert store.set_secret("abc123", "forge:payload") == "keychain"
    assert keyring_backend.entries[("config-hub", "abc123")] == "forge:payload"
    assert not (tmp_path / "sensitive" / "abc123.enc").exists()


def test_locked_keychain_falls_back_to_private_file(tmp_path, keychain, keyring_backend):
    keyring_backend.locked = True
    store = SecretStore(tmp_path / "sensitive", keychain=keychain)

    assert store.set_secret("abc123", "forge:payload") == "file"

    path = tmp_path / "sensitive" / "abc123.enc"
    assert path.read_text() == "forge:payload"
    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert stat.S_IMODE(path.parent.stat().st_mode) == 0o700
    assert store.get_secret("abc123") == "forge:payload"


def test_read_checks_keychain_before_file(tmp_path, keychain, keyring_backend):
    store = SecretStore(tmp_path / "sensitive", keychain=keychain)
    (tmp_path / "sensitive").mkdir()
    (tmp_path / "sensitive" / "abc123.enc").write_text("forge:from-file")

    assert store.get_secret("abc123") == "forge:from-file"

    keyring_backend.entries[("config-hub", "abc123")] = "forge:from-keychain"
    assert store.get_secret("abc123") == "forge:from-keychain"


def test_keychain_write_clears_stale_file_copy(tmp_path, keychain, keyring_backend):
    store = SecretStore(tmp_path / "sensitive", keychain=keychain)
    keyring_backend.locked = True
    store.set_secret("abc123", "forge:old")

    keyring_backend.locked = False
    store.set_secret("abc123", "forge:new")

    assert not (tmp_path / "sensitive" / "abc123.enc").exists()
    assert store.get_secret("abc123") == "forge:new"


def test_delete_clears_both_tiers(tmp_path, keychain, keyring_backend):
    store = SecretStore(tmp_path / "sensitive", keychain=keychain)
    (tmp_path / "sensitive").mkdir()
    (tmp_path / "sensitive" / "abc123.enc").write_text("forge:file")
    keyring_backend.entries[("config-hub", "abc123")] = "forge:keychain"

    assert store.delete_secret("abc123") is True
    assert store.get_secret("abc123") is None
    # Deleting again is harmless
    assert store.delete_secret("abc123") is False


def test_store_without_keychain_uses_files(tmp_path):
    store = SecretStore(tmp_path / "sensitive")
    assert store.set_secret("abc123", "forge:x") == "file"
    assert store.get_secret("abc123") == "forge:x"


@pytest.mark.parametrize("secret_id", ["../escape", "a/b", "", "id with spaces"])
def test_unsafe_ids_rejected(tmp_path, secret_id):
    store = SecretStore(tmp_path / "sensitive")
    with pytest.raises(ValueError):
        store.set_secret(secret_id, "forge:x")


def test_access_check_uses_file_tier_when_keychain_locked(tmp_path, keychain, keyring_backend):
    keyring_backend.locked = True
    store = SecretStore(tmp_path / "sensitive", keychain=keychain)

    assert store.test_access() is True
    assert list((tmp_path / "sensitive").iterdir()) == []


def test_access_check_leaves_no_keychain_entry(tmp_path, keychain, keyring_backend):
    store = SecretStore(tmp_path / "sensitive", keychain=keychain)
    assert store.test_access() is True
    assert keyring_backend.entries == {}


def test_metadata_index_round_trip(tmp_path):
    index = MetadataIndex(tmp_path / "credentials-metadata.json")
    assert index.load() == {}

    index.save({"abc": {"type": "git", "name": "cfg"}})

    assert index.load() == {"abc": {"type": "git", "name": "cfg"}}
    assert stat.S_IMODE(index.metadata_file.stat().st_mode) == 0o600


def test_corrupt_metadata_index_reads_as_empty(tmp_path):
    path = tmp_path / "credentials-metadata.json"
    path.write_text("{not json")
    assert MetadataIndex(path).load() == {}
