"""
Credential vault: typed CRUD over encrypted credential payloads.

Rules:
- Secret fields (token, password, private key, ...) only ever exist inside the
  encrypted payload; the metadata index holds everything else.
- The payload is replaced wholesale on every store, never patched.
- Ids are assigned here. A credential carrying an id is an update of that id.
- A payload that fails to decrypt degrades to a metadata-only credential.
"""
from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from pydantic import ValidationError

from confighub.config import Settings
from confighub.core.exceptions import DecryptionFailedError, NotFoundError
from confighub.vault.cipher import CipherBackend, KeychainEncryptor
from confighub.vault.keychain import KeychainIntegration
from confighub.vault.models import Credential, CredentialType, SearchCriteria, credential_adapter
from confighub.vault.store import MetadataIndex, SecretStore

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def normalize_url(url: str | None) -> str:
    """Compare-form of a URL: trimmed, lowercased, no trailing ``.git`` or ``/``."""
    if not url:
        return ""
    url = url.strip().lower().rstrip("/")
    if url.endswith(".git"):
        url = url[: -len(".git")]
    return url.rstrip("/")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class MigrationResult:
    migrated: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


class CredentialVault:
    def __init__(
        self,
        cipher: CipherBackend,
        secrets: SecretStore,
        index: MetadataIndex,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._cipher = cipher
        self._secrets = secrets
        self._index = index
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialVault":
        keychain = KeychainIntegration(settings.keychain_service)
        cipher = CipherBackend(
            settings.master_key_file,
            os_encryptor=KeychainEncryptor(keychain),
            keychain=keychain,
        )
        return cls(
            cipher=cipher,
            secrets=SecretStore(settings.sensitive_dir, keychain=keychain),
            index=MetadataIndex(settings.metadata_file),
        )

    # ── ids ──────────────────────────────────────────────────────────────────

    def generate_id(self, type: str, identifier: str) -> str:
        """sha256 of ``type-identifier-<ms timestamp>``, first 16 hex chars."""
        existing = self._index.load()
        timestamp = int(self._clock().timestamp() * 1000)
        while True:
            digest = hashlib.sha256(f"{type}-{identifier}-{timestamp}".encode()).hexdigest()[:16]
            if digest not in existing:
                return digest
            timestamp += 1

    # ── CRUD ─────────────────────────────────────────────────────────────────

    async def store(self, credential: Credential) -> Credential:
        """
        Encrypt and persist ``credential``. Returns the stored credential with
        its id and timestamps set. ``updated_at`` is always rewritten.
        """
        now = self._clock()
        metadata = self._index.load()

        if credential.id:
            previous = metadata.get(credential.id)
            if previous is None:
                raise NotFoundError("Credential", credential.id)
            cred_id = credential.id
            prior = self._parse(cred_id, previous)
            created_at = credential.created_at or (prior and prior.created_at) or now
        else:
            cred_id = self.generate_id(credential.type, credential.identifier)
            created_at = credential.created_at or now

        stored = credential.model_copy(
            update={"id": cred_id, "created_at": created_at, "updated_at": now}
        )

        secret_fields = stored.secrets()
        if secret_fields:
            tagged = self._cipher.encrypt(json.dumps(secret_fields))
            tier = self._secrets.set_secret(cred_id, tagged)
            logger.debug(f"Stored secrets for credential {cred_id} ({tier})")
        else:
            self._secrets.delete_secret(cred_id)

        metadata[cred_id] = stored.metadata()
        self._index.save(metadata)
        return stored

    async def update(self, credential: Credential) -> Credential:
        if not credential.id:
            raise NotFoundError("Credential", "<unassigned>")
        return await self.store(credential)

    async def get(self, cred_id: str) -> Credential | None:
        entry = self._index.load().get(cred_id)
        if entry is None:
            return None

        secret_fields: dict[str, str] = {}
        tagged = self._secrets.get_secret(cred_id)
        if tagged:
            try:
                secret_fields = json.loads(self._cipher.decrypt(tagged))
            except (DecryptionFailedError, json.JSONDecodeError) as e:
                logger.warning(f"Could not decrypt secrets for credential {cred_id}: {e}")
                secret_fields = {}

        return self._parse(cred_id, {**entry, **secret_fields})

    async def list(
        self,
        type: CredentialType | str | None = None,
        environment: str | None = None,
    ) -> list[Credential]:
        """Metadata-only credentials, newest ``updated_at`` first."""
        results = []
        for cred_id, entry in self._index.load().items():
            cred = self._parse(cred_id, entry)
            if cred is None:
                continue
            if type is not None and cred.type != CredentialType(type).value:
                continue
            if environment is not None and cred.environment != environment:
                continue
            results.append(cred)

        results.sort(key=lambda c: c.updated_at or _EPOCH, reverse=True)
        return results

    async def find(self, criteria: SearchCriteria) -> list[Credential]:
        candidates = await self.list(criteria.type, criteria.environment)
        url_filters = [
            ("repo_url", normalize_url(criteria.repo_url)),
            ("registry_url", normalize_url(criteria.registry_url)),
            ("server_url", normalize_url(criteria.server_url)),
        ]

        matches = []
        for cred in candidates:
            if not all(
                normalize_url(getattr(cred, attr, None)) == wanted
                for attr, wanted in url_filters
                if wanted
            ):
                continue
            if criteria.tags and not set(criteria.tags) & set(cred.tags):
                continue
            matches.append(cred)
        return matches

    async def delete(self, cred_id: str) -> bool:
        """Remove payload and metadata. Returns False when the id was unknown."""
        metadata = self._index.load()
        if cred_id not in metadata:
            return False
        self._secrets.delete_secret(cred_id)
        del metadata[cred_id]
        self._index.save(metadata)
        return True

    # ── maintenance ──────────────────────────────────────────────────────────

    async def test_access(self) -> bool:
        return self._secrets.test_access()

    async def migrate_keychain(
        self, source: KeychainIntegration, target: KeychainIntegration
    ) -> MigrationResult:
        """
        Copy payloads for every known credential (and the master key) from an
        old keychain service to the current one. Existing entries are kept.
        """
        result = MigrationResult()
        accounts = [*self._index.load().keys(), CipherBackend.MASTER_KEY_ACCOUNT]
        for account in accounts:
            value = source.get(account)
            if value is None:
                continue
            if target.get(account) is not None:
                result.skipped += 1
                continue
            if target.set(account, value):
                result.migrated += 1
            else:
                result.errors.append(f"Failed to migrate {account}")

        logger.info(
            f"Keychain migration complete: {result.migrated} migrated, "
            f"{result.skipped} skipped, {len(result.errors)} errors"
        )
        return result

    def _parse(self, cred_id: str, data: dict) -> Credential | None:
        try:
            return credential_adapter.validate_python(data)
        except ValidationError as e:
            logger.warning(f"Skipping malformed credential metadata {cred_id}: {e}")
            return None
