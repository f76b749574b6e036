"""
Persistence for credential payloads and their plaintext metadata index.
"""

from __future__ import annotations
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Optional

from confighub.vault.keychain import KeychainIntegration

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]+$")


def _write_private(path: Path, text: str) -> None:
    """Replace ``path`` with ``text``, readable by the owner only."""
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        os.chmod(tmp, 0o600)
        with os.fdopen(fd, "w") as fh:
            fh.write(text)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class SecretStore:
    """
    Tagged ciphertexts keyed by credential id.

    Two tiers: the system keychain, then one ``<id>.enc`` file per credential
    in a 0700 directory. Writes try the keychain and fall back to the file
    without failing; reads check the keychain and then the file.
    """

    def __init__(self, sensitive_dir: Path, keychain: Optional[KeychainIntegration] = None):
        self.sensitive_dir = sensitive_dir
        self._keychain = keychain

    def _path(self, secret_id: str) -> Path:
        if not _SAFE_ID.match(secret_id):
            raise ValueError(f"Invalid secret id: {secret_id!r}")
        return self.sensitive_dir / f"{secret_id}.enc"

    def _ensure_dir(self) -> None:
        self.sensitive_dir.mkdir(mode=0o700, parents=True, exist_ok=True)

    def set_secret(self, secret_id: str, tagged: str) -> str:
        """
        Persist a payload.

        Returns:
            The tier that accepted the write: "keychain" or "file"
        """
        path = self._path(secret_id)
        if self._keychain is not None and self._keychain.set(secret_id, tagged):
            # Drop a stale copy left by an earlier fallback write.
            path.unlink(missing_ok=True)
            return "keychain"

        self._ensure_dir()
        _write_private(path, tagged)
        logger.debug(f"Stored secret {secret_id} in file fallback")
        return "file"

    def get_secret(self, secret_id: str) -> Optional[str]:
        path = self._path(secret_id)
        if self._keychain is not None:
            value = self._keychain.get(secret_id)
            if value:
                return value
        if path.exists():
            return path.read_text()
        return None

    def delete_secret(self, secret_id: str) -> bool:
        """Remove from both tiers. Returns True if a file copy existed."""
        path = self._path(secret_id)
        if self._keychain is not None:
            self._keychain.delete(secret_id)
        existed = path.exists()
        path.unlink(missing_ok=True)
        return existed

    def test_access(self, check_id: str = "config-hub-test") -> bool:
        """Round-trip a sample value through the keychain, else through the file tier."""
        sample = "test-value"
        if self._keychain is not None and self._keychain.set(check_id, sample):
            retrieved = self._keychain.get(check_id)
            self._keychain.delete(check_id)
            if retrieved == sample:
                return True

        try:
            self._ensure_dir()
            path = self._path(check_id)
            _write_private(path, sample)
            retrieved = path.read_text()
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"Secret file tier not writable: {e}")
            return False
        return retrieved == sample


class MetadataIndex:
    """
    Non-secret credential fields as one JSON object keyed by credential id.

    Rewritten wholesale on every mutation; concurrent writers are last-writer-wins.
    """

    def __init__(self, metadata_file: Path):
        self.metadata_file = metadata_file

    def load(self) -> dict[str, dict]:
        if not self.metadata_file.exists():
            return {}
        try:
            data = json.loads(self.metadata_file.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Unreadable credential metadata at {self.metadata_file}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.error(f"Credential metadata at {self.metadata_file} is not an object")
            return {}
        return data

    def save(self, metadata: dict[str, dict]) -> None:
        self.metadata_file.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        _write_private(self.metadata_file, json.dumps(metadata, indent=2))
