"""
Tagged string encryption for credential payloads.

Ciphertexts carry a scheme prefix so they stay decryptable whichever cipher
is active when they are read back:

    safe:<base64>               OS-protected key (system keychain) via Fernet
    forge:<base64(iv + ct)>     AES-256-CBC keyed by the local master key file
    crypto:<key>:<iv>:<ct>      legacy self-keyed AES-256-CBC, hex encoded (read-only)
"""

from __future__ import annotations
import base64
import binascii
import logging
import os
import secrets
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from confighub.core.exceptions import DecryptionFailedError, InvalidFormatError
from confighub.vault.keychain import KeychainIntegration

logger = logging.getLogger(__name__)

SAFE_PREFIX = "safe:"
FORGE_PREFIX = "forge:"
LEGACY_PREFIX = "crypto:"

_IV_LENGTH = 16
_KEY_LENGTH = 32


class OSEncryptor(ABC):
    """String encryptor backed by a secret the operating system protects."""

    @abstractmethod
    def is_available(self) -> bool:
        ...

    @abstractmethod
    def encrypt_string(self, plaintext: str) -> bytes:
        ...

    @abstractmethod
    def decrypt_string(self, data: bytes) -> str:
        ...


class KeychainEncryptor(OSEncryptor):
    """Fernet encryption with its key held in the system keychain."""

    ACCOUNT_NAME = "os-encryption-key"

    def __init__(self, keychain: KeychainIntegration):
        self._keychain = keychain
        self._fernet: Optional[Fernet] = None

    def _load(self) -> Optional[Fernet]:
        if self._fernet is not None:
            return self._fernet
        if not self._keychain.is_available():
            return None

        key = self._keychain.get(self.ACCOUNT_NAME)
        if not key:
            key = Fernet.generate_key().decode()
            if not self._keychain.set(self.ACCOUNT_NAME, key):
                return None
            logger.info("Generated OS encryption key in system keychain")

        self._fernet = Fernet(key.encode())
        return self._fernet

    def is_available(self) -> bool:
        return self._load() is not None

    def encrypt_string(self, plaintext: str) -> bytes:
        fernet = self._load()
        if fernet is None:
            raise RuntimeError("System keychain not available")
        return fernet.encrypt(plaintext.encode())

    def decrypt_string(self, data: bytes) -> str:
        fernet = self._load()
        if fernet is None:
            raise DecryptionFailedError("System keychain not available to decrypt OS-protected payload")
        try:
            return fernet.decrypt(data).decode()
        except InvalidToken:
            raise DecryptionFailedError("OS-protected payload failed authentication")


class CipherBackend:
    """
    Encrypts with the OS encryptor when it works, else with AES keyed by a
    master key persisted once under the application directory.

    Args:
        master_key_file: Where the fallback key lives (created 0600 on first use)
        os_encryptor: Optional OS-protected encryptor tried first
        keychain: Optional keychain the master key is mirrored to
    """

    MASTER_KEY_ACCOUNT = "master-key"

    def __init__(
        self,
        master_key_file: Path,
        os_encryptor: Optional[OSEncryptor] = None,
        keychain: Optional[KeychainIntegration] = None,
    ):
        self.master_key_file = master_key_file
        self._os_encryptor = os_encryptor
        self._keychain = keychain
        self._master_key: Optional[bytes] = None

    # ── master key ───────────────────────────────────────────────────────────

    def _get_master_key(self) -> bytes:
        if self._master_key is not None:
            return self._master_key

        if self.master_key_file.exists():
            encoded = self.master_key_file.read_text().strip()
            self._master_key = base64.b64decode(encoded)
        else:
            self._master_key = secrets.token_bytes(_KEY_LENGTH)
            encoded = base64.b64encode(self._master_key).decode()
            self._write_master_key(encoded)
            logger.info(f"Generated master key at {self.master_key_file}")

        self._mirror_master_key(encoded)
        return self._master_key

    def _write_master_key(self, encoded: str) -> None:
        self.master_key_file.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd = os.open(self.master_key_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as fh:
            fh.write(encoded)

    def _mirror_master_key(self, encoded: str) -> None:
        """Secondary copy in the keychain. Result is logged, never raised."""
        if self._keychain is None:
            return
        if self._keychain.set(self.MASTER_KEY_ACCOUNT, encoded):
            logger.debug("Master key mirrored to system keychain")
        else:
            logger.debug("Master key not mirrored; keychain unavailable")

    # ── encrypt / decrypt ────────────────────────────────────────────────────

    def encrypt(self, plaintext: str) -> str:
        if self._os_encryptor is not None:
            try:
                if self._os_encryptor.is_available():
                    data = self._os_encryptor.encrypt_string(plaintext)
                    return SAFE_PREFIX + base64.b64encode(data).decode()
            except Exception as e:
                logger.warning(f"OS encryption failed, using local cipher: {e}")

        key = self._get_master_key()
        iv = secrets.token_bytes(_IV_LENGTH)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext.encode()) + padder.finalize()
        encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return FORGE_PREFIX + base64.b64encode(iv + ciphertext).decode()

    def decrypt(self, tagged: str) -> str:
        # Dispatch on the payload's own prefix, not on what encrypt() would pick today.
        if tagged.startswith(SAFE_PREFIX):
            return self._decrypt_safe(tagged[len(SAFE_PREFIX):])
        if tagged.startswith(FORGE_PREFIX):
            return self._decrypt_forge(tagged[len(FORGE_PREFIX):])
        if tagged.startswith(LEGACY_PREFIX):
            return self._decrypt_legacy(tagged[len(LEGACY_PREFIX):])
        raise InvalidFormatError()

    def _decrypt_safe(self, body: str) -> str:
        if self._os_encryptor is None:
            raise DecryptionFailedError("No OS encryptor configured for OS-protected payload")
        try:
            data = base64.b64decode(body, validate=True)
        except binascii.Error:
            raise InvalidFormatError()
        return self._os_encryptor.decrypt_string(data)

    def _decrypt_forge(self, body: str) -> str:
        try:
            combined = base64.b64decode(body, validate=True)
        except binascii.Error:
            raise InvalidFormatError()
        if len(combined) < _IV_LENGTH + 16:
            raise InvalidFormatError()
        iv, ciphertext = combined[:_IV_LENGTH], combined[_IV_LENGTH:]
        return _aes_cbc_decrypt(self._get_master_key(), iv, ciphertext)

    def _decrypt_legacy(self, body: str) -> str:
        parts = body.split(":")
        if len(parts) != 3:
            raise InvalidFormatError()
        try:
            key, iv, ciphertext = (bytes.fromhex(p) for p in parts)
        except ValueError:
            raise InvalidFormatError()
        if len(key) != _KEY_LENGTH or len(iv) != _IV_LENGTH:
            raise InvalidFormatError()
        return _aes_cbc_decrypt(key, iv, ciphertext)


def _aes_cbc_decrypt(key: bytes, iv: bytes, ciphertext: bytes) -> str:
    try:
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        return (unpadder.update(padded) + unpadder.finalize()).decode()
    except ValueError as e:
        # Bad padding, ragged block length or non-UTF-8 output: wrong key or corrupted data.
        raise DecryptionFailedError(f"Failed to decrypt payload: {e}")
