"""
Cross-platform keychain access for encrypted credential payloads.

Supports:
- macOS: Keychain
- Windows: Credential Locker
- Linux: Secret Service (GNOME Keyring / KWallet)
"""

from __future__ import annotations
import logging
from typing import Optional

import keyring
from keyring.errors import PasswordDeleteError

logger = logging.getLogger(__name__)


class KeychainIntegration:
    """
    System keychain entries under one service name.

    Every call is best-effort: failures are logged and reported through the
    return value so callers can fall back to the file tier.
    """

    def __init__(self, service_name: str, backend=None):
        self.service_name = service_name
        self._backend = backend

    @property
    def backend(self):
        if self._backend is None:
            self._backend = keyring.get_keyring()
        return self._backend

    def is_available(self) -> bool:
        """Check if system keychain is available and functional."""
        try:
            backend_name = type(self.backend).__name__
        except Exception as e:
            logger.debug(f"Keyring backend lookup failed: {e}")
            return False
        # keyring's fail/null backends accept no writes
        if "Fail" in backend_name or "Null" in backend_name:
            logger.debug(f"Keyring backend not usable: {backend_name}")
            return False
        return True

    def get(self, account: str) -> Optional[str]:
        if not self.is_available():
            return None
        try:
            return self.backend.get_password(self.service_name, account)
        except Exception as e:
            logger.debug(f"Failed to read {account} from keychain: {e}")
            return None

    def set(self, account: str, value: str) -> bool:
        if not self.is_available():
            return False
        try:
            self.backend.set_password(self.service_name, account, value)
            return True
        except Exception as e:
            logger.warning(f"Failed to store {account} in keychain: {e}")
            return False

    def delete(self, account: str) -> bool:
        """
        Remove an entry.

        Returns:
            True if removed (or wasn't present)
        """
        if not self.is_available():
            return False
        try:
            self.backend.delete_password(self.service_name, account)
            return True
        except PasswordDeleteError:
            return True
        except Exception as e:
            logger.warning(f"Failed to remove {account} from keychain: {e}")
            return False
