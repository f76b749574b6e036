"""
Credential vault - encrypted-at-rest storage for Git, Helm, ArgoCD and Vault credentials.
"""

from .cipher import CipherBackend, KeychainEncryptor, OSEncryptor
from .keychain import KeychainIntegration
from .models import (
    ArgoCDCredential,
    Credential,
    CredentialType,
    GitCredential,
    HelmCredential,
    SearchCriteria,
    VaultCredential,
)
from .service import CredentialVault
from .store import MetadataIndex, SecretStore

__all__ = [
    # Models
    "Credential",
    "CredentialType",
    "GitCredential",
    "HelmCredential",
    "ArgoCDCredential",
    "VaultCredential",
    "SearchCriteria",
    # Storage
    "CipherBackend",
    "OSEncryptor",
    "KeychainEncryptor",
    "KeychainIntegration",
    "SecretStore",
    "MetadataIndex",
    # Facade
    "CredentialVault",
]
