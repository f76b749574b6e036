"""
Test fixtures: an on-disk vault under tmp_path, an in-memory keyring backend
and a canned-response Git host. No system keychain or network required.
"""
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from keyring.errors import KeyringError, PasswordDeleteError

from confighub.vault.cipher import CipherBackend, OSEncryptor
from confighub.vault.keychain import KeychainIntegration
from confighub.vault.service import CredentialVault
from confighub.vault.store import MetadataIndex, SecretStore


class InMemoryKeyring:
    """keyring backend stand-in; ``locked`` makes every call raise."""

    def __init__(self):
        self.entries: dict[tuple[str, str], str] = {}
        self.locked = False

    def _check(self):
        if self.locked:
            raise KeyringError("keychain is locked")

    def get_password(self, service, account):
        self._check()
        return self.entries.get((service, account))

    def set_password(self, service, account, value):
        self._check()
        self.entries[(service, account)] = value

    def delete_password(self, service, account):
        self._check()
        if (service, account) not in self.entries:
            raise PasswordDeleteError("not found")
        del self.entries[(service, account)]


class ReversingEncryptor(OSEncryptor):
    def __init__(self, available: bool = True):
        self.available = available

    def is_available(self) -> bool:
        return self.available

    def encrypt_string(self, plaintext: str) -> bytes:
        return plaintext[::-1].encode()

    def decrypt_string(self, data: bytes) -> str:
        return data.decode()[::-1]


class SteppingClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def advance(self, seconds: float = 1) -> None:
        self.now += timedelta(seconds=seconds)

    def __call__(self) -> datetime:
        return self.now


class MockRemote:
    """
    Routes ``(method, path)`` to a canned response, a list of responses served
    in order, or a callable taking the request. Every request is recorded.
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], object] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, path: str, response) -> None:
        self.routes[(method, path)] = response

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"errors": [{"message": f"No route for {request.url.path}"}]})
        if isinstance(route, list):
            return route.pop(0)
        if callable(route):
            return route(request)
        return route

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def keyring_backend() -> InMemoryKeyring:
    return InMemoryKeyring()


@pytest.fixture
def keychain(keyring_backend) -> KeychainIntegration:
    return KeychainIntegration("config-hub", backend=keyring_backend)


@pytest.fixture
def clock() -> SteppingClock:
    return SteppingClock()


@pytest.fixture
def vault(tmp_path, keychain, clock) -> CredentialVault:
    cipher = CipherBackend(tmp_path / ".master-key", keychain=keychain)
    return CredentialVault(
        cipher=cipher,
        secrets=SecretStore(tmp_path / "sensitive", keychain=keychain),
        index=MetadataIndex(tmp_path / "credentials-metadata.json"),
        clock=clock,
    )


@pytest.fixture
def remote() -> MockRemote:
    return MockRemote()
