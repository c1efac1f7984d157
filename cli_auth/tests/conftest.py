"""
Pytest configuration for cli_auth. In-memory keyring so tests never touch the real OS keychain,
and no GITHUB_TOKEN leaking in from the developer's shell.
"""
import pytest
from keyring.backend import KeyringBackend
from keyring.errors import NoKeyringError, PasswordDeleteError

from cli_auth.credential_store import CredentialStore


class MemoryKeyring(KeyringBackend):
    priority = 1

    def __init__(self):
        super().__init__()
        self.entries: dict[tuple[str, str], str] = {}

    def get_password(self, service, username):
        return self.entries.get((service, username))

    def set_password(self, service, username, password):
        self.entries[(service, username)] = password

    def delete_password(self, service, username):
        try:
            del self.entries[(service, username)]
        except KeyError:
            raise PasswordDeleteError("not found")


@pytest.fixture(autouse=True)
def no_env_token(monkeypatch):
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)


@pytest.fixture
def memory_keyring():
    return MemoryKeyring()


@pytest.fixture
def store(memory_keyring):
    return CredentialStore(backend=memory_keyring)


class BrokenKeyring:
    """Every call fails the way a missing or locked platform keyring does."""

    def get_password(self, service, username):
        raise NoKeyringError("No recommended backend was available")

    def set_password(self, service, username, password):
        raise NoKeyringError("No recommended backend was available")

    def delete_password(self, service, username):
        raise NoKeyringError("No recommended backend was available")


@pytest.fixture
def broken_store():
    return CredentialStore(backend=BrokenKeyring())
