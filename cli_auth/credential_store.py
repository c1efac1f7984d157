"""
Token storage in the OS keyring (Keychain, Secret Service, Windows Credential Locker).
One service name, two accounts: the access token and its granted scope string.
No caching: the keyring is the source of truth and another process may log out underneath us.
"""
import logging

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from cli_auth.config import KEYRING_SCOPES_ACCOUNT, KEYRING_SERVICE, KEYRING_TOKEN_ACCOUNT

logger = logging.getLogger(__name__)


class StoreUnavailable(RuntimeError):
    """The platform keyring is missing, locked or refused the operation."""


class CredentialStore:
    """
    put/get/get_scopes/delete over a keyring backend.
    `backend` is anything with keyring's get/set/delete_password API; defaults to the keyring module.
    """

    def __init__(self, backend=None, *, service: str = KEYRING_SERVICE) -> None:
        self._backend = backend if backend is not None else keyring
        self.service = service

    def _get(self, account: str) -> str | None:
        try:
            return self._backend.get_password(self.service, account)
        except KeyringError as e:
            raise StoreUnavailable(f"Cannot read {account} from keyring: {e}") from e

    def _set(self, account: str, value: str) -> None:
        try:
            self._backend.set_password(self.service, account, value)
        except KeyringError as e:
            raise StoreUnavailable(f"Cannot write {account} to keyring: {e}") from e

    def _delete(self, account: str) -> bool:
        """Remove one entry. False when it was not there."""
        try:
            self._backend.delete_password(self.service, account)
        except PasswordDeleteError:
            return False
        except KeyringError as e:
            raise StoreUnavailable(f"Cannot delete {account} from keyring: {e}") from e
        return True

    def put(self, token: str, scopes: str | None = None) -> None:
        """Store (overwrite) the token; scopes replace any previous scope entry."""
        self._set(KEYRING_TOKEN_ACCOUNT, token)
        if scopes:
            self._set(KEYRING_SCOPES_ACCOUNT, scopes)
        else:
            # Stale scopes from an earlier login would misdescribe the new token
            self._delete(KEYRING_SCOPES_ACCOUNT)
        logger.debug("Stored token in keyring service %s", self.service)

    def get(self) -> str | None:
        return self._get(KEYRING_TOKEN_ACCOUNT)

    def get_scopes(self) -> str | None:
        return self._get(KEYRING_SCOPES_ACCOUNT)

    def has_token(self) -> bool:
        return self.get() is not None

    def delete(self) -> bool:
        """
        Remove token and scopes, each attempted independently.
        Nothing to delete is not an error, so this always returns True.
        """
        failures: list[StoreUnavailable] = []
        for account in (KEYRING_TOKEN_ACCOUNT, KEYRING_SCOPES_ACCOUNT):
            try:
                removed = self._delete(account)
            except StoreUnavailable as e:
                failures.append(e)
                continue
            logger.debug("Keyring delete %s: %s", account, "removed" if removed else "not present")
        if failures:
            raise failures[0]
        return True
