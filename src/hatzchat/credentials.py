"""API key storage behind a minimal save/load/delete interface."""

from __future__ import annotations

import logging
from typing import Protocol

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from .config import KEYRING_ACCOUNT, KEYRING_SERVICE

logger = logging.getLogger(__name__)


class CredentialStore(Protocol):
    def save(self, secret: str) -> None: ...

    def load(self) -> str | None: ...

    def delete(self) -> None: ...


class KeyringCredentialStore:
    """Keeps the API key in the platform keychain via ``keyring``."""

    def __init__(self, service: str = KEYRING_SERVICE, account: str = KEYRING_ACCOUNT):
        self.service = service
        self.account = account

    def save(self, secret: str):
        keyring.set_password(self.service, self.account, secret)

    def load(self) -> str | None:
        try:
            return keyring.get_password(self.service, self.account)
        except KeyringError:
            logger.warning("Keyring unavailable, no API key loaded", exc_info=True)
            return None

    def delete(self):
        try:
            keyring.delete_password(self.service, self.account)
        except PasswordDeleteError:
            pass


class MemoryCredentialStore:
    """Process-local store for tests and headless runs."""

    def __init__(self, secret: str | None = None):
        self._secret = secret

    def save(self, secret: str):
        self._secret = secret

    def load(self) -> str | None:
        return self._secret

    def delete(self):
        self._secret = None
