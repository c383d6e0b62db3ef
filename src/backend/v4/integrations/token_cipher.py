"""Encryption of stored OAuth secrets.

The scheme is decided when a secret is written and stored next to it
(`ConnectionRecord.secret_scheme`). Reads dispatch on that tag; the content of
the stored string is never inspected to guess whether it is encrypted.
"""

from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from src.backend.v4.models.errors import ConfigurationError

SCHEME_PLAIN = "plain"
SCHEME_FERNET_V1 = "fernet-v1"


def _fernet_key(raw_key: str) -> bytes:
    """Derive a Fernet key from an arbitrary-length configured secret."""

    digest = hashlib.sha256(raw_key.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


class TokenCipher:
    def __init__(self, encryption_key: str | None = None) -> None:
        self._fernet = Fernet(_fernet_key(encryption_key)) if encryption_key else None

    @property
    def write_scheme(self) -> str:
        return SCHEME_FERNET_V1 if self._fernet else SCHEME_PLAIN

    def encrypt(self, value: str | None) -> str | None:
        """Encrypt with the current write scheme (see `write_scheme`)."""

        if value is None:
            return None
        if self._fernet is None:
            return value
        return self._fernet.encrypt(value.encode("utf-8")).decode("ascii")

    def decrypt(self, value: str | None, *, scheme: str) -> str | None:
        if value is None:
            return None
        if scheme == SCHEME_PLAIN:
            return value
        if scheme == SCHEME_FERNET_V1:
            if self._fernet is None:
                raise ConfigurationError(
                    "Stored token is encrypted but XERO_TOKEN_ENCRYPTION_KEY is not set"
                )
            try:
                return self._fernet.decrypt(value.encode("ascii")).decode("utf-8")
            except InvalidToken:
                raise ConfigurationError(
                    "Stored token could not be decrypted with the configured key"
                )
        raise ConfigurationError(f"Unknown secret scheme: {scheme!r}")
