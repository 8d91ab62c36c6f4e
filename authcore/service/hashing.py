from __future__ import annotations

import hashlib
import secrets

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authcore.logging import get_logger

logger = get_logger(__name__)


def hash_refresh_token(token: str) -> str:
    """Deterministic digest used as the session lookup key.

    Refresh tokens carry their own entropy so a plain SHA-256 is enough to keep
    the raw value out of storage while still allowing an indexed lookup.
    """
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class SecretHasher:
    """argon2id hashing for passwords and one-time codes."""

    algo = "argon2id"

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash: str | None = None

    def hash(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def verify(self, stored_hash: str | None, secret: str) -> bool:
        if not stored_hash:
            return False
        try:
            return self._hasher.verify(stored_hash, secret)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("secret_hash_unverifiable", algo=self.algo)
            return False

    def verify_missing(self, secret: str) -> bool:
        """Pay one verification against a throwaway hash; always False.

        Login calls this when there is no stored password so unknown
        accounts cost the same as a wrong password.
        """
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))
        self.verify(self._dummy_hash, secret)
        return False
