from __future__ import annotations

from typing import Any, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from shield.logging import get_logger

PASSWORD_ALGO = "argon2id"


class CredentialVerifier:
    """argon2id hash/verify contract for stored secrets."""

    algo = PASSWORD_ALGO

    def __init__(
        self, hasher: Optional[PasswordHasher] = None, *, logger: Any = None
    ) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        self.logger = logger or get_logger(__name__)

    def hash(self, plain_secret: str) -> str:
        return self._hasher.hash(plain_secret)

    def verify(
        self, plain_secret: str, stored_hash: str, algo: str = PASSWORD_ALGO
    ) -> bool:
        """Return True only when ``plain_secret`` matches ``stored_hash``.

        A mismatch is a normal result, so this never raises for bad input.
        """
        if algo != self.algo:
            self.logger.warning("password_algo_mismatch", algo=algo)
            return False
        try:
            return self._hasher.verify(stored_hash, plain_secret)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_hash_invalid")
            return False
