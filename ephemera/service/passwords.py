from __future__ import annotations

from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from ephemera.logging import get_logger

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class CredentialVerifier:
    """Slow salted password hashing with a fixed work factor.

    ``verify`` never raises: a wrong password, an empty hash and a hash that
    cannot be parsed all come back as ``False``.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 64 * 1024,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    @property
    def algo(self) -> str:
        return PASSWORD_ALGO

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def hash_with_algo(self, plaintext: str) -> Tuple[str, str]:
        return self.hash(plaintext), PASSWORD_ALGO

    def verify(self, plaintext: str, stored_hash: Optional[str]) -> bool:
        if not stored_hash:
            return False
        try:
            return self._hasher.verify(stored_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    def verify_record(
        self, plaintext: str, record: Optional[Tuple[str, str]]
    ) -> bool:
        """Check a ``(hash, algo)`` pair as stored next to the user."""
        if not record:
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", algo=algo)
            return False
        return self.verify(plaintext, stored_hash)
