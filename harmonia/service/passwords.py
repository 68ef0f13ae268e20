from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import (
    HashingError as Argon2HashingError,
    InvalidHashError,
    VerificationError,
    VerifyMismatchError,
)

from harmonia.config import Settings
from harmonia.logging import get_logger
from harmonia.service.errors import HashingError, InvalidCredentialFormatError

logger = get_logger(__name__)


class CredentialVerifier:
    """Salted argon2id hashing and verification of account passwords."""

    algorithm = "argon2id"

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self._hasher = hasher or PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialVerifier":
        return cls(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
        )

    def hash(self, plaintext: str) -> str:
        try:
            return self._hasher.hash(plaintext)
        except Argon2HashingError as exc:
            logger.error("password_hash_failed", error=str(exc))
            raise HashingError("password hashing failed") from exc

    def verify(self, plaintext: str, stored_hash: str) -> bool:
        """Check ``plaintext`` against ``stored_hash``.

        Returns False on mismatch; raises ``InvalidCredentialFormatError`` only
        when the stored hash itself cannot be parsed.
        """
        try:
            return self._hasher.verify(stored_hash, plaintext)
        except VerifyMismatchError:
            return False
        except InvalidHashError as exc:
            logger.error("password_hash_malformed")
            raise InvalidCredentialFormatError("stored password hash is malformed") from exc
        except VerificationError as exc:
            logger.warning("password_verification_error", error=str(exc))
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHashError:
            return True
