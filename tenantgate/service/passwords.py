from __future__ import annotations

from typing import Optional, Protocol

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tenantgate.logging import get_logger
from tenantgate.service.errors import BadRequestError

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8


class PasswordHasher(Protocol):
    algorithm: str

    def hash(self, plain: str) -> str: ...

    def verify(self, hashed: Optional[str], plain: str) -> bool: ...

    def burn(self, plain: str) -> None: ...


class Argon2PasswordHasher:
    """argon2id one-way transform for stored passwords."""

    algorithm = "argon2id"

    def __init__(self) -> None:
        self._hasher = _Argon2Hasher(type=Type.ID)
        # Verified against when the account is unknown so login timing is uniform
        self._dummy_hash = self._hasher.hash("tenantgate-timing-equalizer")

    def hash(self, plain: str) -> str:
        return self._hasher.hash(plain)

    def verify(self, hashed: Optional[str], plain: str) -> bool:
        if not hashed:
            return False
        try:
            return self._hasher.verify(hashed, plain)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def burn(self, plain: str) -> None:
        """Spend the same effort as a real verify, for unknown accounts."""
        self.verify(self._dummy_hash, plain)


def validate_password(password: Optional[str]) -> str:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise BadRequestError(
            f"password must be at least {MIN_PASSWORD_LENGTH} characters",
            detail={"field": "password"},
        )
    return password
