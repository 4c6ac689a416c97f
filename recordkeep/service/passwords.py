from __future__ import annotations

from typing import Optional, Protocol

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from recordkeep.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher(Protocol):
    def hash(self, plaintext: str) -> str: ...

    def check(self, plaintext: str, digest: Optional[str]) -> bool: ...

    def needs_rehash(self, digest: str) -> bool: ...


class Argon2PasswordHasher:
    """argon2id hashing; digests embed their own salt and parameters."""

    def __init__(self, **params) -> None:
        self._pwd_hasher = _Argon2Hasher(type=Type.ID, **params)

    def hash(self, plaintext: str) -> str:
        return self._pwd_hasher.hash(plaintext)

    def check(self, plaintext: str, digest: Optional[str]) -> bool:
        if not digest:
            return False
        try:
            return self._pwd_hasher.verify(digest, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.warning("password_digest_unusable", error=str(exc))
            return False

    def needs_rehash(self, digest: str) -> bool:
        return self._pwd_hasher.check_needs_rehash(digest)


__all__ = ["Argon2PasswordHasher", "PasswordHasher"]
