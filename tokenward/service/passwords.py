from __future__ import annotations

from typing import Tuple

from argon2 import PasswordHasher as Argon2Hasher, Type
from argon2.exceptions import InvalidHash, VerificationError

PASSWORD_ALGO = "argon2id"


class PasswordHasher:
    """argon2id password hashing."""

    algo = PASSWORD_ALGO

    def __init__(self) -> None:
        self._hasher = Argon2Hasher(type=Type.ID)

    def hash(self, password: str) -> Tuple[str, str]:
        return self._hasher.hash(password), self.algo

    def verify(self, password_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except (InvalidHash, VerificationError):
            return False
