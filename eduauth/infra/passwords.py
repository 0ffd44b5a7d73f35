from __future__ import annotations

import secrets
from functools import lru_cache
from typing import Protocol

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHashError, VerificationError


class PasswordHasher(Protocol):
    def hash(self, raw_password: str) -> str: ...

    def verify(self, password_hash: str, raw_password: str) -> bool: ...

    def needs_rehash(self, password_hash: str) -> bool: ...

    def dummy_hash(self) -> str: ...


@lru_cache(maxsize=8)
def _dummy_hash(time_cost: int, memory_cost: int, parallelism: int, hash_len: int, salt_len: int) -> str:
    hasher = Argon2Hasher(
        time_cost=time_cost,
        memory_cost=memory_cost,
        parallelism=parallelism,
        hash_len=hash_len,
        salt_len=salt_len,
        type=Type.ID,
    )
    return hasher.hash(secrets.token_urlsafe(16))


class Argon2PasswordHasher:
    """argon2id hashing; salts are generated per hash and embedded in the encoded string."""

    def __init__(
        self,
        *,
        time_cost: int | None = None,
        memory_cost: int | None = None,
        parallelism: int | None = None,
    ) -> None:
        options: dict[str, int] = {}
        if time_cost is not None:
            options["time_cost"] = time_cost
        if memory_cost is not None:
            options["memory_cost"] = memory_cost
        if parallelism is not None:
            options["parallelism"] = parallelism
        self._hasher = Argon2Hasher(type=Type.ID, **options)

    def hash(self, raw_password: str) -> str:
        return self._hasher.hash(raw_password)

    def verify(self, password_hash: str, raw_password: str) -> bool:
        try:
            return bool(self._hasher.verify(password_hash, raw_password))
        except (VerificationError, InvalidHashError):
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHashError:
            return True

    def dummy_hash(self) -> str:
        """Process-wide throwaway hash with this hasher's cost parameters."""
        return _dummy_hash(
            self._hasher.time_cost,
            self._hasher.memory_cost,
            self._hasher.parallelism,
            self._hasher.hash_len,
            self._hasher.salt_len,
        )
