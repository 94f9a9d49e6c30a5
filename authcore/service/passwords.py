from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from authcore.config import Settings


class MismatchError(Exception):
    """The presented secret does not match the stored hash."""


class CorruptHashError(Exception):
    """The stored hash is malformed or was not produced by argon2id."""


class PasswordHasher:
    """argon2id hashing with its CPU cost kept off the event loop.

    The synchronous ``hash``/``verify`` pair is the primitive; the ``*_async``
    variants run it on a small dedicated executor so one slow hash cannot
    starve unrelated requests sharing the default thread pool.
    """

    algorithm = "argon2id"

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 64 * 1024,
        parallelism: int = 4,
        workers: int = 4,
    ) -> None:
        self._hasher = _Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        self._workers = workers
        self._executor: Optional[ThreadPoolExecutor] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordHasher":
        return cls(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
            workers=settings.password_hash_workers,
        )

    def hash(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def verify(self, password_hash: str, secret: str) -> bool:
        """Return True or raise ``MismatchError`` / ``CorruptHashError``."""
        if not password_hash or not password_hash.startswith(f"${self.algorithm}$"):
            raise CorruptHashError("stored hash is not an argon2id digest")
        try:
            return self._hasher.verify(password_hash, secret)
        except VerifyMismatchError as exc:
            raise MismatchError("password does not match") from exc
        except (InvalidHashError, VerificationError) as exc:
            raise CorruptHashError(str(exc)) from exc

    def _pool(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self._workers, thread_name_prefix="password-hash"
            )
        return self._executor

    async def hash_async(self, secret: str) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._pool(), self.hash, secret)

    async def verify_async(self, password_hash: str, secret: str) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._pool(), self.verify, password_hash, secret)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
