"""Password hashing on a bounded worker pool using argon2id."""

import asyncio
import enum
import uuid
from concurrent.futures import ThreadPoolExecutor

import argon2
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError


class VerifyResult(enum.Enum):
    OK = "ok"
    MISMATCH = "mismatch"
    MALFORMED = "malformed"


class PasswordHasher:
    """Async facade over argon2-cffi.

    The KDF is CPU-bound, so every hash and verify runs on a dedicated
    thread pool whose size bounds concurrent KDF executions.

    Args:
        max_workers: Upper bound on concurrent hash/verify calls.
    """

    def __init__(self, max_workers: int = 4) -> None:
        self._hasher = argon2.PasswordHasher(time_cost=2, memory_cost=15000, parallelism=1)
        # Verified against when no user record exists, so an unknown account costs
        # the same KDF run as a wrong password.
        self._dummy_hash = self._hasher.hash(str(uuid.uuid4()))
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="authkeep-kdf",
        )

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    async def hash(self, password: str) -> str:
        """Hash a password into a self-describing ``$argon2id$...`` string."""
        return await self._run(self._hasher.hash, password)

    async def verify(self, stored_hash: str, candidate: str) -> VerifyResult:
        """Verify a candidate password against a stored hash.

        Comparison is constant-time inside argon2-cffi. A malformed stored
        hash still pays for one KDF run before being reported.
        """
        return await self._run(self._verify_sync, stored_hash, candidate)

    async def verify_or_dummy(self, stored_hash: str | None, candidate: str) -> VerifyResult:
        """Verify, falling back to a dummy hash when there is no stored hash.

        With no stored hash the result is always ``MISMATCH``.
        """
        if stored_hash is None:
            await self._run(self._verify_sync, self._dummy_hash, candidate)
            return VerifyResult.MISMATCH
        return await self.verify(stored_hash, candidate)

    async def placeholder_hash(self) -> str:
        """Hash of a random secret, for accounts created without a password."""
        return await self.hash(str(uuid.uuid4()))

    def _verify_sync(self, stored_hash: str, candidate: str) -> VerifyResult:
        try:
            self._hasher.verify(stored_hash, candidate)
            return VerifyResult.OK
        except VerifyMismatchError:
            return VerifyResult.MISMATCH
        except InvalidHashError:
            self._burn(candidate)
            return VerifyResult.MALFORMED
        except VerificationError:
            return VerifyResult.MISMATCH

    def _burn(self, candidate: str) -> None:
        try:
            self._hasher.verify(self._dummy_hash, candidate)
        except VerificationError:
            pass

    def shutdown(self) -> None:
        """Release the worker pool."""
        self._executor.shutdown(wait=True)
