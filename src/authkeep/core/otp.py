"""One-time codes for email verification and password reset.

Each code is stored as ``<namespace><key>`` -> target email with a TTL, where
the key is either the raw code or its SHA-256 digest (production), so read
access to Redis does not reveal usable codes.
"""

from __future__ import annotations

import abc
import base64
import hashlib
import logging
import secrets
import string
import uuid

from redis.asyncio import Redis

from authkeep.errors import NotFound
from authkeep.kv import store_errors

logger = logging.getLogger("authkeep.otp")

EMAIL_CODE_ALPHABET = string.ascii_uppercase + string.digits
EMAIL_CODE_LENGTH = 8
RESET_CODE_BYTES = 15


class OtpManager(abc.ABC):
    """Generate, store and consume one-time codes in one key namespace.

    Args:
        redis: Client created with ``decode_responses=True``.
        should_hash: Store the SHA-256 of the code instead of the code.
        ttl: Validity of a stored code in seconds.
    """

    def __init__(self, redis: Redis, *, should_hash: bool, ttl: int) -> None:
        self._redis = redis
        self.should_hash = should_hash
        self.ttl = ttl

    @property
    @abc.abstractmethod
    def namespace(self) -> str:
        """Key prefix, including the trailing separator."""

    @abc.abstractmethod
    def generate(self) -> str: ...

    def key_for(self, code: str) -> str:
        if self.should_hash:
            code = hashlib.sha256(code.encode()).hexdigest()
        return f"{self.namespace}{code}"

    async def store(self, code: str, target: str) -> None:
        with store_errors("otp store"):
            await self._redis.set(self.key_for(code), target, ex=self.ttl)

    async def consume(self, code: str) -> str:
        """Return the stored target and delete the code in one transaction.

        Of two concurrent consumers of the same code exactly one gets the value.

        Raises:
            NotFound: The code never existed, was used, or expired.
        """
        key = self.key_for(code)
        with store_errors("otp consume"):
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.get(key)
                pipe.delete(key)
                value, _ = await pipe.execute()
        if value is None:
            raise NotFound("Invalid or expired code", code="otp_not_found")
        return value


class EmailVerifyOtp(OtpManager):
    """Eight-character codes proving control of an email address. Per-user keys."""

    def __init__(
        self, redis: Redis, user_id: uuid.UUID, *, should_hash: bool, ttl: int = 86400,
    ) -> None:
        super().__init__(redis, should_hash=should_hash, ttl=ttl)
        self.user_id = user_id

    @property
    def namespace(self) -> str:
        return f"user:{self.user_id}:email:"

    def generate(self) -> str:
        return "".join(secrets.choice(EMAIL_CODE_ALPHABET) for _ in range(EMAIL_CODE_LENGTH))

    async def _keys_for_target(self, target: str) -> list[str]:
        with store_errors("otp scan"):
            keys = [key async for key in self._redis.scan_iter(match=f"{self.namespace}*")]
            if not keys:
                return []
            values = await self._redis.mget(keys)
        return [key for key, value in zip(keys, values) if value == target]

    async def list_outstanding(self, target: str) -> list[str]:
        """Stored code identifiers still valid for ``target``.

        With hashing on these are digests, not usable codes.
        """
        prefix = len(self.namespace)
        return [key[prefix:] for key in await self._keys_for_target(target)]

    async def discard(self, target: str) -> int:
        """Delete every outstanding code for ``target``."""
        keys = await self._keys_for_target(target)
        if not keys:
            return 0
        with store_errors("otp discard"):
            return await self._redis.delete(*keys)


class PasswordResetOtp(OtpManager):
    """120-bit base32 codes authorizing a password reset. Global namespace."""

    def __init__(self, redis: Redis, *, should_hash: bool, ttl: int = 3600) -> None:
        super().__init__(redis, should_hash=should_hash, ttl=ttl)

    @property
    def namespace(self) -> str:
        return "reset:"

    def generate(self) -> str:
        return base64.b32encode(secrets.token_bytes(RESET_CODE_BYTES)).decode("ascii")
