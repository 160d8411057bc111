"""Tests for one-time codes: email verification and password reset."""

import asyncio
import hashlib
import time
import uuid

import pytest

from authkeep.core.otp import EmailVerifyOtp, PasswordResetOtp
from authkeep.errors import NotFound
from conftest import requires_fake_redis

pytestmark = pytest.mark.asyncio


class TestPasswordResetOtp:
    async def test_round_trip_then_not_found(self, redis):
        otp = PasswordResetOtp(redis, should_hash=False)
        code = otp.generate()
        await otp.store(code, "alice@example.com")

        assert await otp.consume(code) == "alice@example.com"
        with pytest.raises(NotFound) as exc:
            await otp.consume(code)
        assert exc.value.code == "otp_not_found"

    async def test_unknown_code_not_found(self, redis):
        otp = PasswordResetOtp(redis, should_hash=False)
        with pytest.raises(NotFound):
            await otp.consume("NEVERISSUED")

    async def test_code_is_base32_of_120_bits(self, redis):
        code = PasswordResetOtp(redis, should_hash=False).generate()
        assert len(code) == 24
        assert set(code) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZ234567")

    async def test_stored_with_ttl(self, redis):
        otp = PasswordResetOtp(redis, should_hash=False, ttl=3600)
        code = otp.generate()
        await otp.store(code, "alice@example.com")

        assert 0 < await redis.ttl(f"reset:{code}") <= 3600

    @requires_fake_redis
    async def test_consumed_after_ttl_is_not_found(self, redis, monkeypatch):
        otp = PasswordResetOtp(redis, should_hash=False, ttl=3600)
        code = otp.generate()
        await otp.store(code, "alice@example.com")

        later = time.time() + 61 * 60
        monkeypatch.setattr(time, "time", lambda: later)

        with pytest.raises(NotFound):
            await otp.consume(code)

    async def test_concurrent_consumers_only_one_wins(self, redis):
        otp = PasswordResetOtp(redis, should_hash=False)
        code = otp.generate()
        await otp.store(code, "alice@example.com")

        results = await asyncio.gather(
            *(otp.consume(code) for _ in range(5)), return_exceptions=True,
        )

        assert results.count("alice@example.com") == 1
        assert sum(isinstance(r, NotFound) for r in results) == 4

    async def test_hashed_key_does_not_contain_code(self, redis):
        otp = PasswordResetOtp(redis, should_hash=True)
        code = otp.generate()
        await otp.store(code, "alice@example.com")

        assert await redis.get(f"reset:{code}") is None
        digest = hashlib.sha256(code.encode()).hexdigest()
        assert await redis.get(f"reset:{digest}") == "alice@example.com"
        assert await otp.consume(code) == "alice@example.com"


class TestEmailVerifyOtp:
    async def test_code_shape(self, redis):
        code = EmailVerifyOtp(redis, uuid.uuid4(), should_hash=False).generate()
        assert len(code) == 8
        assert code.isalnum() and code.upper() == code

    async def test_round_trip_is_scoped_to_user(self, redis):
        owner, other = uuid.uuid4(), uuid.uuid4()
        otp = EmailVerifyOtp(redis, owner, should_hash=False)
        code = otp.generate()
        await otp.store(code, "alice@example.com")

        with pytest.raises(NotFound):
            await EmailVerifyOtp(redis, other, should_hash=False).consume(code)
        assert await otp.consume(code) == "alice@example.com"

    async def test_list_outstanding_and_discard(self, redis):
        otp = EmailVerifyOtp(redis, uuid.uuid4(), should_hash=False)
        first, second = otp.generate(), otp.generate()
        await otp.store(first, "a@example.com")
        await otp.store(second, "b@example.com")

        assert await otp.list_outstanding("a@example.com") == [first]
        assert await otp.discard("a@example.com") == 1
        assert await otp.list_outstanding("a@example.com") == []
        assert await otp.list_outstanding("b@example.com") == [second]

    async def test_discard_without_codes(self, redis):
        otp = EmailVerifyOtp(redis, uuid.uuid4(), should_hash=True)
        assert await otp.discard("nobody@example.com") == 0
