"""Tests for one-time verification codes."""

import asyncio
import json

import pytest

from harmonia.service.otp import OtpService


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def otp(kv, clock):
    return OtpService(kv, ttl_seconds=120, digits=6, clock=clock)


class TestGenerate:
    async def test_code_is_six_digits(self, otp):
        code = await otp.generate("alice@example.com")
        assert len(code) == 6
        assert code.isdigit()

    async def test_record_stored_with_expiry(self, otp, kv, clock):
        code = await otp.generate("Alice@Example.com")
        record = json.loads(await kv.get("auth:verification_code:alice@example.com"))
        assert record["code"] == code
        assert record["expires_at"] == clock.now + 120

    async def test_new_code_invalidates_previous(self, otp):
        first = await otp.generate("alice@example.com")
        second = await otp.generate("alice@example.com")
        if first != second:
            assert await otp.verify("alice@example.com", first) is False
        assert await otp.verify("alice@example.com", second) is True

    def test_too_few_digits_rejected(self, kv):
        with pytest.raises(ValueError):
            OtpService(kv, digits=3)


class TestVerify:
    async def test_code_accepted_exactly_once(self, otp):
        code = await otp.generate("alice@example.com")
        assert await otp.verify("alice@example.com", code) is True
        assert await otp.verify("alice@example.com", code) is False

    async def test_wrong_code_keeps_record(self, otp):
        code = await otp.generate("alice@example.com")
        wrong = "000000" if code != "000000" else "111111"
        assert await otp.verify("alice@example.com", wrong) is False
        assert await otp.verify("alice@example.com", code) is True

    async def test_expired_code_rejected(self, otp, clock):
        code = await otp.generate("alice@example.com")
        clock.now += 121
        assert await otp.verify("alice@example.com", code) is False

    async def test_missing_record_fails_closed(self, otp):
        assert await otp.verify("nobody@example.com", "123456") is False

    async def test_empty_code_rejected(self, otp):
        await otp.generate("alice@example.com")
        assert await otp.verify("alice@example.com", "") is False
        assert await otp.verify("alice@example.com", None) is False

    async def test_identifier_is_case_insensitive(self, otp):
        code = await otp.generate("alice@example.com")
        assert await otp.verify("ALICE@example.com", code) is True

    async def test_corrupt_record_fails_closed(self, otp, kv):
        await kv.set("auth:verification_code:alice@example.com", "not json", 60)
        assert await otp.verify("alice@example.com", "123456") is False
        code = await otp.generate("alice@example.com")
        assert await otp.verify("alice@example.com", code) is True

    async def test_expired_code_does_not_erase_concurrent_resend(self, otp, kv, clock, monkeypatch):
        stale = await otp.generate("alice@example.com")
        clock.now += 121
        read = kv.get
        fresh = []

        async def read_then_resend(key):
            raw = await read(key)
            # a resend lands after the stale record was read
            fresh.append(await otp.generate("alice@example.com"))
            return raw

        monkeypatch.setattr(kv, "get", read_then_resend)
        assert await otp.verify("alice@example.com", stale) is False
        monkeypatch.setattr(kv, "get", read)
        assert await otp.verify("alice@example.com", fresh[0]) is True

    async def test_concurrent_verifies_accept_once(self, otp):
        code = await otp.generate("alice@example.com")
        results = await asyncio.gather(
            otp.verify("alice@example.com", code),
            otp.verify("alice@example.com", code),
        )
        assert sorted(results) == [False, True]
