"""Tests for refresh-token session records and key derivation."""

import hashlib

import pytest

from harmonia.service.sessions import SessionStore
from harmonia.storage.keys import ItemName, ServiceName, make_key
from harmonia.storage.memory import MemoryKeyValueStore


class TestMakeKey:
    def test_key_layout(self):
        assert make_key(ServiceName.AUTH, ItemName.REFRESH_TOKEN, "abc") == "auth:refresh_token:abc"
        assert (
            make_key(ServiceName.AUTH, ItemName.VERIFICATION_CODE, "a@b.co")
            == "auth:verification_code:a@b.co"
        )

    def test_empty_identifier_rejected(self):
        with pytest.raises(ValueError):
            make_key(ServiceName.AUTH, ItemName.REFRESH_TOKEN, "")

    def test_unknown_namespace_rejected(self):
        with pytest.raises(ValueError):
            make_key("catalog", ItemName.REFRESH_TOKEN, "x")


class TestSessionStore:
    async def test_put_then_get(self, kv):
        sessions = SessionStore(kv)
        await sessions.put("acct1", "token-one", 60)
        assert await sessions.get("acct1", "token-one") == "token-one"

    async def test_key_uses_token_digest(self, kv):
        sessions = SessionStore(kv)
        await sessions.put("acct1", "token-one", 60)
        digest = hashlib.sha256(b"token-one").hexdigest()
        assert await kv.get(f"auth:refresh_token:acct1:{digest}") == "token-one"

    async def test_unknown_token_is_absent(self, kv):
        sessions = SessionStore(kv)
        assert await sessions.get("acct1", "never-written") is None

    async def test_revoke_is_idempotent(self, kv):
        sessions = SessionStore(kv)
        await sessions.put("acct1", "token-one", 60)
        assert await sessions.revoke("acct1", "token-one") is True
        assert await sessions.revoke("acct1", "token-one") is False
        assert await sessions.get("acct1", "token-one") is None

    async def test_sessions_per_device_are_independent(self, kv):
        sessions = SessionStore(kv)
        await sessions.put("acct1", "laptop-token", 60)
        await sessions.put("acct1", "phone-token", 60)
        await sessions.revoke("acct1", "laptop-token")
        assert await sessions.get("acct1", "laptop-token") is None
        assert await sessions.get("acct1", "phone-token") == "phone-token"

    async def test_token_bound_to_account(self, kv):
        sessions = SessionStore(kv)
        await sessions.put("acct1", "token-one", 60)
        assert await sessions.get("acct2", "token-one") is None

    async def test_record_expires_with_ttl(self):
        now = [1000.0]
        kv = MemoryKeyValueStore(clock=lambda: now[0])
        sessions = SessionStore(kv)
        await sessions.put("acct1", "token-one", 30)
        now[0] += 31
        assert await sessions.get("acct1", "token-one") is None

    async def test_default_ttl_used_when_omitted(self):
        now = [0.0]
        kv = MemoryKeyValueStore(clock=lambda: now[0])
        sessions = SessionStore(kv, default_ttl_seconds=100)
        await sessions.put("acct1", "token-one")
        now[0] = 99
        assert await sessions.get("acct1", "token-one") == "token-one"
        now[0] = 101
        assert await sessions.get("acct1", "token-one") is None
