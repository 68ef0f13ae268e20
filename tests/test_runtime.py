import pytest

from harmonia.service.runtime import Runtime, mask_url_password
from harmonia.storage.memory import MemoryAccountStore, MemoryKeyValueStore


@pytest.mark.parametrize(
    "url,expected",
    [
        ("redis://:secret@cache:6379/0", "redis://:***@cache:6379/0"),
        ("postgresql://app:pw@db/harmonia", "postgresql://app:***@db/harmonia"),
        ("redis://localhost:6379/0", "redis://localhost:6379/0"),
        (None, None),
        ("", ""),
    ],
)
def test_mask_url_password(url, expected):
    assert mask_url_password(url) == expected


class TestRuntime:
    def test_memory_backends_selected_from_settings(self, settings, mailer, verifier):
        runtime = Runtime(settings, mailer=mailer, verifier=verifier)
        assert isinstance(runtime.accounts, MemoryAccountStore)
        assert isinstance(runtime.kv, MemoryKeyValueStore)
        assert runtime.sessions.default_ttl_seconds == settings.refresh_token_ttl_seconds
        assert runtime.otp.ttl_seconds == settings.otp_ttl_seconds

    def test_collaborators_share_stores(self, runtime, accounts, kv):
        assert runtime.auth.accounts is accounts
        assert runtime.access.accounts is accounts
        assert runtime.sessions.kv is kv
        assert runtime.otp.kv is kv

    async def test_close(self, runtime):
        await runtime.close()
