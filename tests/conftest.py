import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize settings
_test_tmp_dir = tempfile.mkdtemp(prefix="harmonia_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("USE_MEMORY_CACHE", "true")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("JWT_ACCESS_SECRET", "access-secret-for-testing-only-0123456789abcdef")
os.environ.setdefault("JWT_REFRESH_SECRET", "refresh-secret-for-testing-only-0123456789abcdef")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from harmonia.config import Settings, reset_settings_cache  # noqa: E402
from harmonia.service.passwords import CredentialVerifier  # noqa: E402
from harmonia.service.runtime import Runtime  # noqa: E402
from harmonia.storage.memory import MemoryAccountStore, MemoryKeyValueStore  # noqa: E402

STRONG_PASSWORD = "Str0ng!Pass"


class RecordingMailer:
    """Mailer double that keeps every message instead of sending it."""

    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.sent = []

    def send(self, to, subject, template, context):
        self.sent.append({"to": to, "subject": subject, "template": template, "context": dict(context)})
        return not self.fail

    def last_code(self, email):
        for message in reversed(self.sent):
            if message["to"] == email and message["template"] == "register":
                return message["context"]["code"]
        raise AssertionError(f"no verification code sent to {email}")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_access_secret="access-secret-for-testing-only-0123456789abcdef",
        jwt_refresh_secret="refresh-secret-for-testing-only-0123456789abcdef",
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        use_memory_cache=True,
        cookie_secure=False,
        password_hash_time_cost=1,
        password_hash_memory_cost=8,
        password_hash_parallelism=1,
    )


@pytest.fixture
def verifier():
    # Minimal argon2 cost keeps the suite fast
    return CredentialVerifier(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def accounts():
    return MemoryAccountStore()


@pytest.fixture
def kv():
    return MemoryKeyValueStore()


@pytest.fixture
def runtime(settings, accounts, kv, mailer, verifier):
    return Runtime(settings, accounts=accounts, kv=kv, mailer=mailer, verifier=verifier)


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
