from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse, urlunparse

from harmonia.config import Settings, get_settings
from harmonia.logging import get_logger
from harmonia.service.access import AccessControlPipeline
from harmonia.service.auth import AccountStore, AuthenticationService, Mailer
from harmonia.service.email import EmailService
from harmonia.service.otp import OtpService
from harmonia.service.passwords import CredentialVerifier
from harmonia.service.sessions import SessionStore
from harmonia.service.tokens import TokenCodec, TokenKind
from harmonia.storage.keys import KeyValueStore
from harmonia.storage.memory import MemoryAccountStore, MemoryKeyValueStore
from harmonia.storage.postgres import PostgresAccountStore
from harmonia.storage.redis_cache import RedisKeyValueStore

logger = get_logger(__name__)


def mask_url_password(url: Optional[str]) -> Optional[str]:
    """``redis://:secret@host:6379`` -> ``redis://:***@host:6379``."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Service graph for one application instance.

    Every collaborator is built here from ``Settings`` (or passed in) and handed
    down explicitly; nothing is looked up from module globals at request time.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        accounts: Optional[AccountStore] = None,
        kv: Optional[KeyValueStore] = None,
        mailer: Optional[Mailer] = None,
        verifier: Optional[CredentialVerifier] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            use_memory_cache=self.settings.use_memory_cache,
        )
        self.accounts: AccountStore = accounts or self._build_account_store()
        self.kv: KeyValueStore = kv or self._build_kv_store()
        self.mailer: Mailer = mailer or EmailService.from_settings(self.settings)
        self.verifier = verifier or CredentialVerifier.from_settings(self.settings)

        self.tokens = TokenCodec.from_settings(self.settings)
        self.sessions = SessionStore(
            self.kv, default_ttl_seconds=self.tokens.ttl_seconds(TokenKind.REFRESH)
        )
        self.otp = OtpService(
            self.kv,
            ttl_seconds=self.settings.otp_ttl_seconds,
            digits=self.settings.otp_digits,
        )
        self.auth = AuthenticationService(
            accounts=self.accounts,
            sessions=self.sessions,
            tokens=self.tokens,
            otp=self.otp,
            mailer=self.mailer,
            verifier=self.verifier,
            settings=self.settings,
        )
        self.access = AccessControlPipeline(tokens=self.tokens, accounts=self.accounts)
        logger.info("runtime_init_completed")

    def _build_account_store(self) -> AccountStore:
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            store = (
                MemoryAccountStore()
                if self.settings.use_memory_store
                else PostgresAccountStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    def _build_kv_store(self) -> KeyValueStore:
        if self.settings.use_memory_cache:
            logger.warning(
                "kv_store_in_memory",
                message="sessions and OTP codes are process-local; do not run multiple workers",
            )
            return MemoryKeyValueStore()
        store = RedisKeyValueStore(self.settings.redis_url)
        try:
            store.verify_connection()
        except Exception:
            logger.error("redis_unavailable", redis_url=mask_url_password(self.settings.redis_url))
            raise
        logger.info("runtime_kv_initialized", redis_url=mask_url_password(self.settings.redis_url))
        return store

    async def close(self) -> None:
        await self.kv.close()
        close_accounts = getattr(self.accounts, "close", None)
        if callable(close_accounts):
            close_accounts()
        logger.info("runtime_closed")
