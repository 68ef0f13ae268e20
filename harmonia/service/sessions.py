from __future__ import annotations

import hashlib
from typing import Optional

from harmonia.logging import get_logger
from harmonia.storage.keys import ItemName, KeyValueStore, ServiceName, make_key

logger = get_logger(__name__)


class SessionStore:
    """Refresh-token revocation records in the shared key-value store.

    One record per issued refresh token, keyed by the owning account and a
    sha256 of the token itself, so every device holds an independent session
    that can be revoked without touching the others.
    """

    def __init__(self, kv: KeyValueStore, *, default_ttl_seconds: int = 7 * 24 * 3600) -> None:
        self.kv = kv
        self.default_ttl_seconds = default_ttl_seconds

    @staticmethod
    def _key(account_id: str, refresh_token: str) -> str:
        if not account_id or not refresh_token:
            raise ValueError("account id and refresh token are required")
        digest = hashlib.sha256(refresh_token.encode("utf-8")).hexdigest()
        return make_key(ServiceName.AUTH, ItemName.REFRESH_TOKEN, f"{account_id}:{digest}")

    async def put(self, account_id: str, refresh_token: str, ttl_seconds: Optional[int] = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
        await self.kv.set(self._key(account_id, refresh_token), refresh_token, ttl)
        logger.debug("session_stored", account_id=account_id, ttl_seconds=ttl)

    async def get(self, account_id: str, refresh_token: str) -> Optional[str]:
        stored = await self.kv.get(self._key(account_id, refresh_token))
        if stored is None or stored != refresh_token:
            return None
        return stored

    async def revoke(self, account_id: str, refresh_token: str) -> bool:
        """Delete the session record; ``True`` only for the caller that removed it."""
        removed = await self.kv.delete(self._key(account_id, refresh_token))
        logger.debug("session_revoked", account_id=account_id, removed=removed)
        return removed
