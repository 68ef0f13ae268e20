from __future__ import annotations

import threading
import time
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional

from harmonia.logging import get_logger
from harmonia.storage.errors import ConstraintViolation
from harmonia.storage.models import Account, Role, normalize_email, normalize_roles

_UPDATABLE_FIELDS = {"password_hash", "roles", "is_verified", "first_name", "last_name"}


class MemoryAccountStore:
    """In-memory account store for tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.password_hashes: Dict[str, str] = {}
        # RLock so helpers can be nested inside public methods
        self._data_lock = threading.RLock()

    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        first_name: str = "",
        last_name: str = "",
        roles: Optional[Iterable[Role]] = None,
        is_verified: bool = False,
    ) -> Account:
        normalized = normalize_email(email)
        with self._data_lock:
            if self._find_by_email(normalized):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=uuid.uuid4().hex,
                email=normalized,
                first_name=first_name,
                last_name=last_name,
                roles=normalize_roles(roles or [Role.USER]),
                is_verified=is_verified,
            )
            self.accounts[account.id] = account
            self.password_hashes[account.id] = password_hash
            return account

    def _find_by_email(self, email: str) -> Optional[Account]:
        return next((a for a in self.accounts.values() if a.email == email), None)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            return self._find_by_email(normalize_email(email))

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self.accounts.get(account_id)

    def get_password_hash(self, account_id: str) -> Optional[str]:
        with self._data_lock:
            return self.password_hashes.get(account_id)

    def update_account(self, account_id: str, **fields: Any) -> Optional[Account]:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported account fields: {sorted(unknown)}")
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if "password_hash" in fields:
                self.password_hashes[account_id] = fields.pop("password_hash")
            if "roles" in fields:
                fields["roles"] = normalize_roles(fields["roles"])
            for name, value in fields.items():
                setattr(account, name, value)
            return account

    def list_accounts(self, limit: int = 10, offset: int = 0) -> List[Account]:
        with self._data_lock:
            ordered = sorted(self.accounts.values(), key=lambda a: a.created_at)
            return ordered[offset : offset + limit]

    def count_accounts(self) -> int:
        with self._data_lock:
            return len(self.accounts)


class MemoryKeyValueStore:
    """Process-local key-value store with per-key TTL.

    Expired entries are dropped lazily when read. All operations hold a single
    lock, so ``delete`` reports True to exactly one caller per stored value.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live_entry(self, key: str) -> Optional[tuple[str, float]]:
        entry = self._entries.get(key)
        if entry and entry[1] <= self._clock():
            self._entries.pop(key, None)
            return None
        return entry

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live_entry(key)
            return entry[0] if entry else None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> bool:
        with self._lock:
            entry = self._live_entry(key)
            self._entries.pop(key, None)
            return entry is not None

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()

    def cleanup_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, (_, exp) in self._entries.items() if exp <= now]
            for key in expired:
                self._entries.pop(key, None)
            return len(expired)
