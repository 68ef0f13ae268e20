from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from harmonia.logging import get_logger
from harmonia.storage.errors import ConstraintViolation, StoreUnavailable
from harmonia.storage.models import Account, Role, normalize_email, normalize_roles

_UPDATABLE_COLUMNS = ("password_hash", "roles", "is_verified", "first_name", "last_name")


class PostgresAccountStore:
    """Postgres-backed account store."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self):
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error_type=type(exc).__name__, error=str(exc))
            raise StoreUnavailable("account store unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS account (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    first_name TEXT NOT NULL DEFAULT '',
                    last_name TEXT NOT NULL DEFAULT '',
                    roles TEXT[] NOT NULL DEFAULT ARRAY['USER'],
                    is_verified BOOLEAN NOT NULL DEFAULT FALSE,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )

    @staticmethod
    def _row_to_account(row: dict) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            roles=normalize_roles(row.get("roles") or [Role.USER]),
            is_verified=bool(row.get("is_verified", False)),
            created_at=row.get("created_at", datetime.now(timezone.utc)),
        )

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
        account_id = uuid.uuid4().hex
        role_names = [r.value for r in normalize_roles(roles or [Role.USER])]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (id, email, password_hash, first_name, last_name, roles, is_verified)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        account_id,
                        normalize_email(email),
                        password_hash,
                        first_name,
                        last_name,
                        role_names,
                        is_verified,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_account(row)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def get_password_hash(self, account_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return str(row["password_hash"]) if row else None

    def update_account(self, account_id: str, **fields: Any) -> Optional[Account]:
        unknown = set(fields) - set(_UPDATABLE_COLUMNS)
        if unknown:
            raise ValueError(f"unsupported account fields: {sorted(unknown)}")
        if "roles" in fields:
            fields["roles"] = [r.value for r in normalize_roles(fields["roles"])]
        if not fields:
            return self.get_account(account_id)
        # Column names come from the fixed whitelist above.
        assignments = ", ".join(f"{name} = %s" for name in fields)
        params = [*fields.values(), account_id]
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE account SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                params,
            ).fetchone()
        return self._row_to_account(row) if row else None

    def list_accounts(self, limit: int = 10, offset: int = 0) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM account ORDER BY created_at ASC LIMIT %s OFFSET %s",
                (limit, offset),
            ).fetchall()
        return [self._row_to_account(row) for row in rows]

    def count_accounts(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT count(*) AS total FROM account").fetchone()
        return int(row["total"]) if row else 0

    def close(self) -> None:
        self.pool.close()
