from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Mapping, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from keeper.logging import get_logger
from keeper.storage.errors import ConstraintViolation, StorageUnavailable
from keeper.storage.models import Account, AccountType

_SCHEMA_STATEMENTS = (
    "CREATE SCHEMA IF NOT EXISTS auth",
    """
    CREATE TABLE IF NOT EXISTS auth.users (
        id BIGSERIAL PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        secret BYTEA NOT NULL CHECK (octet_length(secret) > 0),
        account_type TEXT NOT NULL DEFAULT 'unauthorized'
            CHECK (account_type IN ('unauthorized', 'authorized', 'admin', 'superadmin')),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        role_changed_at TIMESTAMPTZ,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

_ACCOUNT_COLUMNS = "id, username, secret, account_type, created_at, role_changed_at, updated_at"


class PostgresStore:
    """Postgres-backed account directory.

    The transaction handle is the pooled ``psycopg.AsyncConnection``; nested
    transactions become savepoints on that connection.
    """

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=False,
        )
        self._opened = False
        self._open_lock = asyncio.Lock()

    async def open(self) -> None:
        """Open the pool and create the schema if it is missing."""
        async with self._open_lock:
            if self._opened:
                return
            try:
                await self.pool.open(wait=True)
                async with self.pool.connection() as conn:
                    async with conn.transaction():
                        for statement in _SCHEMA_STATEMENTS:
                            await conn.execute(statement)
            except (psycopg.OperationalError, PoolTimeout) as exc:
                self.logger.error("postgres_open_failed", error=str(exc))
                raise StorageUnavailable("database unavailable") from exc
            self._opened = True
            self.logger.info("postgres_store_opened")

    async def close(self) -> None:
        await self.pool.close()
        self._opened = False

    @asynccontextmanager
    async def transaction(
        self, parent: Optional[psycopg.AsyncConnection] = None
    ) -> AsyncIterator[psycopg.AsyncConnection]:
        if parent is not None:
            async with parent.transaction():
                yield parent
            return

        if not self._opened:
            await self.open()
        try:
            async with self.pool.connection() as conn:
                async with conn.transaction():
                    yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.warning("postgres_transaction_failed", error=str(exc))
            raise StorageUnavailable("database unavailable") from exc

    @staticmethod
    def _account_from_row(row: Mapping[str, Any]) -> Account:
        return Account(
            id=int(row["id"]),
            username=row["username"],
            secret=bytes(row["secret"]),
            account_type=AccountType(row["account_type"]),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
            role_changed_at=row.get("role_changed_at"),
            updated_at=row.get("updated_at") or datetime.now(timezone.utc),
        )

    async def lookup_by_username(
        self, tx: psycopg.AsyncConnection, username: str
    ) -> Optional[Account]:
        cur = await tx.execute(
            f"SELECT {_ACCOUNT_COLUMNS} FROM auth.users WHERE username = %s",
            (username,),
        )
        row = await cur.fetchone()
        if not row:
            return None
        return self._account_from_row(row)

    async def insert(
        self, tx: psycopg.AsyncConnection, username: str, secret: bytes
    ) -> Account:
        try:
            cur = await tx.execute(
                f"""
                INSERT INTO auth.users (username, secret)
                VALUES (%s, %s)
                RETURNING {_ACCOUNT_COLUMNS}
                """,
                (username, secret),
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("username already exists", {"field": "username"})
        except errors.CheckViolation:
            raise ConstraintViolation("secret must not be empty", {"field": "secret"})
        row = await cur.fetchone()
        return self._account_from_row(row)

    async def update_account_type(
        self, tx: psycopg.AsyncConnection, username: str, account_type: AccountType
    ) -> Optional[Account]:
        cur = await tx.execute(
            f"""
            UPDATE auth.users
            SET account_type = %s,
                role_changed_at = now(),
                updated_at = now()
            WHERE username = %s
            RETURNING {_ACCOUNT_COLUMNS}
            """,
            (AccountType(account_type).value, username),
        )
        row = await cur.fetchone()
        if not row:
            return None
        return self._account_from_row(row)


__all__ = ["PostgresStore"]
