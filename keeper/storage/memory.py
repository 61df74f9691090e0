from __future__ import annotations

import asyncio
import base64
import json
import os
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Dict, Optional

from keeper.logging import get_logger
from keeper.storage.errors import ConstraintViolation, StorageUnavailable
from keeper.storage.models import Account, AccountType


class MemoryTransaction:
    """Handle passed to directory calls made inside a memory transaction."""

    def __init__(self, store: "MemoryStore") -> None:
        self.store = store
        self.active = True


class MemoryStore:
    """In-memory account directory for tests and local development.

    Transactions are serialised by a single lock, which gives serialisable
    isolation; a snapshot taken at ``BEGIN`` (or at a savepoint) is restored
    when the body raises.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self._id_seq: int = 1
        self._tx_lock = asyncio.Lock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "accounts.json"

    def _snapshot(self) -> tuple[Dict[str, Account], int]:
        return {name: replace(acc) for name, acc in self.accounts.items()}, self._id_seq

    def _restore(self, snapshot: tuple[Dict[str, Account], int]) -> None:
        self.accounts, self._id_seq = snapshot

    @asynccontextmanager
    async def transaction(
        self, parent: Optional[MemoryTransaction] = None
    ) -> AsyncIterator[MemoryTransaction]:
        if parent is not None:
            self._check(parent)
            savepoint = self._snapshot()
            try:
                yield parent
            except BaseException:
                self._restore(savepoint)
                raise
            return

        async with self._tx_lock:
            tx = MemoryTransaction(self)
            snapshot = self._snapshot()
            try:
                yield tx
                # A failed write rolls back like any other error in the body
                self._persist_state()
            except BaseException:
                self._restore(snapshot)
                raise
            finally:
                tx.active = False

    def _check(self, tx: MemoryTransaction) -> None:
        if not isinstance(tx, MemoryTransaction) or tx.store is not self or not tx.active:
            raise StorageUnavailable("transaction is not active")

    async def lookup_by_username(
        self, tx: MemoryTransaction, username: str
    ) -> Optional[Account]:
        self._check(tx)
        account = self.accounts.get(username)
        return replace(account) if account else None

    async def insert(self, tx: MemoryTransaction, username: str, secret: bytes) -> Account:
        self._check(tx)
        if not secret:
            raise ConstraintViolation("secret must not be empty", {"field": "secret"})
        if username in self.accounts:
            raise ConstraintViolation("username already exists", {"field": "username"})
        now = datetime.now(timezone.utc)
        account = Account(
            id=self._id_seq,
            username=username,
            secret=bytes(secret),
            account_type=AccountType.UNAUTHORIZED,
            created_at=now,
            role_changed_at=None,
            updated_at=now,
        )
        self._id_seq += 1
        self.accounts[username] = account
        return replace(account)

    async def update_account_type(
        self, tx: MemoryTransaction, username: str, account_type: AccountType
    ) -> Optional[Account]:
        self._check(tx)
        account = self.accounts.get(username)
        if not account:
            return None
        now = datetime.now(timezone.utc)
        account.account_type = AccountType(account_type)
        account.role_changed_at = now
        account.updated_at = now
        return replace(account)

    async def close(self) -> None:
        self._persist_state()

    def _persist_state(self) -> None:
        if not self.fs_root:
            return
        payload = {
            "id_seq": self._id_seq,
            "accounts": [
                {
                    "id": acc.id,
                    "username": acc.username,
                    "secret": base64.b64encode(acc.secret).decode("ascii"),
                    "account_type": acc.account_type.value,
                    "created_at": acc.created_at.isoformat(),
                    "role_changed_at": acc.role_changed_at.isoformat()
                    if acc.role_changed_at
                    else None,
                    "updated_at": acc.updated_at.isoformat(),
                }
                for acc in self.accounts.values()
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(payload))
        os.replace(tmp_path, path)

    def _load_state(self) -> bool:
        path = self._state_path()
        if not path.exists():
            return False
        try:
            payload = json.loads(path.read_text())
        except (OSError, ValueError) as exc:
            self.logger.warning("memory_state_load_failed", error=str(exc), path=str(path))
            return False
        for row in payload.get("accounts", []):
            changed = row.get("role_changed_at")
            account = Account(
                id=int(row["id"]),
                username=row["username"],
                secret=base64.b64decode(row["secret"]),
                account_type=AccountType(row["account_type"]),
                created_at=datetime.fromisoformat(row["created_at"]),
                role_changed_at=datetime.fromisoformat(changed) if changed else None,
                updated_at=datetime.fromisoformat(row["updated_at"]),
            )
            self.accounts[account.username] = account
        self._id_seq = int(payload.get("id_seq", len(self.accounts) + 1))
        self.logger.info("memory_state_loaded", accounts=len(self.accounts))
        return True


__all__ = ["MemoryStore", "MemoryTransaction"]
