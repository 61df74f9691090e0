from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountType(str, Enum):
    """Privilege tier of an account.

    Sign-in only ever moves UNAUTHORIZED to AUTHORIZED; ADMIN and SUPERADMIN
    are assigned administratively (see ``scripts/bootstrap_admin.py``).
    """

    UNAUTHORIZED = "unauthorized"
    AUTHORIZED = "authorized"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"

    @property
    def label(self) -> str:
        return _ACCOUNT_TYPE_LABELS[self]


_ACCOUNT_TYPE_LABELS = {
    AccountType.UNAUTHORIZED: "unauthorized user",
    AccountType.AUTHORIZED: "authorized user",
    AccountType.ADMIN: "admin",
    AccountType.SUPERADMIN: "superadmin",
}


@dataclass
class Account:
    id: int
    username: str
    secret: bytes
    account_type: AccountType = AccountType.UNAUTHORIZED
    created_at: datetime = field(default_factory=_utcnow)
    role_changed_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=_utcnow)

    def __repr__(self) -> str:
        # secret stays out of reprs, tracebacks and log lines
        return (
            f"Account(id={self.id!r}, username={self.username!r}, "
            f"account_type={self.account_type.value!r})"
        )
