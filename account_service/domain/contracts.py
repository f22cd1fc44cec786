"""Domain-level request contracts shared by multiple layers."""

from __future__ import annotations

from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import date, datetime
from typing import Protocol

from .account import Account, AccountStatus, AuditAction, AuditEntry


@dataclass(slots=True)
class CreateAccountInput:
    """Caller-supplied fields required to register an account."""

    email: str
    username: str
    first_name: str
    last_name: str
    date_of_birth: date
    credential_hash: str | None = None
    phone_number: str | None = None
    status: AccountStatus = AccountStatus.active


# Fields callers may touch through ``update_account``; everything else is managed by the store.
MUTABLE_FIELDS = frozenset(
    {
        "email",
        "username",
        "credential_hash",
        "first_name",
        "last_name",
        "date_of_birth",
        "phone_number",
        "status",
        "failed_login_attempts",
        "last_login_at",
    }
)


class AccountUnitOfWork(Protocol):
    """Operations available inside a single storage transaction.

    ``insert_account`` and ``update_account`` raise ``ConflictError`` when the
    storage layer detects a duplicate email or username.
    """

    def get_account(self, account_id: str, *, for_update: bool = False) -> Account | None: ...

    def find_by_email(self, email: str) -> Account | None: ...

    def find_by_username(self, username: str) -> Account | None: ...

    def list_accounts(self, *, status: AccountStatus | None, limit: int) -> list[Account]: ...

    def insert_account(self, account: Account) -> None: ...

    def update_account(self, account: Account) -> None: ...

    def insert_audit_entry(self, entry: AuditEntry) -> None: ...

    def list_audit_entries(
        self,
        *,
        account_id: str | None,
        action: AuditAction | None,
        created_after: datetime | None,
        created_before: datetime | None,
        limit: int,
        cursor: tuple[datetime, str] | None,
    ) -> list[AuditEntry]: ...


class AccountRepository(Protocol):
    """Storage backend able to open all-or-nothing units of work."""

    def unit_of_work(self) -> AbstractContextManager[AccountUnitOfWork]: ...


class Clock(Protocol):
    def now(self) -> datetime: ...
