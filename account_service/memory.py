"""In-process account storage with the same all-or-nothing semantics as Postgres."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from threading import RLock
from typing import Iterator

from .domain.account import Account, AccountStatus, AuditAction, AuditEntry
from .domain.errors import ConflictError


class InMemoryAccountRepository:
    """Thread-safe repository; each unit of work runs against a private copy.

    Units of work are serialised by a single lock, and the copy replaces the
    committed state only when the block exits without an exception.
    """

    def __init__(self) -> None:
        self._accounts: dict[str, Account] = {}
        self._audit_entries: list[AuditEntry] = []
        self._lock = RLock()

    @contextmanager
    def unit_of_work(self) -> Iterator["InMemoryUnitOfWork"]:
        with self._lock:
            uow = InMemoryUnitOfWork(dict(self._accounts), list(self._audit_entries))
            yield uow
            self._accounts = uow.accounts
            self._audit_entries = uow.audit_entries


class InMemoryUnitOfWork:
    def __init__(self, accounts: dict[str, Account], audit_entries: list[AuditEntry]) -> None:
        self.accounts = accounts
        self.audit_entries = audit_entries

    def get_account(self, account_id: str, *, for_update: bool = False) -> Account | None:
        account = self.accounts.get(account_id)
        return replace(account) if account else None

    def find_by_email(self, email: str) -> Account | None:
        return self._find("email", email)

    def find_by_username(self, username: str) -> Account | None:
        return self._find("username", username)

    def list_accounts(self, *, status: AccountStatus | None, limit: int) -> list[Account]:
        results = [a for a in self.accounts.values() if status is None or a.status is status]
        results.sort(key=lambda a: (a.created_at, a.account_id))
        return [replace(a) for a in results[:limit]]

    def insert_account(self, account: Account) -> None:
        self._ensure_unique(account)
        self.accounts[account.account_id] = replace(account)

    def update_account(self, account: Account) -> None:
        self._ensure_unique(account)
        self.accounts[account.account_id] = replace(account)

    def insert_audit_entry(self, entry: AuditEntry) -> None:
        self.audit_entries.append(replace(entry))

    def list_audit_entries(
        self,
        *,
        account_id: str | None,
        action: AuditAction | None,
        created_after: datetime | None,
        created_before: datetime | None,
        limit: int,
        cursor: tuple[datetime, str] | None,
    ) -> list[AuditEntry]:
        results = list(self.audit_entries)
        if account_id:
            results = [e for e in results if e.account_id == account_id]
        if action:
            results = [e for e in results if e.action is action]
        if created_after:
            results = [e for e in results if e.created_at >= created_after]
        if created_before:
            results = [e for e in results if e.created_at <= created_before]
        if cursor:
            results = [e for e in results if (e.created_at, e.audit_id) < cursor]
        results.sort(key=lambda e: (e.created_at, e.audit_id), reverse=True)
        return [replace(e) for e in results[:limit]]

    def _find(self, field: str, value: str) -> Account | None:
        if not isinstance(value, str):
            return None
        key = value.lower()
        for account in self.accounts.values():
            if getattr(account, field).lower() == key:
                return replace(account)
        return None

    def _ensure_unique(self, account: Account) -> None:
        for field in ("email", "username"):
            existing = self._find(field, getattr(account, field))
            if existing is not None and existing.account_id != account.account_id:
                raise ConflictError(field)
