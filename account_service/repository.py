"""Database repository for accounts and their audit trail."""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator

from psycopg import Cursor, errors
from psycopg.rows import tuple_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool

from .domain.account import Account, AccountStatus, AuditAction, AuditEntry
from .domain.errors import ConflictError

logger = logging.getLogger(__name__)

_ACCOUNT_COLUMNS = """
    account_id, email, username, credential_hash, first_name, last_name,
    date_of_birth, phone_number, status, failed_login_attempts, last_login_at,
    created_at, updated_at
"""

_AUDIT_COLUMNS = "audit_id, account_id, action, old_value, new_value, ip_address, created_at"

# Unique index name -> account field reported in ConflictError.
_UNIQUE_INDEXES = {
    "users_email_lower_key": "email",
    "users_username_lower_key": "username",
}


class PostgresAccountRepository:
    """Postgres-backed account persistence; one connection transaction per unit of work."""

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    @contextmanager
    def unit_of_work(self) -> Iterator["PostgresUnitOfWork"]:
        """Yield a unit of work; commit on success, roll back when the block raises."""
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                yield PostgresUnitOfWork(cur)
            conn.commit()


class PostgresUnitOfWork:
    def __init__(self, cursor: Cursor) -> None:
        self._cur = cursor

    def get_account(self, account_id: str, *, for_update: bool = False) -> Account | None:
        """Fetch an account by id, optionally locking the row for the rest of the transaction."""
        try:
            uuid.UUID(account_id)
        except ValueError:
            return None
        query = f"SELECT {_ACCOUNT_COLUMNS} FROM users WHERE account_id = %s"
        if for_update:
            query += " FOR UPDATE"
        self._cur.execute(query, (account_id,))
        row = self._cur.fetchone()
        return self._map_account(row) if row else None

    def find_by_email(self, email: str) -> Account | None:
        self._cur.execute(
            f"SELECT {_ACCOUNT_COLUMNS} FROM users WHERE lower(email) = lower(%s)",
            (email,),
        )
        row = self._cur.fetchone()
        return self._map_account(row) if row else None

    def find_by_username(self, username: str) -> Account | None:
        self._cur.execute(
            f"SELECT {_ACCOUNT_COLUMNS} FROM users WHERE lower(username) = lower(%s)",
            (username,),
        )
        row = self._cur.fetchone()
        return self._map_account(row) if row else None

    def list_accounts(self, *, status: AccountStatus | None, limit: int) -> list[Account]:
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = %s")
            params.append(status.value)
        where_sql = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        self._cur.execute(
            f"""
            SELECT {_ACCOUNT_COLUMNS}
            FROM users
            {where_sql}
            ORDER BY created_at, account_id
            LIMIT %s
            """,
            params,
        )
        return [self._map_account(row) for row in self._cur.fetchall()]

    def insert_account(self, account: Account) -> None:
        with self._unique_guard():
            self._cur.execute(
                f"""
                INSERT INTO users ({_ACCOUNT_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    account.account_id,
                    account.email,
                    account.username,
                    account.credential_hash,
                    account.first_name,
                    account.last_name,
                    account.date_of_birth,
                    account.phone_number,
                    account.status.value,
                    account.failed_login_attempts,
                    account.last_login_at,
                    account.created_at,
                    account.updated_at,
                ),
            )

    def update_account(self, account: Account) -> None:
        with self._unique_guard():
            self._cur.execute(
                """
                UPDATE users
                SET email = %s,
                    username = %s,
                    credential_hash = %s,
                    first_name = %s,
                    last_name = %s,
                    date_of_birth = %s,
                    phone_number = %s,
                    status = %s,
                    failed_login_attempts = %s,
                    last_login_at = %s,
                    updated_at = %s
                WHERE account_id = %s
                """,
                (
                    account.email,
                    account.username,
                    account.credential_hash,
                    account.first_name,
                    account.last_name,
                    account.date_of_birth,
                    account.phone_number,
                    account.status.value,
                    account.failed_login_attempts,
                    account.last_login_at,
                    account.updated_at,
                    account.account_id,
                ),
            )

    def insert_audit_entry(self, entry: AuditEntry) -> None:
        """Record an audit trail entry inside the current transaction."""
        self._cur.execute(
            f"""
            INSERT INTO user_audit_logs ({_AUDIT_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                entry.audit_id,
                entry.account_id,
                entry.action.value,
                Json(entry.old_value) if entry.old_value is not None else None,
                Json(entry.new_value) if entry.new_value is not None else None,
                entry.ip_address,
                entry.created_at,
            ),
        )

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
        """Return audit entries newest first with optional filters and keyset pagination."""
        clauses = ["TRUE"]
        params: list[Any] = []

        if account_id:
            clauses.append("account_id::text = %s")
            params.append(account_id)
        if action:
            clauses.append("action = %s")
            params.append(action.value)
        if created_after:
            clauses.append("created_at >= %s")
            params.append(created_after)
        if created_before:
            clauses.append("created_at <= %s")
            params.append(created_before)
        if cursor:
            clauses.append("(created_at, audit_id) < (%s, %s::uuid)")
            params.extend(cursor)

        where_sql = " AND ".join(clauses)
        params.append(limit)
        self._cur.execute(
            f"""
            SELECT {_AUDIT_COLUMNS}
            FROM user_audit_logs
            WHERE {where_sql}
            ORDER BY created_at DESC, audit_id DESC
            LIMIT %s
            """,
            params,
        )
        return [
            AuditEntry(
                audit_id=str(row[0]),
                account_id=str(row[1]),
                action=AuditAction(row[2]),
                old_value=row[3],
                new_value=row[4],
                ip_address=str(row[5]) if row[5] is not None else None,
                created_at=row[6],
            )
            for row in self._cur.fetchall()
        ]

    @contextmanager
    def _unique_guard(self) -> Iterator[None]:
        try:
            yield
        except errors.UniqueViolation as exc:
            constraint = exc.diag.constraint_name or ""
            field = _UNIQUE_INDEXES.get(constraint, "email")
            logger.warning("unique violation on %s (%s)", field, constraint)
            raise ConflictError(field) from exc

    def _map_account(self, row: tuple) -> Account:
        """Convert a raw database tuple into the domain ``Account`` dataclass."""
        return Account(
            account_id=str(row[0]),
            email=row[1],
            username=row[2],
            credential_hash=row[3],
            first_name=row[4],
            last_name=row[5],
            date_of_birth=row[6],
            phone_number=row[7],
            status=AccountStatus(row[8]),
            failed_login_attempts=row[9],
            last_login_at=row[10],
            created_at=row[11],
            updated_at=row[12],
        )
