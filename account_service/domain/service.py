"""Account service enforcing invariants and writing the audit trail atomically."""

from __future__ import annotations

import json
import logging
from base64 import urlsafe_b64decode, urlsafe_b64encode
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional, Tuple

from .account import AUTH_EVENT_ACTIONS, Account, AccountStatus, AuditAction, AuditEntry
from .clock import SystemClock, generate_id
from .contracts import MUTABLE_FIELDS, AccountRepository, AccountUnitOfWork, Clock, CreateAccountInput
from .errors import ConflictError, NotFoundError, ValidationError
from .validation import check_record_constraints, check_security_requirements, normalise_ip_address

logger = logging.getLogger(__name__)


def normalise_email(email: Any) -> Any:
    """Lower-case and trim an email; non-strings are left for validation to reject."""
    if isinstance(email, str):
        return email.strip().lower()
    return email


def _as_utc(value: datetime | None) -> datetime | None:
    """Read a naive timestamp filter as UTC, the zone every stored timestamp uses."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AccountService:
    """Account store: every mutation and its audit entry share one unit of work."""

    def __init__(
        self,
        repository: AccountRepository,
        *,
        clock: Clock | None = None,
        id_factory: Callable[[], str] = generate_id,
        minimum_age_years: int = 13,
    ) -> None:
        """Store the repository and the clock/id collaborators used for writes."""
        self._repository = repository
        self._clock = clock or SystemClock()
        self._new_id = id_factory
        self._minimum_age_years = minimum_age_years

    # -- writes -----------------------------------------------------------------

    def create_account(self, payload: CreateAccountInput, ip_address: str | None = None) -> Account:
        """Validate and persist a new account together with its ``create`` audit entry.

        Raises
        ------
        ValidationError
            ``USR-101`` for record constraints, ``USR-102`` when no credential hash is supplied.
        ConflictError
            When the email or username is already taken.
        """
        ip_address = normalise_ip_address(ip_address)
        now = self._clock.now()
        account = Account(
            account_id=self._new_id(),
            email=normalise_email(payload.email),
            username=payload.username,
            credential_hash=payload.credential_hash,
            first_name=payload.first_name,
            last_name=payload.last_name,
            date_of_birth=payload.date_of_birth,
            phone_number=payload.phone_number or None,
            status=self._coerce_status(payload.status),
            created_at=now,
            updated_at=now,
        )

        check_record_constraints(account, now.date(), self._minimum_age_years)
        if account.status is AccountStatus.deleted:
            logger.info("rejected create of account %s in deleted state", account.account_id)
            raise ValidationError()
        with self._repository.unit_of_work() as uow:
            self._check_unique(uow, account)
            check_security_requirements(account)
            uow.insert_account(account)
            self._write_audit(
                uow,
                account.account_id,
                AuditAction.create,
                now,
                new_value=account.snapshot(),
                ip_address=ip_address,
            )

        logger.info("account %s created", account.account_id)
        return account

    def update_account(
        self,
        account_id: str,
        changes: Mapping[str, Any],
        ip_address: str | None = None,
    ) -> Account:
        """Apply a partial update, re-validating every invariant the change touches."""
        if not changes:
            logger.info("rejected empty update for account %s", account_id)
            raise ValidationError()
        unknown = sorted(set(changes) - MUTABLE_FIELDS)
        if unknown:
            logger.info("rejected update of immutable fields %s on account %s", unknown, account_id)
            raise ValidationError()

        values = dict(changes)
        if "status" in values:
            values["status"] = self._coerce_status(values["status"])
            if values["status"] is AccountStatus.deleted:
                logger.info("rejected status=deleted via update on account %s", account_id)
                raise ValidationError()
        if "email" in values:
            values["email"] = normalise_email(values["email"])
        if "phone_number" in values:
            values["phone_number"] = values["phone_number"] or None
        ip_address = normalise_ip_address(ip_address)

        with self._repository.unit_of_work() as uow:
            current = self._load_live(uow, account_id)
            now = self._next_timestamp(current.updated_at)
            updated = replace(current, **values, updated_at=now)

            check_record_constraints(updated, now.date(), self._minimum_age_years)
            if "email" in values or "username" in values:
                self._check_unique(uow, updated)
            check_security_requirements(updated)

            uow.update_account(updated)
            self._write_audit(
                uow,
                account_id,
                AuditAction.update,
                now,
                old_value=current.snapshot(),
                new_value=updated.snapshot(),
                ip_address=ip_address,
            )

        logger.info("account %s updated fields=%s", account_id, sorted(values))
        return updated

    def change_status(
        self,
        account_id: str,
        status: AccountStatus | str,
        ip_address: str | None = None,
    ) -> Account:
        """Transition the account status; ``deleted`` is handled as a soft delete."""
        status = self._coerce_status(status)
        if status is AccountStatus.deleted:
            return self._soft_delete(account_id, ip_address)
        return self.update_account(account_id, {"status": status}, ip_address)

    def delete_account(self, account_id: str, ip_address: str | None = None) -> None:
        """Soft-delete the account, keeping the row so audit references stay valid."""
        self._soft_delete(account_id, ip_address)

    def record_auth_event(
        self,
        account_id: str,
        action: AuditAction | str,
        ip_address: str | None = None,
    ) -> AuditEntry:
        """Append a login/logout/password_change entry; logins also stamp ``last_login_at``."""
        try:
            action = AuditAction(action)
        except ValueError:
            action = None
        if action not in AUTH_EVENT_ACTIONS:
            logger.info("rejected auth event %r for account %s", action, account_id)
            raise ValidationError()
        ip_address = normalise_ip_address(ip_address)

        with self._repository.unit_of_work() as uow:
            current = self._load_live(uow, account_id)
            now = self._next_timestamp(current.updated_at)
            old_value = new_value = None
            if action is AuditAction.login:
                updated = replace(current, last_login_at=now, failed_login_attempts=0, updated_at=now)
                uow.update_account(updated)
                old_value, new_value = current.snapshot(), updated.snapshot()
            entry = self._write_audit(
                uow,
                account_id,
                action,
                now,
                old_value=old_value,
                new_value=new_value,
                ip_address=ip_address,
            )

        logger.info("account %s auth event %s", account_id, action.value)
        return entry

    def record_failed_login(self, account_id: str, ip_address: str | None = None) -> Account:
        """Increment the failed login counter; lockout decisions belong to the caller."""
        ip_address = normalise_ip_address(ip_address)
        with self._repository.unit_of_work() as uow:
            current = self._load_live(uow, account_id)
            now = self._next_timestamp(current.updated_at)
            updated = replace(
                current,
                failed_login_attempts=current.failed_login_attempts + 1,
                updated_at=now,
            )
            uow.update_account(updated)
            self._write_audit(
                uow,
                account_id,
                AuditAction.update,
                now,
                old_value=current.snapshot(),
                new_value=updated.snapshot(),
                ip_address=ip_address,
            )

        logger.info(
            "account %s failed login recorded (attempts=%d)",
            account_id,
            updated.failed_login_attempts,
        )
        return updated

    # -- reads ------------------------------------------------------------------

    def find_by_id(self, account_id: str) -> Account | None:
        with self._repository.unit_of_work() as uow:
            return uow.get_account(account_id)

    def find_by_email(self, email: str) -> Account | None:
        with self._repository.unit_of_work() as uow:
            return uow.find_by_email(normalise_email(email))

    def find_by_username(self, username: str) -> Account | None:
        with self._repository.unit_of_work() as uow:
            return uow.find_by_username(username)

    def list_accounts(self, *, status: AccountStatus | str | None = None, limit: int = 50) -> list[Account]:
        """Return accounts ordered by creation time, optionally filtered by status."""
        if status is not None:
            status = self._coerce_status(status)
        with self._repository.unit_of_work() as uow:
            return uow.list_accounts(status=status, limit=max(1, min(limit, 100)))

    def list_audit_entries(
        self,
        *,
        account_id: str | None = None,
        action: AuditAction | str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: str | None = None,
    ) -> tuple[list[AuditEntry], str | None]:
        """Return audit entries newest first with optional filters and cursor pagination."""
        limit = max(1, min(limit, 100))
        decoded_cursor: Optional[Tuple[datetime, str]] = None
        if cursor:
            created_at, audit_id = self._decode_cursor(cursor)
            decoded_cursor = (_as_utc(created_at), audit_id)
        created_after = _as_utc(created_after)
        created_before = _as_utc(created_before)
        if action is not None:
            try:
                action = AuditAction(action)
            except ValueError as exc:
                raise ValueError("invalid action") from exc

        with self._repository.unit_of_work() as uow:
            entries = uow.list_audit_entries(
                account_id=account_id,
                action=action,
                created_after=created_after,
                created_before=created_before,
                limit=limit,
                cursor=decoded_cursor,
            )

        next_cursor = None
        if len(entries) == limit:
            last = entries[-1]
            next_cursor = self._encode_cursor((last.created_at, last.audit_id))
        return entries, next_cursor

    # -- helpers ----------------------------------------------------------------

    def _soft_delete(self, account_id: str, ip_address: str | None) -> Account:
        ip_address = normalise_ip_address(ip_address)
        with self._repository.unit_of_work() as uow:
            current = self._load_live(uow, account_id)
            now = self._next_timestamp(current.updated_at)
            updated = replace(current, status=AccountStatus.deleted, updated_at=now)
            uow.update_account(updated)
            self._write_audit(
                uow,
                account_id,
                AuditAction.delete,
                now,
                old_value=current.snapshot(),
                ip_address=ip_address,
            )

        logger.info("account %s deleted", account_id)
        return updated

    def _load_live(self, uow: AccountUnitOfWork, account_id: str) -> Account:
        account = uow.get_account(account_id, for_update=True)
        if account is None or account.status is AccountStatus.deleted:
            raise NotFoundError(account_id)
        return account

    def _check_unique(self, uow: AccountUnitOfWork, account: Account) -> None:
        existing = uow.find_by_email(account.email)
        if existing is not None and existing.account_id != account.account_id:
            logger.info("email conflict for account %s", account.account_id)
            raise ConflictError("email")
        existing = uow.find_by_username(account.username)
        if existing is not None and existing.account_id != account.account_id:
            logger.info("username conflict for account %s", account.account_id)
            raise ConflictError("username")

    def _write_audit(
        self,
        uow: AccountUnitOfWork,
        account_id: str,
        action: AuditAction,
        created_at: datetime,
        *,
        old_value: dict[str, Any] | None = None,
        new_value: dict[str, Any] | None = None,
        ip_address: str | None = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            audit_id=self._new_id(),
            account_id=account_id,
            action=action,
            created_at=created_at,
            old_value=old_value,
            new_value=new_value,
            ip_address=ip_address,
        )
        uow.insert_audit_entry(entry)
        return entry

    def _next_timestamp(self, previous: datetime) -> datetime:
        # updated_at must strictly advance on every mutation
        now = self._clock.now()
        if now <= previous:
            now = previous + timedelta(microseconds=1)
        return now

    def _coerce_status(self, status: Any) -> AccountStatus:
        try:
            return AccountStatus(status)
        except ValueError:
            logger.info("rejected unknown status %r", status)
            raise ValidationError() from None

    def _encode_cursor(self, cursor: Tuple[datetime, str]) -> str:
        created_at, audit_id = cursor
        payload = json.dumps({"created_at": created_at.isoformat(), "audit_id": audit_id})
        return urlsafe_b64encode(payload.encode("utf-8")).decode("utf-8")

    def _decode_cursor(self, cursor: str) -> Tuple[datetime, str]:
        try:
            data = json.loads(urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8"))
            return datetime.fromisoformat(data["created_at"]), str(data["audit_id"])
        except Exception as exc:
            raise ValueError("invalid cursor") from exc
