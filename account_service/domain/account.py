from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any


class AccountStatus(str, Enum):
    active = "active"
    inactive = "inactive"
    suspended = "suspended"
    deleted = "deleted"


class AuditAction(str, Enum):
    create = "create"
    update = "update"
    delete = "delete"
    login = "login"
    logout = "logout"
    password_change = "password_change"


AUTH_EVENT_ACTIONS = frozenset(
    {AuditAction.login, AuditAction.logout, AuditAction.password_change}
)


@dataclass(slots=True)
class Account:
    """Aggregate root for a user identity and its status metadata."""

    account_id: str
    email: str
    username: str
    credential_hash: str
    first_name: str
    last_name: str
    date_of_birth: date
    created_at: datetime
    updated_at: datetime
    phone_number: str | None = None
    status: AccountStatus = AccountStatus.active
    failed_login_attempts: int = 0
    last_login_at: datetime | None = None

    def snapshot(self) -> dict[str, Any]:
        """Serialise the full record into a JSON-compatible dict for the audit trail."""
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, (date, datetime)):
                data[key] = value.isoformat()
            elif isinstance(value, Enum):
                data[key] = value.value
        return data


@dataclass(frozen=True, slots=True)
class AuditEntry:
    """Immutable record of one mutation or auth event applied to an account."""

    audit_id: str
    account_id: str
    action: AuditAction
    created_at: datetime
    old_value: dict[str, Any] | None = None
    new_value: dict[str, Any] | None = None
    ip_address: str | None = None
