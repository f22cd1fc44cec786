"""Error kinds raised by the account store."""

from __future__ import annotations

CONSTRAINT_CODE = "USR-101"
SECURITY_CODE = "USR-102"

_MESSAGES = {
    CONSTRAINT_CODE: "User validation failed: record constraints not met",
    SECURITY_CODE: "User validation failed: security requirements not met",
}


class AccountStoreError(Exception):
    """Base class for every error surfaced by the account store."""


class ValidationError(AccountStoreError):
    """A write violated an account invariant.

    The message only carries the stable ``code``; which rule failed is logged
    by the service and never returned to callers.
    """

    def __init__(self, code: str = CONSTRAINT_CODE) -> None:
        self.code = code
        super().__init__(f"{_MESSAGES.get(code, _MESSAGES[CONSTRAINT_CODE])} (code: {code})")


class ConflictError(AccountStoreError):
    """Another account already holds the email or username."""

    def __init__(self, field: str) -> None:
        self.field = field
        super().__init__(f"{field} already in use")


class NotFoundError(AccountStoreError):
    """The operation targets an unknown (or soft-deleted) account."""

    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        super().__init__("account not found")
