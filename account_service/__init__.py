"""Account store: user accounts with an atomically written audit trail."""

from .domain.account import Account, AccountStatus, AuditAction, AuditEntry
from .domain.contracts import CreateAccountInput
from .domain.errors import AccountStoreError, ConflictError, NotFoundError, ValidationError
from .domain.service import AccountService
from .memory import InMemoryAccountRepository

__all__ = [
    "Account",
    "AccountService",
    "AccountStatus",
    "AccountStoreError",
    "AuditAction",
    "AuditEntry",
    "ConflictError",
    "CreateAccountInput",
    "InMemoryAccountRepository",
    "NotFoundError",
    "ValidationError",
]
