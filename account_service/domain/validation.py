"""Write-time checks applied to account records before they are persisted.

Two independent stages are composed by the service:

1. :func:`check_record_constraints` mirrors the column and CHECK constraints of
   the ``users`` table (required fields, lengths, age, counter, status).
2. :func:`check_security_requirements` mirrors the pre-insert validation that
   rejects records without a credential hash.

Uniqueness sits between the two and is enforced by the repository.
"""

from __future__ import annotations

import ipaddress
import logging
from datetime import date, datetime

from .account import Account, AccountStatus
from .errors import CONSTRAINT_CODE, SECURITY_CODE, ValidationError

logger = logging.getLogger(__name__)

MAX_LENGTHS = {
    "email": 255,
    "username": 50,
    "credential_hash": 255,
    "first_name": 50,
    "last_name": 50,
    "phone_number": 20,
}

REQUIRED_FIELDS = ("email", "username", "first_name", "last_name")


def minimum_birth_date(today: date, years: int) -> date:
    """Return the latest date of birth that satisfies the minimum age.

    February 29 clamps to February 28 in non-leap years, the same result as
    ``CURRENT_DATE - INTERVAL 'N years'`` in Postgres.
    """
    try:
        return today.replace(year=today.year - years)
    except ValueError:
        return today.replace(year=today.year - years, day=28)


def _reject(code: str, account: Account, reason: str) -> ValidationError:
    logger.info("rejected write for account %s: %s", account.account_id, reason)
    return ValidationError(code)


def check_record_constraints(account: Account, today: date, minimum_age_years: int = 13) -> None:
    """Raise ``ValidationError(USR-101)`` when the record breaks a column constraint."""
    for field in REQUIRED_FIELDS:
        value = getattr(account, field)
        if not isinstance(value, str) or not value.strip():
            raise _reject(CONSTRAINT_CODE, account, f"{field} is required")

    for field, limit in MAX_LENGTHS.items():
        value = getattr(account, field)
        if value is None:
            continue
        if not isinstance(value, str):
            raise _reject(CONSTRAINT_CODE, account, f"{field} must be a string")
        if len(value) > limit:
            raise _reject(CONSTRAINT_CODE, account, f"{field} exceeds {limit} characters")

    # datetime subclasses date but cannot be compared with one
    if not isinstance(account.date_of_birth, date) or isinstance(account.date_of_birth, datetime):
        raise _reject(CONSTRAINT_CODE, account, "date_of_birth is required")
    if account.date_of_birth > minimum_birth_date(today, minimum_age_years):
        raise _reject(CONSTRAINT_CODE, account, "age check failed")

    if not isinstance(account.status, AccountStatus):
        raise _reject(CONSTRAINT_CODE, account, f"unknown status {account.status!r}")

    if isinstance(account.failed_login_attempts, bool) or not isinstance(account.failed_login_attempts, int):
        raise _reject(CONSTRAINT_CODE, account, "failed_login_attempts must be an integer")
    if account.failed_login_attempts < 0:
        raise _reject(CONSTRAINT_CODE, account, "failed_login_attempts is negative")

    last_login_at = account.last_login_at
    if last_login_at is not None and (
        not isinstance(last_login_at, datetime) or last_login_at.tzinfo is None
    ):
        raise _reject(CONSTRAINT_CODE, account, "last_login_at must be an aware timestamp")


def check_security_requirements(account: Account) -> None:
    """Raise ``ValidationError(USR-102)`` when no credential hash is present."""
    if account.credential_hash is None or account.credential_hash == "":
        raise _reject(SECURITY_CODE, account, "credential hash missing")


def normalise_ip_address(value: str | None) -> str | None:
    """Return the canonical text form of ``value`` or raise ``ValidationError``."""
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        logger.info("rejected audit ip address %r", value)
        raise ValidationError(CONSTRAINT_CODE)
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError:
        logger.info("rejected audit ip address %r", value)
        raise ValidationError(CONSTRAINT_CODE) from None
