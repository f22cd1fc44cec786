from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from account_service.domain.contracts import CreateAccountInput
from account_service.domain.service import AccountService
from account_service.memory import InMemoryAccountRepository

TODAY = date(2026, 10, 18)


class FakeClock:
    """Deterministic clock advancing by a fixed step on every read."""

    def __init__(self, start: datetime | None = None, step: timedelta = timedelta(seconds=1)) -> None:
        self.current = start or datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)
        self.step = step

    def now(self) -> datetime:
        value = self.current
        self.current += self.step
        return value


def make_input(**overrides) -> CreateAccountInput:
    fields = dict(
        email="a@x.com",
        username="a",
        credential_hash="h",
        first_name="A",
        last_name="B",
        date_of_birth=date(1990, 1, 15),
    )
    fields.update(overrides)
    return CreateAccountInput(**fields)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def repository() -> InMemoryAccountRepository:
    return InMemoryAccountRepository()


@pytest.fixture
def service(repository, clock) -> AccountService:
    return AccountService(repository, clock=clock)


def audit_for(service: AccountService, account_id: str):
    entries, _ = service.list_audit_entries(account_id=account_id, limit=100)
    return entries
