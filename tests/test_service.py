from __future__ import annotations

import json
import threading
from base64 import urlsafe_b64encode
from dataclasses import FrozenInstanceError
from datetime import date, datetime

import pytest

from account_service.domain.account import AccountStatus, AuditAction
from account_service.domain.errors import ConflictError, NotFoundError, ValidationError
from account_service.memory import InMemoryUnitOfWork

from conftest import audit_for, make_input


def test_create_then_find_returns_same_record(service):
    account = service.create_account(make_input(phone_number="+1-555-123-4567"))

    assert service.find_by_id(account.account_id) == account
    assert account.status is AccountStatus.active
    assert account.failed_login_attempts == 0
    assert account.last_login_at is None
    assert account.created_at == account.updated_at


def test_create_writes_single_create_entry(service):
    account = service.create_account(make_input(), ip_address="198.51.100.4")

    entries = audit_for(service, account.account_id)
    assert len(entries) == 1
    entry = entries[0]
    assert entry.action is AuditAction.create
    assert entry.old_value is None
    assert entry.new_value == account.snapshot()
    assert entry.ip_address == "198.51.100.4"
    assert entry.created_at == account.created_at


def test_email_is_normalised_and_lookups_ignore_case(service):
    account = service.create_account(make_input(email="  Mixed@Example.COM", username="Mixed"))

    assert account.email == "mixed@example.com"
    assert service.find_by_email("MIXED@example.com") == account
    assert service.find_by_username("mixed") == account
    assert service.find_by_email("nobody@example.com") is None
    assert service.find_by_username("nobody") is None
    assert service.find_by_id("missing") is None


def test_duplicate_email_conflicts(service):
    service.create_account(make_input())

    with pytest.raises(ConflictError) as excinfo:
        service.create_account(make_input(username="other"))

    assert excinfo.value.field == "email"
    assert len(service.list_accounts()) == 1
    entries, _ = service.list_audit_entries()
    assert len(entries) == 1


def test_duplicate_username_conflicts_case_insensitively(service):
    service.create_account(make_input(username="Alice"))

    with pytest.raises(ConflictError) as excinfo:
        service.create_account(make_input(email="b@x.com", username="alice"))

    assert excinfo.value.field == "username"


def test_minimum_age_boundary_is_inclusive(service):
    # the fake clock reads 2026-10-18
    service.create_account(make_input(date_of_birth=date(2013, 10, 18)))

    with pytest.raises(ValidationError) as excinfo:
        service.create_account(
            make_input(email="young@x.com", username="young", date_of_birth=date(2013, 10, 19))
        )

    assert excinfo.value.code == "USR-101"
    assert service.find_by_username("young") is None


@pytest.mark.parametrize("credential_hash", [None, ""])
def test_missing_credential_hash_is_rejected_without_side_effects(service, credential_hash):
    with pytest.raises(ValidationError) as excinfo:
        service.create_account(make_input(credential_hash=credential_hash))

    assert excinfo.value.code == "USR-102"
    assert str(excinfo.value) == (
        "User validation failed: security requirements not met (code: USR-102)"
    )
    assert service.list_accounts() == []
    assert service.list_audit_entries() == ([], None)


def test_record_constraints_are_checked_before_security_requirements(service):
    with pytest.raises(ValidationError) as excinfo:
        service.create_account(make_input(credential_hash="", date_of_birth=date(2020, 1, 1)))
    assert excinfo.value.code == "USR-101"

    service.create_account(make_input())
    with pytest.raises(ConflictError):
        service.create_account(make_input(username="other", credential_hash=""))


def test_create_rejects_invalid_fields(service):
    with pytest.raises(ValidationError):
        service.create_account(make_input(first_name=""))
    with pytest.raises(ValidationError):
        service.create_account(make_input(username="u" * 51))
    with pytest.raises(ValidationError):
        service.create_account(make_input(status="banned"))
    with pytest.raises(ValidationError):
        service.create_account(make_input(status=AccountStatus.deleted))
    with pytest.raises(ValidationError):
        service.create_account(make_input(), ip_address="not-an-ip")

    assert service.list_accounts() == []


def test_suspend_scenario(service):
    account = service.create_account(make_input())
    with pytest.raises(ConflictError):
        service.create_account(make_input(username="b"))

    updated = service.update_account(account.account_id, {"status": "suspended"})

    assert updated.status is AccountStatus.suspended
    assert updated.updated_at > account.updated_at
    assert updated.created_at == account.created_at

    entries = audit_for(service, account.account_id)
    assert [e.action for e in entries] == [AuditAction.update, AuditAction.create]
    latest = entries[0]
    assert latest.old_value["status"] == "active"
    assert latest.new_value["status"] == "suspended"
    assert latest.old_value == account.snapshot()
    assert latest.new_value == updated.snapshot()


def test_update_revalidates_touched_fields(service):
    account = service.create_account(make_input())

    with pytest.raises(ValidationError) as excinfo:
        service.update_account(account.account_id, {"date_of_birth": date(2020, 5, 5)})
    assert excinfo.value.code == "USR-101"

    with pytest.raises(ValidationError) as excinfo:
        service.update_account(account.account_id, {"credential_hash": ""})
    assert excinfo.value.code == "USR-102"

    assert service.find_by_id(account.account_id) == account
    assert len(audit_for(service, account.account_id)) == 1


def test_update_rejects_managed_fields_and_empty_changes(service):
    account = service.create_account(make_input())

    with pytest.raises(ValidationError):
        service.update_account(account.account_id, {})
    with pytest.raises(ValidationError):
        service.update_account(account.account_id, {"account_id": "other"})
    with pytest.raises(ValidationError):
        service.update_account(account.account_id, {"created_at": account.created_at})
    with pytest.raises(ValidationError):
        service.update_account(account.account_id, {"status": "deleted"})


def test_update_unknown_account_raises_not_found(service):
    with pytest.raises(NotFoundError):
        service.update_account("missing", {"first_name": "X"})
    with pytest.raises(NotFoundError):
        service.change_status("missing", AccountStatus.inactive)
    with pytest.raises(NotFoundError):
        service.delete_account("missing")
    with pytest.raises(NotFoundError):
        service.record_auth_event("missing", AuditAction.login)


def test_update_email_to_taken_address_conflicts(service):
    first = service.create_account(make_input())
    second = service.create_account(make_input(email="b@x.com", username="b"))

    with pytest.raises(ConflictError):
        service.update_account(second.account_id, {"email": "A@X.com"})

    assert service.find_by_id(second.account_id) == second
    assert service.find_by_email("a@x.com") == first


def test_update_can_keep_own_email(service):
    account = service.create_account(make_input())

    updated = service.update_account(account.account_id, {"email": "A@x.com", "last_name": "C"})

    assert updated.email == "a@x.com"
    assert updated.last_name == "C"


def test_delete_is_soft_and_terminal(service):
    account = service.create_account(make_input())

    assert service.delete_account(account.account_id, "2001:db8::1") is None

    stored = service.find_by_id(account.account_id)
    assert stored.status is AccountStatus.deleted
    assert stored.updated_at > account.updated_at

    entry = audit_for(service, account.account_id)[0]
    assert entry.action is AuditAction.delete
    assert entry.old_value == account.snapshot()
    assert entry.new_value is None
    assert entry.ip_address == "2001:db8::1"

    with pytest.raises(NotFoundError):
        service.delete_account(account.account_id)
    with pytest.raises(NotFoundError):
        service.update_account(account.account_id, {"first_name": "Z"})
    with pytest.raises(NotFoundError):
        service.change_status(account.account_id, "active")
    with pytest.raises(ConflictError):
        service.create_account(make_input(username="reuse"))


def test_change_status_to_deleted_is_audited_as_delete(service):
    account = service.create_account(make_input())

    deleted = service.change_status(account.account_id, AccountStatus.deleted)

    assert deleted.status is AccountStatus.deleted
    actions = [e.action for e in audit_for(service, account.account_id)]
    assert actions == [AuditAction.delete, AuditAction.create]


def test_each_mutation_adds_exactly_one_entry(service):
    account = service.create_account(make_input())
    service.update_account(account.account_id, {"phone_number": "+1-555-0100"})
    service.change_status(account.account_id, AccountStatus.inactive)
    service.delete_account(account.account_id)

    actions = [e.action for e in audit_for(service, account.account_id)]
    assert actions == [
        AuditAction.delete,
        AuditAction.update,
        AuditAction.update,
        AuditAction.create,
    ]


def test_login_resets_failures_and_stamps_last_login(service):
    account = service.create_account(make_input())
    service.record_failed_login(account.account_id)
    failed = service.record_failed_login(account.account_id, "203.0.113.9")
    assert failed.failed_login_attempts == 2

    entry = service.record_auth_event(account.account_id, "login", "203.0.113.9")

    stored = service.find_by_id(account.account_id)
    assert stored.failed_login_attempts == 0
    assert stored.last_login_at == entry.created_at
    assert stored.updated_at == entry.created_at
    assert entry.action is AuditAction.login
    assert entry.ip_address == "203.0.113.9"
    assert entry.new_value["failed_login_attempts"] == 0
    assert [e.action for e in audit_for(service, account.account_id)] == [
        AuditAction.login,
        AuditAction.update,
        AuditAction.update,
        AuditAction.create,
    ]


def test_logout_and_password_change_leave_account_untouched(service):
    account = service.create_account(make_input())

    logout = service.record_auth_event(account.account_id, AuditAction.logout)
    change = service.record_auth_event(account.account_id, AuditAction.password_change)

    assert service.find_by_id(account.account_id) == account
    assert logout.old_value is None and logout.new_value is None
    assert change.action is AuditAction.password_change


@pytest.mark.parametrize("action", ["create", "update", "delete", "reboot"])
def test_auth_event_rejects_non_auth_actions(service, action):
    account = service.create_account(make_input())

    with pytest.raises(ValidationError):
        service.record_auth_event(account.account_id, action)

    assert len(audit_for(service, account.account_id)) == 1


def test_failed_audit_write_rolls_back_account(service, monkeypatch):
    def broken_insert(self, entry):
        raise RuntimeError("audit table unavailable")

    monkeypatch.setattr(InMemoryUnitOfWork, "insert_audit_entry", broken_insert)

    with pytest.raises(RuntimeError):
        service.create_account(make_input())

    assert service.find_by_email("a@x.com") is None
    assert service.list_accounts() == []


def test_concurrent_colliding_creates_yield_one_success(service):
    barrier = threading.Barrier(2)
    outcomes: list[str] = []

    def register(username: str) -> None:
        barrier.wait()
        try:
            service.create_account(make_input(username=username))
            outcomes.append("ok")
        except ConflictError:
            outcomes.append("conflict")

    threads = [threading.Thread(target=register, args=(name,)) for name in ("one", "two")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["conflict", "ok"]
    assert len(service.list_accounts()) == 1


def test_list_accounts_filters_by_status(service):
    first = service.create_account(make_input())
    second = service.create_account(make_input(email="b@x.com", username="b"))
    service.change_status(second.account_id, "suspended")

    assert [a.account_id for a in service.list_accounts()] == [first.account_id, second.account_id]
    assert [a.account_id for a in service.list_accounts(status="suspended")] == [second.account_id]
    with pytest.raises(ValidationError):
        service.list_accounts(status="bogus")


def test_audit_listing_paginates_newest_first(service):
    account = service.create_account(make_input())
    for idx in range(4):
        service.update_account(account.account_id, {"first_name": f"A{idx}"})

    page, cursor = service.list_audit_entries(account_id=account.account_id, limit=3)
    assert len(page) == 3
    assert cursor is not None
    assert page[0].new_value["first_name"] == "A3"

    rest, next_cursor = service.list_audit_entries(
        account_id=account.account_id, limit=3, cursor=cursor
    )
    assert [e.action for e in rest] == [AuditAction.update, AuditAction.create]
    assert next_cursor is None

    updates, _ = service.list_audit_entries(action="update")
    assert len(updates) == 4


def test_audit_listing_rejects_bad_cursor(service):
    with pytest.raises(ValueError, match="invalid cursor"):
        service.list_audit_entries(cursor="not-valid")


def test_audit_listing_reads_naive_cursor_as_utc(service):
    account = service.create_account(make_input())
    for idx in range(3):
        service.update_account(account.account_id, {"first_name": f"A{idx}"})
    newest_first = audit_for(service, account.account_id)
    anchor = newest_first[1]

    payload = json.dumps(
        {"created_at": anchor.created_at.replace(tzinfo=None).isoformat(), "audit_id": anchor.audit_id}
    )
    cursor = urlsafe_b64encode(payload.encode("utf-8")).decode("utf-8")
    page, _ = service.list_audit_entries(account_id=account.account_id, cursor=cursor)

    assert [e.audit_id for e in page] == [e.audit_id for e in newest_first[2:]]


def test_audit_listing_reads_naive_filters_as_utc(service):
    account = service.create_account(make_input())
    service.update_account(account.account_id, {"first_name": "C"})

    everything, _ = service.list_audit_entries(created_after=datetime(2026, 10, 18, 0, 0))
    nothing, _ = service.list_audit_entries(created_before=datetime(2026, 10, 18, 0, 0))

    assert len(everything) == 2
    assert nothing == []


def test_update_rejects_wrongly_typed_values_without_side_effects(service):
    account = service.create_account(make_input())

    for changes in (
        {"phone_number": 5551234},
        {"credential_hash": 123},
        {"date_of_birth": datetime(1990, 1, 15, 12, 0)},
    ):
        with pytest.raises(ValidationError) as excinfo:
            service.update_account(account.account_id, changes)
        assert excinfo.value.code == "USR-101"

    assert service.find_by_id(account.account_id) == account
    assert len(audit_for(service, account.account_id)) == 1


def test_create_rejects_datetime_birth_date(service):
    with pytest.raises(ValidationError) as excinfo:
        service.create_account(make_input(date_of_birth=datetime(1990, 1, 15, 12, 0)))

    assert excinfo.value.code == "USR-101"
    assert service.list_accounts() == []
    assert service.list_audit_entries()[0] == []


def test_audit_entries_are_immutable(service):
    account = service.create_account(make_input(), ip_address="192.0.2.1")
    entry = audit_for(service, account.account_id)[0]

    with pytest.raises(FrozenInstanceError):
        entry.ip_address = "198.51.100.1"

    assert audit_for(service, account.account_id)[0].ip_address == "192.0.2.1"
