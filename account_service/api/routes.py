"""HTTP route definitions for the account service."""

from __future__ import annotations

import ipaddress
import logging
from datetime import date, datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from pydantic import BaseModel, EmailStr

from ..config import get_settings
from ..domain.account import Account, AccountStatus, AuditAction, AuditEntry
from ..domain.contracts import CreateAccountInput
from ..domain.errors import AccountStoreError, ConflictError, NotFoundError, ValidationError
from ..domain.service import AccountService
from ..security.throttle import SlidingWindowThrottle, build_throttle

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")


class AccountResponse(BaseModel):
    """Serialised representation of an `Account` aggregate, without the credential hash."""

    account_id: str
    email: str
    username: str
    first_name: str
    last_name: str
    date_of_birth: date
    phone_number: str | None
    status: AccountStatus
    failed_login_attempts: int
    last_login_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, account: Account) -> "AccountResponse":
        """Build a response model from the domain aggregate."""
        return cls(
            account_id=account.account_id,
            email=account.email,
            username=account.username,
            first_name=account.first_name,
            last_name=account.last_name,
            date_of_birth=account.date_of_birth,
            phone_number=account.phone_number,
            status=account.status,
            failed_login_attempts=account.failed_login_attempts,
            last_login_at=account.last_login_at,
            created_at=account.created_at,
            updated_at=account.updated_at,
        )


class AccountListResponse(BaseModel):
    items: list[AccountResponse]


class CreateAccountRequest(BaseModel):
    """Payload accepted when registering an account."""

    email: EmailStr
    username: str
    credential_hash: str | None = None
    first_name: str
    last_name: str
    date_of_birth: date
    phone_number: str | None = None
    status: AccountStatus = AccountStatus.active


class UpdateAccountRequest(BaseModel):
    """Partial update; only fields present in the body are applied."""

    email: EmailStr | None = None
    username: str | None = None
    credential_hash: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    date_of_birth: date | None = None
    phone_number: str | None = None
    status: AccountStatus | None = None


class StatusChangeRequest(BaseModel):
    status: AccountStatus


class AuthEventRequest(BaseModel):
    action: AuditAction


class AuditLogEntry(BaseModel):
    """Audit log response entry."""

    audit_id: str
    account_id: str
    action: AuditAction
    old_value: dict[str, Any] | None
    new_value: dict[str, Any] | None
    ip_address: str | None
    created_at: datetime

    @classmethod
    def from_domain(cls, entry: AuditEntry) -> "AuditLogEntry":
        return cls(
            audit_id=entry.audit_id,
            account_id=entry.account_id,
            action=entry.action,
            old_value=entry.old_value,
            new_value=entry.new_value,
            ip_address=entry.ip_address,
            created_at=entry.created_at,
        )


class AuditLogResponse(BaseModel):
    """Envelope for paginated audit log data."""

    items: list[AuditLogEntry]
    next_cursor: str | None = None


settings = get_settings()

throttle = build_throttle(settings)

trust_forwarded_for = settings.trust_forwarded_for


def get_service(request: Request) -> AccountService:
    """Resolve the `AccountService` stored on the FastAPI application state."""
    service: AccountService = request.app.state.account_service
    return service


def client_ip(request: Request) -> str | None:
    """Return the originating address.

    The first X-Forwarded-For hop is only honoured when ``trust_forwarded_for``
    is enabled, i.e. the service runs behind a proxy that overwrites the header.
    """
    candidates: list[str] = []
    if trust_forwarded_for:
        candidates.append(request.headers.get("X-Forwarded-For", "").split(",")[0].strip())
    if request.client is not None:
        candidates.append(request.client.host)
    for candidate in candidates:
        try:
            return str(ipaddress.ip_address(candidate))
        except ValueError:
            continue
    return None


def _throttle(scope: str, ip: str | None) -> None:
    if not throttle.allow(f"{scope}:{ip or 'unknown'}"):
        logger.warning("throttled %s request from %s", scope, ip or "unknown client")
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="rate limited")


@router.post("/accounts", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
def create_account(
    request: Request,
    payload: CreateAccountRequest,
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    """Register an account; the create audit entry is written in the same transaction."""
    ip = client_ip(request)
    _throttle("create", ip)
    try:
        account = service.create_account(
            CreateAccountInput(
                email=payload.email,
                username=payload.username,
                credential_hash=payload.credential_hash,
                first_name=payload.first_name,
                last_name=payload.last_name,
                date_of_birth=payload.date_of_birth,
                phone_number=payload.phone_number,
                status=payload.status,
            ),
            ip_address=ip,
        )
    except AccountStoreError as exc:
        raise _http_error_from_store_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.get("/accounts", response_model=AccountListResponse)
def list_accounts(
    email: str | None = Query(default=None),
    username: str | None = Query(default=None),
    status_filter: AccountStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=100),
    service: AccountService = Depends(get_service),
) -> AccountListResponse:
    """Look an account up by email or username, or list accounts by status."""
    if email is not None:
        found = service.find_by_email(email)
        accounts = [found] if found else []
    elif username is not None:
        found = service.find_by_username(username)
        accounts = [found] if found else []
    else:
        accounts = service.list_accounts(status=status_filter, limit=limit)
    return AccountListResponse(items=[AccountResponse.from_domain(a) for a in accounts])


@router.get("/accounts/{account_id}", response_model=AccountResponse)
def get_account(
    account_id: str,
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    account = service.find_by_id(account_id)
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="account not found")
    return AccountResponse.from_domain(account)


@router.patch("/accounts/{account_id}", response_model=AccountResponse)
def update_account(
    account_id: str,
    request: Request,
    payload: UpdateAccountRequest,
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    """Apply the fields present in the body as a single audited update."""
    ip = client_ip(request)
    _throttle("update", ip)
    try:
        account = service.update_account(account_id, payload.model_dump(exclude_unset=True), ip)
    except AccountStoreError as exc:
        raise _http_error_from_store_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.post("/accounts/{account_id}/status", response_model=AccountResponse)
def change_status(
    account_id: str,
    request: Request,
    payload: StatusChangeRequest,
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    ip = client_ip(request)
    _throttle("update", ip)
    try:
        account = service.change_status(account_id, payload.status, ip)
    except AccountStoreError as exc:
        raise _http_error_from_store_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.delete("/accounts/{account_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_account(
    account_id: str,
    request: Request,
    service: AccountService = Depends(get_service),
) -> Response:
    """Soft-delete the account."""
    ip = client_ip(request)
    _throttle("update", ip)
    try:
        service.delete_account(account_id, ip)
    except AccountStoreError as exc:
        raise _http_error_from_store_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/accounts/{account_id}/auth-events",
    response_model=AuditLogEntry,
    status_code=status.HTTP_201_CREATED,
)
def record_auth_event(
    account_id: str,
    request: Request,
    payload: AuthEventRequest,
    service: AccountService = Depends(get_service),
) -> AuditLogEntry:
    """Record a login, logout or password change reported by the auth layer."""
    ip = client_ip(request)
    _throttle("auth", ip)
    try:
        entry = service.record_auth_event(account_id, payload.action, ip)
    except AccountStoreError as exc:
        raise _http_error_from_store_error(exc) from exc
    return AuditLogEntry.from_domain(entry)


@router.get("/audit/logs", response_model=AuditLogResponse)
def list_audit_logs(
    account_id: str | None = Query(default=None),
    action: AuditAction | None = Query(default=None),
    created_after: datetime | None = Query(default=None),
    created_before: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    cursor: str | None = Query(default=None),
    service: AccountService = Depends(get_service),
) -> AuditLogResponse:
    """Return paginated audit entries with optional filtering."""
    try:
        entries, next_cursor = service.list_audit_entries(
            account_id=account_id,
            action=action,
            created_after=created_after,
            created_before=created_before,
            limit=limit,
            cursor=cursor,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    return AuditLogResponse(
        items=[AuditLogEntry.from_domain(entry) for entry in entries],
        next_cursor=next_cursor,
    )


def _http_error_from_store_error(exc: AccountStoreError) -> HTTPException:
    status_code = status.HTTP_400_BAD_REQUEST
    if isinstance(exc, ValidationError):
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, ConflictError):
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(exc, NotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    return HTTPException(status_code=status_code, detail=str(exc))
