"""HTTP route definitions for the entitlement service."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import jwt
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, EmailStr, Field

from ..config import get_settings
from ..domain.account import Account
from ..domain.contracts import RegisterInput
from ..domain.errors import (
    AccountNotFound,
    ConcurrentUpdateError,
    DuplicateEmail,
    InvalidCredential,
    LedgerError,
    QuotaExceeded,
)
from ..domain.service import EntitlementLedger
from ..domain.session import Session
from ..security.revocation import Denylist, build_denylist
from ..security.throttle import Throttle, build_throttle
from ..security.tokens import decode_session_token, issue_session_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")

MIN_PASSWORD_LENGTH = 6


class AccountResponse(BaseModel):
    """Serialised representation of an `Account` and its current allowance."""

    account_id: str
    email: str
    name: str
    usage_count: int
    is_premium: bool
    remaining_free: int | None
    last_reset_at: datetime | None
    created_at: datetime

    @classmethod
    def from_domain(cls, account: Account, ledger: EntitlementLedger) -> "AccountResponse":
        """Build a response model from the domain record."""
        return cls(
            account_id=account.account_id,
            email=account.email,
            name=account.name,
            usage_count=account.usage_count,
            is_premium=account.is_premium,
            remaining_free=ledger.remaining_free(account),
            last_reset_at=account.last_reset_at,
            created_at=account.created_at,
        )


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH)
    name: str = Field(..., min_length=1, max_length=120)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class SessionResponse(BaseModel):
    """Bearer token binding the client to an account, plus the account itself."""

    account: AccountResponse
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class RecoveryRequest(BaseModel):
    email: EmailStr


class RecoveryIssuedResponse(BaseModel):
    """Issued recovery token; returned directly because no email is dispatched."""

    email: str
    recovery_token: str
    expires_in: int


class RecoveryVerifyRequest(BaseModel):
    email: EmailStr
    token: str


class RecoveryVerifyResponse(BaseModel):
    valid: bool


class PasswordResetRequest(BaseModel):
    email: EmailStr
    token: str
    new_password: str = Field(..., min_length=MIN_PASSWORD_LENGTH)


class AuditLogEntry(BaseModel):
    """Audit log response entry."""

    audit_id: int
    event_type: str
    metadata: dict[str, Any]
    created_at: datetime


class AuditLogResponse(BaseModel):
    items: list[AuditLogEntry]


settings = get_settings()

throttle: Throttle = build_throttle(settings)
denylist: Denylist = build_denylist(settings)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(slots=True)
class ClientContext:
    """Per-request session rebuilt from the caller's bearer token."""

    session: Session
    token_id: str | None = None
    expires_at: int | None = None


def get_ledger(request: Request) -> EntitlementLedger:
    """Resolve the `EntitlementLedger` stored on the FastAPI application state."""
    ledger: EntitlementLedger = request.app.state.ledger
    return ledger


def get_client_context(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> ClientContext:
    if credentials is None:
        return ClientContext(session=Session())
    try:
        claims = decode_session_token(credentials.credentials)
    except jwt.PyJWTError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid session token") from exc
    if denylist.is_revoked(claims["jti"]):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="session ended")
    return ClientContext(
        session=Session(account_id=claims["sub"]),
        token_id=claims["jti"],
        expires_at=int(claims["exp"]),
    )


def require_account(
    context: ClientContext = Depends(get_client_context),
    ledger: EntitlementLedger = Depends(get_ledger),
) -> tuple[ClientContext, Account]:
    """Resolve the session's account, applying any due quota reset on the way."""
    account = ledger.get_current_account(context.session)
    if account is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="not authenticated")
    return context, account


def _check_throttle(key: str) -> None:
    if not throttle.allow(key):
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="rate limited")


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _session_response(account: Account, ledger: EntitlementLedger) -> SessionResponse:
    token = issue_session_token(account_id=account.account_id)
    return SessionResponse(
        account=AccountResponse.from_domain(account, ledger),
        access_token=token.token,
        expires_in=token.expires_in,
    )


@router.post("/accounts", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
def register(
    request: Request,
    payload: RegisterRequest,
    ledger: EntitlementLedger = Depends(get_ledger),
) -> SessionResponse:
    """Open a free-tier account and start a session for it."""
    _check_throttle(f"register:{_client_key(request)}")
    try:
        account = ledger.register(
            Session(),
            RegisterInput(email=payload.email, password=payload.password, name=payload.name),
        )
    except LedgerError as exc:
        raise _http_error_from_ledger_error(exc) from exc
    return _session_response(account, ledger)


@router.post("/sessions", response_model=SessionResponse)
def login(
    request: Request,
    payload: LoginRequest,
    ledger: EntitlementLedger = Depends(get_ledger),
) -> SessionResponse:
    _check_throttle(f"login:{_client_key(request)}:{payload.email.lower()}")
    try:
        account = ledger.login(Session(), payload.email, payload.password)
    except LedgerError as exc:
        raise _http_error_from_ledger_error(exc) from exc
    return _session_response(account, ledger)


@router.delete("/sessions/current", status_code=status.HTTP_204_NO_CONTENT)
def logout(
    context: ClientContext = Depends(get_client_context),
    ledger: EntitlementLedger = Depends(get_ledger),
) -> Response:
    """End the caller's session; the bearer token is refused from now on."""
    if context.token_id is not None and context.expires_at is not None:
        denylist.revoke(context.token_id, context.expires_at - int(time.time()))
    ledger.logout(context.session)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/me", response_model=AccountResponse)
def current_account(
    resolved: tuple[ClientContext, Account] = Depends(require_account),
    ledger: EntitlementLedger = Depends(get_ledger),
) -> AccountResponse:
    _, account = resolved
    return AccountResponse.from_domain(account, ledger)


@router.post("/me/usage", response_model=AccountResponse)
def consume_generation(
    resolved: tuple[ClientContext, Account] = Depends(require_account),
    ledger: EntitlementLedger = Depends(get_ledger),
) -> AccountResponse:
    """Charge one generation to the session's account."""
    context, account = resolved
    try:
        updated = ledger.consume(account.account_id, context.session)
    except LedgerError as exc:
        raise _http_error_from_ledger_error(exc) from exc
    return AccountResponse.from_domain(updated, ledger)


@router.post("/me/premium", response_model=AccountResponse)
def upgrade_to_premium(
    resolved: tuple[ClientContext, Account] = Depends(require_account),
    ledger: EntitlementLedger = Depends(get_ledger),
) -> AccountResponse:
    context, account = resolved
    try:
        updated = ledger.upgrade_to_premium(account.account_id, context.session)
    except LedgerError as exc:
        raise _http_error_from_ledger_error(exc) from exc
    return AccountResponse.from_domain(updated, ledger)


@router.get("/me/audit", response_model=AuditLogResponse)
def list_audit_logs(
    limit: int = Query(default=50, ge=1, le=100),
    resolved: tuple[ClientContext, Account] = Depends(require_account),
    ledger: EntitlementLedger = Depends(get_ledger),
) -> AuditLogResponse:
    """Return the newest audit events recorded for the session's account."""
    _, account = resolved
    records = ledger.list_audit_events(account.account_id, limit)
    return AuditLogResponse(
        items=[
            AuditLogEntry(
                audit_id=record.audit_id,
                event_type=record.event_type,
                metadata=record.metadata,
                created_at=record.created_at,
            )
            for record in records
        ]
    )


@router.post("/recovery", response_model=RecoveryIssuedResponse)
def request_recovery(
    payload: RecoveryRequest,
    ledger: EntitlementLedger = Depends(get_ledger),
) -> RecoveryIssuedResponse:
    _check_throttle(f"recovery:{payload.email.lower()}")
    try:
        token = ledger.request_recovery(payload.email)
    except LedgerError as exc:
        raise _http_error_from_ledger_error(exc) from exc
    return RecoveryIssuedResponse(
        email=payload.email,
        recovery_token=token,
        expires_in=int(ledger.recovery_ttl.total_seconds()),
    )


@router.post("/recovery/verify", response_model=RecoveryVerifyResponse)
def verify_recovery(
    payload: RecoveryVerifyRequest,
    ledger: EntitlementLedger = Depends(get_ledger),
) -> RecoveryVerifyResponse:
    _check_throttle(f"recovery-verify:{payload.email.lower()}")
    return RecoveryVerifyResponse(valid=ledger.verify_recovery(payload.email, payload.token))


@router.post("/recovery/reset", status_code=status.HTTP_204_NO_CONTENT)
def reset_password(
    payload: PasswordResetRequest,
    ledger: EntitlementLedger = Depends(get_ledger),
) -> Response:
    """Set a new password once the recovery token checks out."""
    _check_throttle(f"recovery-verify:{payload.email.lower()}")
    try:
        accepted = ledger.reset_password_with_token(payload.email, payload.token, payload.new_password)
    except LedgerError as exc:
        raise _http_error_from_ledger_error(exc) from exc
    if not accepted:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="invalid or expired recovery token",
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


_STATUS_BY_ERROR: dict[type[LedgerError], int] = {
    DuplicateEmail: status.HTTP_409_CONFLICT,
    AccountNotFound: status.HTTP_404_NOT_FOUND,
    InvalidCredential: status.HTTP_401_UNAUTHORIZED,
    QuotaExceeded: status.HTTP_402_PAYMENT_REQUIRED,
    ConcurrentUpdateError: status.HTTP_409_CONFLICT,
}


def _http_error_from_ledger_error(exc: LedgerError) -> HTTPException:
    status_code = _STATUS_BY_ERROR.get(type(exc), status.HTTP_400_BAD_REQUEST)
    logger.info("request refused with %s: %s", status_code, exc)
    return HTTPException(status_code=status_code, detail=str(exc))
