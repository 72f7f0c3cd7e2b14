"""Entitlement ledger orchestrating accounts, quota, sessions and password recovery."""

from __future__ import annotations

import hmac
import logging
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable

from .account import Account, RecoveryToken
from .contracts import RegisterInput, normalise_email
from .errors import AccountNotFound, ConcurrentUpdateError, InvalidCredential, QuotaExceeded
from .locks import KeyedLocks
from .quota import QuotaPolicy
from .session import Session
from ..config import Settings
from ..metrics import GENERATIONS_CONSUMED, QUOTA_DENIALS, RECOVERY_TOKENS_ISSUED, REGISTRATIONS
from ..repository import AuditEvent, AuditLogRecord, LedgerRepository
from ..security.passwords import hash_password, verify_password
from ..security.tokens import generate_recovery_token, hash_recovery_token

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntitlementLedger:
    """Sole writer of accounts, credentials, recovery tokens and session contents.

    Every read-decide-write sequence runs under a per-key lock, and account writes are
    compare-and-swap on ``Account.version`` so that several processes sharing one
    database still cannot push a free account past its quota.
    """

    def __init__(
        self,
        repository: LedgerRepository,
        *,
        policy: QuotaPolicy | None = None,
        recovery_ttl: timedelta = timedelta(hours=1),
        password_rounds: int = 12,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repository = repository
        self._policy = policy or QuotaPolicy()
        self._recovery_ttl = recovery_ttl
        self._password_rounds = password_rounds
        self._clock = clock
        self._locks = KeyedLocks()

    @classmethod
    def from_settings(cls, repository: LedgerRepository, settings: Settings) -> "EntitlementLedger":
        """Build a ledger using the quota and recovery parameters from ``settings``."""
        return cls(
            repository,
            policy=QuotaPolicy(
                limit=settings.free_generation_limit,
                utc_offset_hours=settings.reset_utc_offset_hours,
            ),
            recovery_ttl=timedelta(seconds=settings.recovery_token_ttl_seconds),
            password_rounds=settings.password_hash_rounds,
        )

    @property
    def policy(self) -> QuotaPolicy:
        return self._policy

    @property
    def recovery_ttl(self) -> timedelta:
        return self._recovery_ttl

    # identity lifecycle

    def register(self, session: Session, payload: RegisterInput) -> Account:
        """Open a free account, store its credential and bind ``session`` to it.

        Raises
        ------
        DuplicateEmail
            When an account already exists for the email.
        """
        email = normalise_email(payload.email)
        secret_hash = hash_password(payload.password, rounds=self._password_rounds)
        with self._locks.hold(f"email:{email}"):
            now = self._clock()
            account = Account(
                account_id=str(uuid.uuid4()),
                email=email,
                name=payload.name,
                created_at=now,
                last_reset_at=self._policy.current_boundary(now),
            )
            self._repository.create_account(
                account,
                secret_hash,
                event=AuditEvent("account.registered", account.account_id, {"email": email}),
            )
        session.bind(account)
        REGISTRATIONS.inc()
        logger.info("registered account %s", account.account_id)
        return account

    def login(self, session: Session, email: str, password: str) -> Account:
        """Authenticate and bind ``session``; a failed attempt leaves the session untouched."""
        email = normalise_email(email)
        account = self._repository.find_account_by_email(email)
        if account is None:
            raise AccountNotFound(email)
        secret_hash = self._repository.get_secret(email)
        if secret_hash is None or not verify_password(password, secret_hash):
            logger.warning("rejected login for account %s", account.account_id)
            raise InvalidCredential()
        account = self._apply_due_reset(account.account_id)
        self._repository.write_audit_event(AuditEvent("session.login", account.account_id))
        session.bind(account)
        return account

    def logout(self, session: Session) -> None:
        session.clear()

    def get_current_account(self, session: Session) -> Account | None:
        """Return the session's account after persisting any due quota reset.

        A session pointing at an account that no longer exists is cleared.
        """
        if session.account_id is None:
            return None
        try:
            account = self._apply_due_reset(session.account_id)
        except AccountNotFound:
            session.clear()
            return None
        session.refresh(account)
        return account

    def get_account(self, account_id: str) -> Account | None:
        return self._repository.get_account(account_id)

    # entitlement

    def can_consume(self, account: Account) -> bool:
        """Return whether ``account`` may generate now, counting any due reset."""
        refreshed, _ = self._policy.refresh(account, self._clock())
        return self._policy.can_consume(refreshed)

    def remaining_free(self, account: Account) -> int | None:
        refreshed, _ = self._policy.refresh(account, self._clock())
        return self._policy.remaining_free(refreshed)

    def consume(self, account_id: str, session: Session | None = None) -> Account:
        """Charge one generation to the account.

        Load, due reset, quota check, increment and persist happen as one indivisible
        step per account. On refusal only a due reset is persisted.

        Raises
        ------
        AccountNotFound
            When no such account exists.
        QuotaExceeded
            When a free account has used its allowance for the current period.
        ConcurrentUpdateError
            When the stored account kept changing across every retry.
        """
        with self._locks.hold(f"account:{account_id}"):
            for _ in range(MAX_WRITE_ATTEMPTS):
                current = self._load(account_id)
                refreshed, reset_applied = self._policy.refresh(current, self._clock())
                if not self._policy.can_consume(refreshed):
                    if reset_applied:
                        saved = self._repository.save_account(
                            refreshed, current.version, event=self._reset_event(current, refreshed)
                        )
                        if saved is None:
                            continue
                        if session is not None:
                            session.refresh(saved)
                    self._repository.write_audit_event(
                        AuditEvent("usage.denied", account_id, {"usage_count": refreshed.usage_count})
                    )
                    QUOTA_DENIALS.inc()
                    raise QuotaExceeded(account_id, self._policy.limit)

                updated = replace(refreshed, usage_count=refreshed.usage_count + 1)
                saved = self._repository.save_account(
                    updated,
                    current.version,
                    event=AuditEvent(
                        "usage.consumed",
                        account_id,
                        {"usage_count": updated.usage_count, "reset_applied": reset_applied},
                    ),
                )
                if saved is not None:
                    break
            else:
                raise ConcurrentUpdateError(account_id)

        GENERATIONS_CONSUMED.labels(tier="premium" if saved.is_premium else "free").inc()
        if session is not None:
            session.refresh(saved)
        return saved

    def upgrade_to_premium(self, account_id: str, session: Session | None = None) -> Account:
        """Grant unlimited access permanently; upgrading twice is a no-op."""
        with self._locks.hold(f"account:{account_id}"):
            for _ in range(MAX_WRITE_ATTEMPTS):
                current = self._load(account_id)
                if current.is_premium:
                    account = current
                    break
                account = self._repository.save_account(
                    replace(current, is_premium=True),
                    current.version,
                    event=AuditEvent("account.upgraded", account_id),
                )
                if account is not None:
                    logger.info("account %s upgraded to premium", account_id)
                    break
            else:
                raise ConcurrentUpdateError(account_id)
        if session is not None:
            session.refresh(account)
        return account

    # recovery

    def request_recovery(self, email: str) -> str:
        """Issue a fresh recovery token, superseding any earlier one for the email.

        The raw token is only returned to the caller; the store keeps its hash.
        """
        email = normalise_email(email)
        account = self._repository.find_account_by_email(email)
        if account is None:
            raise AccountNotFound(email)
        token, token_hash = generate_recovery_token()
        with self._locks.hold(f"recovery:{email}"):
            expires_at = self._clock() + self._recovery_ttl
            self._repository.put_recovery_token(
                RecoveryToken(email=email, token_hash=token_hash, expires_at=expires_at),
                event=AuditEvent(
                    "recovery.requested", account.account_id, {"expires_at": expires_at.isoformat()}
                ),
            )
        RECOVERY_TOKENS_ISSUED.inc()
        logger.info("recovery token issued for account %s", account.account_id)
        return token

    def verify_recovery(self, email: str, token: str) -> bool:
        """Return ``True`` only for the latest token on file while it is unexpired.

        Verification does not consume the token.
        """
        record = self._repository.get_recovery_token(normalise_email(email))
        if record is None:
            return False
        if not hmac.compare_digest(record.token_hash, hash_recovery_token(token)):
            return False
        return self._clock() < record.expires_at

    def reset_password(self, email: str, new_password: str) -> None:
        """Overwrite the stored credential; callers verify the recovery token first."""
        email = normalise_email(email)
        account = self._repository.find_account_by_email(email)
        if account is None:
            raise AccountNotFound(email)
        secret_hash = hash_password(new_password, rounds=self._password_rounds)
        self._store_secret(account, secret_hash)

    def reset_password_with_token(self, email: str, token: str, new_password: str) -> bool:
        """Verify ``token`` and overwrite the credential as one step.

        Runs under the same key as :meth:`request_recovery`, so a token superseded by a
        concurrent request can no longer be redeemed. Returns ``False`` without touching
        the credential when the token is missing, wrong or expired.
        """
        email = normalise_email(email)
        account = self._repository.find_account_by_email(email)
        if account is None:
            raise AccountNotFound(email)
        secret_hash = hash_password(new_password, rounds=self._password_rounds)
        with self._locks.hold(f"recovery:{email}"):
            if not self.verify_recovery(email, token):
                logger.warning("rejected recovery token for account %s", account.account_id)
                return False
            self._store_secret(account, secret_hash)
        return True

    def list_audit_events(self, account_id: str, limit: int = 50) -> list[AuditLogRecord]:
        return self._repository.list_audit_events(account_id, limit)

    # helpers

    def _load(self, account_id: str) -> Account:
        account = self._repository.get_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    def _apply_due_reset(self, account_id: str) -> Account:
        with self._locks.hold(f"account:{account_id}"):
            for _ in range(MAX_WRITE_ATTEMPTS):
                current = self._load(account_id)
                refreshed, reset_applied = self._policy.refresh(current, self._clock())
                if not reset_applied:
                    return current
                saved = self._repository.save_account(
                    refreshed, current.version, event=self._reset_event(current, refreshed)
                )
                if saved is not None:
                    return saved
        raise ConcurrentUpdateError(account_id)

    def _store_secret(self, account: Account, secret_hash: str) -> None:
        with self._locks.hold(f"credential:{account.email}"):
            updated = self._repository.set_secret(
                account.email, secret_hash, event=AuditEvent("password.reset", account.account_id)
            )
        if not updated:
            raise AccountNotFound(account.email)
        logger.info("password reset for account %s", account.account_id)

    def _reset_event(self, before: Account, after: Account) -> AuditEvent:
        return AuditEvent(
            "quota.reset",
            before.account_id,
            {
                "previous_usage_count": before.usage_count,
                "boundary": after.last_reset_at.isoformat() if after.last_reset_at else None,
            },
        )
