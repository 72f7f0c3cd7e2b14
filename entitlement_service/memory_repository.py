"""In-process ledger storage used for local development and tests."""

from __future__ import annotations

from collections import deque
from dataclasses import replace
from datetime import datetime, timezone
from itertools import count
from threading import Lock

from .domain.account import Account, RecoveryToken
from .domain.errors import DuplicateEmail
from .repository import AuditEvent, AuditLogRecord, clamp_limit


AUDIT_LOG_CAPACITY = 10_000


class InMemoryLedgerRepository:
    """Dictionary-backed repository honouring the same atomicity as the Postgres one.

    A single lock guards all three tables so that account + credential creation and
    compare-and-swap saves behave like their transactional counterparts.
    """

    def __init__(self, audit_capacity: int = AUDIT_LOG_CAPACITY) -> None:
        self._lock = Lock()
        self._accounts: dict[str, Account] = {}
        self._ids_by_email: dict[str, str] = {}
        self._secrets: dict[str, str] = {}
        self._recovery_tokens: dict[str, RecoveryToken] = {}
        # oldest events fall off once the capacity is reached
        self.audit_log: deque[AuditLogRecord] = deque(maxlen=audit_capacity)
        self._audit_ids = count(1)

    def create_account(
        self, account: Account, secret_hash: str, event: AuditEvent | None = None
    ) -> None:
        with self._lock:
            if account.email in self._ids_by_email:
                raise DuplicateEmail(account.email)
            self._accounts[account.account_id] = account
            self._ids_by_email[account.email] = account.account_id
            self._secrets[account.email] = secret_hash
            if event is not None:
                self._append_audit(event)

    def get_account(self, account_id: str) -> Account | None:
        with self._lock:
            return self._accounts.get(account_id)

    def find_account_by_email(self, email: str) -> Account | None:
        with self._lock:
            account_id = self._ids_by_email.get(email)
            return self._accounts.get(account_id) if account_id else None

    def save_account(
        self, account: Account, expected_version: int, event: AuditEvent | None = None
    ) -> Account | None:
        with self._lock:
            stored = self._accounts.get(account.account_id)
            if stored is None or stored.version != expected_version:
                return None
            # id, email and created_at are immutable once created
            saved = replace(
                account,
                email=stored.email,
                created_at=stored.created_at,
                version=stored.version + 1,
            )
            self._accounts[account.account_id] = saved
            if event is not None:
                self._append_audit(event)
            return saved

    def get_secret(self, email: str) -> str | None:
        with self._lock:
            return self._secrets.get(email)

    def set_secret(self, email: str, secret_hash: str, event: AuditEvent | None = None) -> bool:
        with self._lock:
            if email not in self._secrets:
                return False
            self._secrets[email] = secret_hash
            if event is not None:
                self._append_audit(event)
            return True

    def put_recovery_token(self, record: RecoveryToken, event: AuditEvent | None = None) -> None:
        with self._lock:
            self._recovery_tokens[record.email] = record
            if event is not None:
                self._append_audit(event)

    def get_recovery_token(self, email: str) -> RecoveryToken | None:
        with self._lock:
            return self._recovery_tokens.get(email)

    def write_audit_event(self, event: AuditEvent) -> None:
        with self._lock:
            self._append_audit(event)

    def list_audit_events(self, account_id: str, limit: int = 50) -> list[AuditLogRecord]:
        with self._lock:
            matches = [record for record in self.audit_log if record.account_id == account_id]
        matches.sort(key=lambda r: (r.created_at, r.audit_id), reverse=True)
        return matches[: clamp_limit(limit)]

    def _append_audit(self, event: AuditEvent) -> None:
        self.audit_log.append(
            AuditLogRecord(
                audit_id=next(self._audit_ids),
                account_id=event.account_id,
                event_type=event.event_type,
                metadata=dict(event.metadata),
                created_at=datetime.now(timezone.utc),
            )
        )
