"""Database repository for accounts, credentials, recovery tokens and the audit log."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from psycopg.errors import UniqueViolation
from psycopg.rows import tuple_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool

from .domain.account import Account, RecoveryToken
from .domain.errors import DuplicateEmail

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS accounts (
    account_id    TEXT PRIMARY KEY,
    email         TEXT NOT NULL UNIQUE,
    name          TEXT NOT NULL,
    usage_count   INTEGER NOT NULL DEFAULT 0 CHECK (usage_count >= 0),
    is_premium    BOOLEAN NOT NULL DEFAULT FALSE,
    last_reset_at TIMESTAMPTZ,
    created_at    TIMESTAMPTZ NOT NULL,
    version       INTEGER NOT NULL DEFAULT 1
);
CREATE TABLE IF NOT EXISTS credentials (
    email       TEXT PRIMARY KEY REFERENCES accounts (email) ON DELETE CASCADE,
    secret_hash TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS recovery_tokens (
    email      TEXT PRIMARY KEY REFERENCES accounts (email) ON DELETE CASCADE,
    token_hash TEXT NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL
);
CREATE TABLE IF NOT EXISTS ledger_audit_log (
    audit_id   BIGSERIAL PRIMARY KEY,
    account_id TEXT,
    event_type TEXT NOT NULL,
    metadata   JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS ledger_audit_log_account_idx
    ON ledger_audit_log (account_id, created_at DESC, audit_id DESC);
"""

_ACCOUNT_COLUMNS = (
    "account_id, email, name, created_at, usage_count, is_premium, last_reset_at, version"
)


@dataclass(slots=True)
class AuditEvent:
    """Audit entry written in the same unit of work as the mutation it describes."""

    event_type: str
    account_id: str | None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class AuditLogRecord:
    """Row projection for items in ledger_audit_log."""

    audit_id: int
    account_id: str | None
    event_type: str
    metadata: dict[str, Any]
    created_at: datetime


class LedgerRepository(Protocol):
    """Storage contract the ledger relies on; every method is atomic on its own."""

    def create_account(
        self, account: Account, secret_hash: str, event: AuditEvent | None = None
    ) -> None: ...

    def get_account(self, account_id: str) -> Account | None: ...

    def find_account_by_email(self, email: str) -> Account | None: ...

    def save_account(
        self, account: Account, expected_version: int, event: AuditEvent | None = None
    ) -> Account | None: ...

    def get_secret(self, email: str) -> str | None: ...

    def set_secret(self, email: str, secret_hash: str, event: AuditEvent | None = None) -> bool: ...

    def put_recovery_token(self, record: RecoveryToken, event: AuditEvent | None = None) -> None: ...

    def get_recovery_token(self, email: str) -> RecoveryToken | None: ...

    def write_audit_event(self, event: AuditEvent) -> None: ...

    def list_audit_events(self, account_id: str, limit: int = 50) -> list[AuditLogRecord]: ...


def clamp_limit(limit: int) -> int:
    return max(1, min(limit, 100))


class PostgresLedgerRepository:
    """Postgres-backed ledger persistence with compare-and-swap account writes."""

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    def ensure_schema(self) -> None:
        """Create the ledger tables when they do not exist yet."""
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(SCHEMA_SQL)
            conn.commit()

    def create_account(
        self, account: Account, secret_hash: str, event: AuditEvent | None = None
    ) -> None:
        """Insert the account and its credential together, or neither."""
        with self._pool.connection() as conn:
            try:
                with conn.transaction():
                    with conn.cursor() as cur:
                        cur.execute(
                            f"""
                            INSERT INTO accounts ({_ACCOUNT_COLUMNS})
                            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                            """,
                            (
                                account.account_id,
                                account.email,
                                account.name,
                                account.created_at,
                                account.usage_count,
                                account.is_premium,
                                account.last_reset_at,
                                account.version,
                            ),
                        )
                        cur.execute(
                            "INSERT INTO credentials (email, secret_hash) VALUES (%s, %s)",
                            (account.email, secret_hash),
                        )
                        if event is not None:
                            self._insert_audit(cur, event)
            except UniqueViolation as exc:
                raise DuplicateEmail(account.email) from exc

    def get_account(self, account_id: str) -> Account | None:
        return self._fetch_account("account_id", account_id)

    def find_account_by_email(self, email: str) -> Account | None:
        return self._fetch_account("email", email)

    def _fetch_account(self, column: str, value: str) -> Account | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE {column} = %s",
                    (value,),
                )
                row = cur.fetchone()
        if not row:
            return None
        return self._map_account(row)

    def save_account(
        self, account: Account, expected_version: int, event: AuditEvent | None = None
    ) -> Account | None:
        """Overwrite the mutable fields if the stored version still matches.

        Returns the stored account with its bumped version, or ``None`` when another
        writer got there first.
        """
        with self._pool.connection() as conn:
            with conn.transaction():
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(
                        f"""
                        UPDATE accounts
                        SET name = %s,
                            usage_count = %s,
                            is_premium = %s,
                            last_reset_at = %s,
                            version = version + 1
                        WHERE account_id = %s AND version = %s
                        RETURNING {_ACCOUNT_COLUMNS}
                        """,
                        (
                            account.name,
                            account.usage_count,
                            account.is_premium,
                            account.last_reset_at,
                            account.account_id,
                            expected_version,
                        ),
                    )
                    row = cur.fetchone()
                    if row is None:
                        return None
                    if event is not None:
                        self._insert_audit(cur, event)
        return self._map_account(row)

    def get_secret(self, email: str) -> str | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute("SELECT secret_hash FROM credentials WHERE email = %s", (email,))
                row = cur.fetchone()
        return row[0] if row else None

    def set_secret(self, email: str, secret_hash: str, event: AuditEvent | None = None) -> bool:
        with self._pool.connection() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(
                        "UPDATE credentials SET secret_hash = %s WHERE email = %s",
                        (secret_hash, email),
                    )
                    if cur.rowcount == 0:
                        return False
                    if event is not None:
                        self._insert_audit(cur, event)
        return True

    def put_recovery_token(self, record: RecoveryToken, event: AuditEvent | None = None) -> None:
        """Store the token for the email, replacing whatever was there before."""
        with self._pool.connection() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        INSERT INTO recovery_tokens (email, token_hash, expires_at)
                        VALUES (%s, %s, %s)
                        ON CONFLICT (email) DO UPDATE
                        SET token_hash = EXCLUDED.token_hash, expires_at = EXCLUDED.expires_at
                        """,
                        (record.email, record.token_hash, record.expires_at),
                    )
                    if event is not None:
                        self._insert_audit(cur, event)

    def get_recovery_token(self, email: str) -> RecoveryToken | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    "SELECT email, token_hash, expires_at FROM recovery_tokens WHERE email = %s",
                    (email,),
                )
                row = cur.fetchone()
        if not row:
            return None
        return RecoveryToken(email=row[0], token_hash=row[1], expires_at=row[2])

    def write_audit_event(self, event: AuditEvent) -> None:
        """Record an audit trail entry that is not tied to a state change."""
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                self._insert_audit(cur, event)
            conn.commit()

    def list_audit_events(self, account_id: str, limit: int = 50) -> list[AuditLogRecord]:
        """Return the newest audit entries for an account."""
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    SELECT audit_id, account_id, event_type, metadata, created_at
                    FROM ledger_audit_log
                    WHERE account_id = %s
                    ORDER BY created_at DESC, audit_id DESC
                    LIMIT %s
                    """,
                    (account_id, clamp_limit(limit)),
                )
                rows = cur.fetchall()
        return [
            AuditLogRecord(
                audit_id=row[0],
                account_id=row[1],
                event_type=row[2],
                metadata=row[3] or {},
                created_at=row[4],
            )
            for row in rows
        ]

    def _insert_audit(self, cur: Any, event: AuditEvent) -> None:
        cur.execute(
            """
            INSERT INTO ledger_audit_log (account_id, event_type, metadata)
            VALUES (%s, %s, %s)
            """,
            (event.account_id, event.event_type, Json(event.metadata)),
        )

    def _map_account(self, row: tuple) -> Account:
        """Convert a raw database tuple into the domain ``Account`` dataclass."""
        return Account(
            account_id=row[0],
            email=row[1],
            name=row[2],
            created_at=row[3],
            usage_count=row[4],
            is_premium=row[5],
            last_reset_at=row[6],
            version=row[7],
        )
