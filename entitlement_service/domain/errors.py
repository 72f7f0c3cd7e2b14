"""Expected, recoverable ledger outcomes.

All of these subclass :class:`ValueError` so callers that only care about "the request was
refused" can catch a single type. Storage failures are never wrapped in these classes.
"""

from __future__ import annotations


class LedgerError(ValueError):
    """Base class for refusals reported back to the caller."""


class DuplicateEmail(LedgerError):
    def __init__(self, email: str) -> None:
        super().__init__(f"account already exists for {email}")
        self.email = email


class AccountNotFound(LedgerError):
    def __init__(self, key: str) -> None:
        super().__init__("account not found")
        self.key = key


class InvalidCredential(LedgerError):
    def __init__(self) -> None:
        super().__init__("invalid credentials")


class QuotaExceeded(LedgerError):
    def __init__(self, account_id: str, limit: int) -> None:
        super().__init__(f"free generation quota of {limit} exhausted")
        self.account_id = account_id
        self.limit = limit


class ConcurrentUpdateError(LedgerError):
    """Raised when an account kept changing underneath a write after all retries."""

    def __init__(self, account_id: str) -> None:
        super().__init__("account was modified concurrently, retry the request")
        self.account_id = account_id
