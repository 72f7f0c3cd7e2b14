from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(slots=True, frozen=True)
class Account:
    """Profile and entitlement record for a single registered email."""

    account_id: str
    email: str
    name: str
    created_at: datetime
    usage_count: int = 0
    is_premium: bool = False
    last_reset_at: datetime | None = None
    version: int = 1


@dataclass(slots=True, frozen=True)
class RecoveryToken:
    """Hashed recovery token on file for an email, valid until ``expires_at``."""

    email: str
    token_hash: str
    expires_at: datetime
