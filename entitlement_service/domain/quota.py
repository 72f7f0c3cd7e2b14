"""Free-tier quota arithmetic and the daily reset boundary."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

from .account import Account


class QuotaPolicy:
    """Fixed daily allowance for free accounts, reset at midnight in a fixed UTC offset.

    Every account shares the same reset instant regardless of the caller's own time zone.
    Applying a reset pins ``last_reset_at`` to the boundary rather than to "now", so a
    second application inside the same period is a no-op.
    """

    def __init__(self, limit: int = 3, utc_offset_hours: int = 6) -> None:
        if limit < 0:
            raise ValueError("limit must be non-negative")
        self.limit = limit
        self._zone = timezone(timedelta(hours=utc_offset_hours))

    def current_boundary(self, now: datetime) -> datetime:
        """Return the most recent local midnight in the reference zone as a UTC instant."""
        if now.tzinfo is None:
            raise ValueError("now must be timezone-aware")
        local = now.astimezone(self._zone)
        midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
        return midnight.astimezone(timezone.utc)

    def reset_due(self, account: Account, now: datetime) -> bool:
        if account.is_premium:
            return False
        if account.last_reset_at is None:
            return True
        return account.last_reset_at < self.current_boundary(now)

    def refresh(self, account: Account, now: datetime) -> tuple[Account, bool]:
        """Return ``(account, applied)`` with any due reset applied to the copy."""
        if not self.reset_due(account, now):
            return account, False
        return (
            replace(account, usage_count=0, last_reset_at=self.current_boundary(now)),
            True,
        )

    def can_consume(self, account: Account) -> bool:
        return account.is_premium or account.usage_count < self.limit

    def remaining_free(self, account: Account) -> int | None:
        """Generations left this period; ``None`` means unbounded (premium)."""
        if account.is_premium:
            return None
        return max(0, self.limit - account.usage_count)
