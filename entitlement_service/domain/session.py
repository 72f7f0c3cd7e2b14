from __future__ import annotations

from dataclasses import dataclass

from .account import Account


@dataclass(slots=True)
class Session:
    """Per-client pointer to the currently authenticated account.

    Only :class:`~entitlement_service.domain.service.EntitlementLedger` binds, refreshes
    or clears a session; callers own the instance and pass it through their own context
    (one per connection or request).
    """

    account_id: str | None = None
    account: Account | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.account_id is not None

    def points_at(self, account_id: str) -> bool:
        return self.account_id is not None and self.account_id == account_id

    def bind(self, account: Account) -> None:
        self.account_id = account.account_id
        self.account = account

    def refresh(self, account: Account) -> None:
        """Replace the cached snapshot when the session points at ``account``."""
        if self.points_at(account.account_id):
            self.account = account

    def clear(self) -> None:
        self.account_id = None
        self.account = None
