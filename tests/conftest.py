from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from entitlement_service.domain.contracts import RegisterInput
from entitlement_service.domain.service import EntitlementLedger
from entitlement_service.memory_repository import InMemoryLedgerRepository

# 18:00 local time in UTC+6, so today's boundary is 2024-05-09T18:00Z
START = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock injected wherever the code under test asks for "now"."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def repository() -> InMemoryLedgerRepository:
    return InMemoryLedgerRepository()


@pytest.fixture
def ledger(repository, clock) -> EntitlementLedger:
    return EntitlementLedger(repository, clock=clock, password_rounds=4)


def signup(email: str = "ada@example.com", password: str = "hunter22", name: str = "Ada") -> RegisterInput:
    return RegisterInput(email=email, password=password, name=name)
