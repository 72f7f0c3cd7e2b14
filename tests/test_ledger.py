from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from conftest import signup
from entitlement_service.domain.errors import (
    AccountNotFound,
    ConcurrentUpdateError,
    DuplicateEmail,
    InvalidCredential,
    QuotaExceeded,
)
from entitlement_service.domain.service import EntitlementLedger
from entitlement_service.domain.session import Session
from entitlement_service.memory_repository import InMemoryLedgerRepository

TODAY_BOUNDARY = datetime(2024, 5, 9, 18, 0, tzinfo=timezone.utc)
TOMORROW_BOUNDARY = datetime(2024, 5, 10, 18, 0, tzinfo=timezone.utc)


def _set_usage(repository, account, usage_count, last_reset_at=TODAY_BOUNDARY):
    stored = repository.get_account(account.account_id)
    return repository.save_account(
        replace(stored, usage_count=usage_count, last_reset_at=last_reset_at), stored.version
    )


def _run_concurrently(count, target):
    barrier = threading.Barrier(count)
    outcomes: list[str] = []
    guard = threading.Lock()

    def worker() -> None:
        barrier.wait()
        outcome = target()
        with guard:
            outcomes.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return outcomes


def test_register_creates_free_account_and_binds_session(ledger, repository):
    session = Session()
    account = ledger.register(session, signup(email="  Ada@Example.com "))

    assert account.email == "ada@example.com"
    assert account.usage_count == 0
    assert not account.is_premium
    assert account.last_reset_at == TODAY_BOUNDARY
    assert session.account_id == account.account_id
    assert repository.get_secret("ada@example.com") is not None
    assert [e.event_type for e in repository.audit_log] == ["account.registered"]


def test_register_duplicate_email_fails_and_keeps_first_account(ledger, repository):
    first = ledger.register(Session(), signup())
    ledger.consume(first.account_id)
    session = Session()

    with pytest.raises(DuplicateEmail):
        ledger.register(session, signup(email="ADA@example.com", password="other-pass", name="Imposter"))

    stored = repository.find_account_by_email("ada@example.com")
    assert stored.account_id == first.account_id
    assert stored.name == "Ada"
    assert stored.usage_count == 1
    assert not session.is_authenticated
    assert ledger.login(Session(), "ada@example.com", "hunter22").account_id == first.account_id


def test_concurrent_registration_creates_a_single_account(ledger):
    def attempt() -> str:
        try:
            ledger.register(Session(), signup())
            return "created"
        except DuplicateEmail:
            return "duplicate"

    outcomes = _run_concurrently(8, attempt)
    assert outcomes.count("created") == 1
    assert outcomes.count("duplicate") == 7


def test_login_binds_session(ledger):
    account = ledger.register(Session(), signup())
    session = Session()
    assert ledger.login(session, "ada@example.com", "hunter22").account_id == account.account_id
    assert session.points_at(account.account_id)


def test_login_with_wrong_password_leaves_session_untouched(ledger):
    ledger.register(Session(), signup())
    other = ledger.register(Session(), signup(email="grace@example.com", name="Grace"))
    session = Session()
    session.bind(other)

    with pytest.raises(InvalidCredential):
        ledger.login(session, "ada@example.com", "wrong-password")

    assert session.account_id == other.account_id


def test_login_unknown_email(ledger):
    with pytest.raises(AccountNotFound):
        ledger.login(Session(), "nobody@example.com", "whatever")


def test_logout_clears_session(ledger):
    session = Session()
    ledger.register(session, signup())
    ledger.logout(session)
    assert not session.is_authenticated
    assert ledger.get_current_account(session) is None
    ledger.logout(session)


def test_consume_until_quota_exhausted(ledger, repository):
    account = ledger.register(Session(), signup())
    _set_usage(repository, account, 2)

    updated = ledger.consume(account.account_id)
    assert updated.usage_count == 3
    assert ledger.remaining_free(updated) == 0

    with pytest.raises(QuotaExceeded):
        ledger.consume(account.account_id)
    assert repository.get_account(account.account_id).usage_count == 3
    assert repository.audit_log[-1].event_type == "usage.denied"


def test_consume_refreshes_session_pointing_at_account(ledger):
    session = Session()
    account = ledger.register(session, signup())
    ledger.consume(account.account_id, session)
    assert session.account.usage_count == 1

    unrelated = Session()
    ledger.register(unrelated, signup(email="grace@example.com", name="Grace"))
    ledger.consume(account.account_id, unrelated)
    assert unrelated.account.usage_count == 0


def test_consume_unknown_account(ledger):
    with pytest.raises(AccountNotFound):
        ledger.consume("missing")


def test_consume_resets_stale_period_before_incrementing(ledger, repository, clock):
    account = ledger.register(Session(), signup())
    _set_usage(repository, account, 3)
    clock.advance(hours=7)  # 01:00 local the next day

    updated = ledger.consume(account.account_id)

    assert updated.usage_count == 1
    assert updated.last_reset_at == TOMORROW_BOUNDARY
    assert repository.audit_log[-1].metadata["reset_applied"] is True


def test_get_current_account_applies_due_reset(ledger, repository, clock):
    session = Session()
    account = ledger.register(session, signup())
    _set_usage(repository, account, 3)
    clock.advance(hours=7)

    current = ledger.get_current_account(session)

    assert current.usage_count == 0
    assert current.last_reset_at == TOMORROW_BOUNDARY
    assert session.account == current
    assert repository.get_account(account.account_id) == current
    assert ledger.remaining_free(current) + current.usage_count == 3
    assert ledger.consume(account.account_id).usage_count == 1


def test_no_reset_before_local_midnight(ledger, repository, clock):
    session = Session()
    account = ledger.register(session, signup())
    _set_usage(repository, account, 3)
    clock.advance(hours=5, minutes=59)  # 23:59 local

    assert ledger.get_current_account(session).usage_count == 3
    assert not ledger.can_consume(repository.get_account(account.account_id))


def test_repeated_reads_within_period_do_not_rewrite(ledger, repository, clock):
    session = Session()
    account = ledger.register(session, signup())
    _set_usage(repository, account, 2, last_reset_at=None)

    first = ledger.get_current_account(session)
    clock.advance(hours=1)
    second = ledger.get_current_account(session)

    assert first.version == second.version
    assert [e.event_type for e in repository.audit_log].count("quota.reset") == 1


def test_get_current_account_clears_session_for_vanished_account(ledger):
    session = Session(account_id="gone")
    assert ledger.get_current_account(session) is None
    assert not session.is_authenticated


def test_remaining_free_plus_usage_equals_limit_after_reset(ledger, repository, clock):
    session = Session()
    account = ledger.register(session, signup())
    for _ in range(3):
        ledger.consume(account.account_id)
    clock.advance(days=1)

    current = ledger.get_current_account(session)
    assert ledger.remaining_free(current) + current.usage_count == 3


def test_concurrent_consume_never_exceeds_limit(ledger, repository):
    account = ledger.register(Session(), signup())

    def attempt() -> str:
        try:
            ledger.consume(account.account_id)
            return "ok"
        except QuotaExceeded:
            return "denied"

    outcomes = _run_concurrently(16, attempt)
    assert outcomes.count("ok") == 3
    assert outcomes.count("denied") == 13
    assert repository.get_account(account.account_id).usage_count == 3


def test_ledgers_sharing_storage_still_respect_limit(repository, clock):
    # two ledgers model two processes: only the store's compare-and-swap separates them
    first = EntitlementLedger(repository, clock=clock, password_rounds=4)
    second = EntitlementLedger(repository, clock=clock, password_rounds=4)
    account = first.register(Session(), signup())
    turn = iter(range(1000))
    turn_lock = threading.Lock()

    def attempt() -> str:
        with turn_lock:
            ledger = first if next(turn) % 2 else second
        try:
            ledger.consume(account.account_id)
            return "ok"
        except QuotaExceeded:
            return "denied"

    outcomes = _run_concurrently(12, attempt)
    assert outcomes.count("ok") == 3
    assert repository.get_account(account.account_id).usage_count == 3


class FlakyRepository(InMemoryLedgerRepository):
    """Reports a version conflict for the first ``conflicts`` saves."""

    def __init__(self, conflicts: int) -> None:
        super().__init__()
        self.conflicts = conflicts
        self.save_calls = 0

    def save_account(self, account, expected_version, event=None):
        self.save_calls += 1
        if self.conflicts > 0:
            self.conflicts -= 1
            return None
        return super().save_account(account, expected_version, event)


def test_consume_retries_after_version_conflict(clock):
    repository = FlakyRepository(conflicts=0)
    ledger = EntitlementLedger(repository, clock=clock, password_rounds=4)
    account = ledger.register(Session(), signup())
    repository.conflicts = 2

    assert ledger.consume(account.account_id).usage_count == 1
    assert repository.save_calls == 3


def test_consume_gives_up_after_persistent_conflicts(clock):
    repository = FlakyRepository(conflicts=0)
    ledger = EntitlementLedger(repository, clock=clock, password_rounds=4)
    account = ledger.register(Session(), signup())
    repository.conflicts = 100

    with pytest.raises(ConcurrentUpdateError):
        ledger.consume(account.account_id)
    assert repository.get_account(account.account_id).usage_count == 0


def test_upgrade_to_premium_is_idempotent(ledger, repository):
    session = Session()
    account = ledger.register(session, signup())

    upgraded = ledger.upgrade_to_premium(account.account_id, session)
    again = ledger.upgrade_to_premium(account.account_id, session)

    assert upgraded.is_premium
    assert again == upgraded
    assert session.account.is_premium
    assert ledger.remaining_free(again) is None
    assert [e.event_type for e in repository.audit_log].count("account.upgraded") == 1


def test_premium_accounts_consume_without_limit(ledger):
    account = ledger.register(Session(), signup())
    ledger.upgrade_to_premium(account.account_id)
    for _ in range(10):
        latest = ledger.consume(account.account_id)
    assert latest.usage_count == 10
    assert ledger.can_consume(latest)


def test_upgrade_unknown_account(ledger):
    with pytest.raises(AccountNotFound):
        ledger.upgrade_to_premium("missing")


def test_recovery_token_valid_for_one_hour(ledger, clock):
    ledger.register(Session(), signup())
    token = ledger.request_recovery("ada@example.com")

    assert ledger.verify_recovery("ada@example.com", token)
    clock.advance(seconds=3599)
    assert ledger.verify_recovery("ADA@example.com", token)
    clock.advance(seconds=1)
    assert not ledger.verify_recovery("ada@example.com", token)


def test_new_recovery_token_supersedes_previous(ledger):
    ledger.register(Session(), signup())
    first = ledger.request_recovery("ada@example.com")
    second = ledger.request_recovery("ada@example.com")

    assert first != second
    assert not ledger.verify_recovery("ada@example.com", first)
    assert ledger.verify_recovery("ada@example.com", second)


def test_verification_does_not_consume_token(ledger):
    ledger.register(Session(), signup())
    token = ledger.request_recovery("ada@example.com")
    assert all(ledger.verify_recovery("ada@example.com", token) for _ in range(3))


def test_verify_recovery_without_token_or_with_wrong_token(ledger):
    ledger.register(Session(), signup())
    assert not ledger.verify_recovery("ada@example.com", "anything")
    ledger.request_recovery("ada@example.com")
    assert not ledger.verify_recovery("ada@example.com", "not-the-token")
    assert not ledger.verify_recovery("nobody@example.com", "anything")


def test_request_recovery_unknown_email(ledger):
    with pytest.raises(AccountNotFound):
        ledger.request_recovery("nobody@example.com")


def test_reset_password_replaces_credential(ledger):
    ledger.register(Session(), signup())
    token = ledger.request_recovery("ada@example.com")
    assert ledger.verify_recovery("ada@example.com", token)

    ledger.reset_password("ada@example.com", "new-secret")

    with pytest.raises(InvalidCredential):
        ledger.login(Session(), "ada@example.com", "hunter22")
    assert ledger.login(Session(), "ada@example.com", "new-secret").email == "ada@example.com"


def test_reset_password_unknown_email(ledger):
    with pytest.raises(AccountNotFound):
        ledger.reset_password("nobody@example.com", "new-secret")


def test_reset_password_with_token_replaces_credential(ledger, repository):
    ledger.register(Session(), signup())
    token = ledger.request_recovery("ada@example.com")

    assert not ledger.reset_password_with_token("ada@example.com", "wrong", "brand-new")
    assert ledger.reset_password_with_token("ADA@example.com", token, "brand-new")

    assert ledger.login(Session(), "ada@example.com", "brand-new")
    assert [e.event_type for e in repository.audit_log].count("password.reset") == 1


def test_reset_password_with_token_unknown_email(ledger):
    with pytest.raises(AccountNotFound):
        ledger.reset_password_with_token("nobody@example.com", "token", "brand-new")


class RacingRecoveryRepository(InMemoryLedgerRepository):
    """Starts a competing recovery request while a token is being checked."""

    def __init__(self) -> None:
        super().__init__()
        self.ledger = None
        self.competitor = None
        self.competitor_finished_early = None

    def get_recovery_token(self, email):
        record = super().get_recovery_token(email)
        if self.ledger is not None and self.competitor is None:
            self.competitor = threading.Thread(target=self.ledger.request_recovery, args=(email,))
            self.competitor.start()
            self.competitor.join(timeout=0.2)
            self.competitor_finished_early = not self.competitor.is_alive()
        return record


def test_recovery_request_waits_for_token_redemption(clock):
    repository = RacingRecoveryRepository()
    ledger = EntitlementLedger(repository, clock=clock, password_rounds=4)
    ledger.register(Session(), signup())
    token = ledger.request_recovery("ada@example.com")
    repository.ledger = ledger

    assert ledger.reset_password_with_token("ada@example.com", token, "brand-new")
    repository.competitor.join()

    assert repository.competitor_finished_early is False
    assert not ledger.verify_recovery("ada@example.com", token)
