"""Prometheus counters describing ledger activity."""

from __future__ import annotations

from prometheus_client import Counter

REGISTRATIONS = Counter(
    "ledger_registrations_total",
    "Accounts opened through registration.",
)
GENERATIONS_CONSUMED = Counter(
    "ledger_generations_consumed_total",
    "Generations charged against an account, by tier.",
    ["tier"],
)
QUOTA_DENIALS = Counter(
    "ledger_quota_denials_total",
    "Consumption attempts refused because the free quota was exhausted.",
)
RECOVERY_TOKENS_ISSUED = Counter(
    "ledger_recovery_tokens_issued_total",
    "Password recovery tokens issued.",
)
