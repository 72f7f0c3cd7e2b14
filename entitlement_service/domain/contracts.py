"""Domain-level request contracts shared by multiple layers."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class RegisterInput:
    """Validated inputs required to open a new free-tier account."""

    email: str
    password: str
    name: str


def normalise_email(email: str) -> str:
    """Return the canonical store key for an email address."""
    return email.strip().lower()
