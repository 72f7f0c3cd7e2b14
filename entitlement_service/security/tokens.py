"""Utilities for issuing and validating session JWTs and recovery tokens."""

from __future__ import annotations

import hashlib
import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Any

import jwt

from ..config import get_settings


@dataclass(slots=True)
class SessionToken:
    """Encoded bearer token together with the identifiers needed to revoke it."""

    token: str
    token_id: str
    expires_in: int


def issue_session_token(*, account_id: str) -> SessionToken:
    """Create a signed JWT binding a client session to an account.

    Parameters
    ----------
    account_id:
        Account identifier to embed in the token ``sub`` claim.

    Returns
    -------
    SessionToken
        The encoded JWT, its ``jti`` and its TTL in seconds.
    """

    settings = get_settings()
    now = int(time.time())
    expires_in = settings.jwt_ttl_seconds
    token_id = uuid.uuid4().hex
    payload: dict[str, Any] = {
        "iss": settings.jwt_issuer,
        "sub": account_id,
        "jti": token_id,
        "iat": now,
        "exp": now + expires_in,
    }
    token = jwt.encode(payload, settings.jwt_secret, algorithm="HS256")
    return SessionToken(token=token, token_id=token_id, expires_in=expires_in)


def decode_session_token(token: str) -> dict[str, Any]:
    """Decode and verify a session JWT returning its payload.

    Raises
    ------
    jwt.PyJWTError
        Propagated when the token is invalid, expired, or signed by another issuer.
    """

    settings = get_settings()
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=["HS256"],
        issuer=settings.jwt_issuer,
        options={"require": ["sub", "jti", "exp"]},
    )


def generate_recovery_token() -> tuple[str, str]:
    """Generate a short recovery token string and its SHA-256 hash."""
    token = secrets.token_urlsafe(6)
    return token, hash_recovery_token(token)


def hash_recovery_token(token: str) -> str:
    """Return the SHA-256 hex digest for a recovery token string."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
