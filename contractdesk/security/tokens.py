"""Utilities for minting and verifying auth-provider session JWTs."""

from __future__ import annotations

import time
from typing import Any

import jwt

from ..config import get_settings


def issue_session_token(*, subject: str, email: str | None = None, ttl_seconds: int | None = None) -> tuple[str, int]:
    """Create a session JWT shaped like the ones the auth provider hands out.

    Parameters
    ----------
    subject:
        Auth-provider user identifier embedded in the ``sub`` claim.
    email:
        Optional email claim.
    ttl_seconds:
        Lifetime override; defaults to the configured session TTL.

    Returns
    -------
    tuple[str, int]
        A tuple containing the encoded JWT string and its TTL (in seconds).
    """

    settings = get_settings()
    now = int(time.time())
    expires_in = ttl_seconds if ttl_seconds is not None else settings.session_ttl_seconds
    payload: dict[str, Any] = {
        "sub": subject,
        "aud": settings.jwt_audience,
        "role": "authenticated",
        "iat": now,
        "exp": now + expires_in,
    }
    if email:
        payload["email"] = email

    token = jwt.encode(payload, settings.jwt_secret, algorithm="HS256")
    return token, expires_in


def decode_session_token(token: str) -> dict[str, Any]:
    """Decode and verify a session JWT returning its payload.

    Raises
    ------
    jwt.PyJWTError
        Propagated when the token is malformed, expired, or signed with another secret.
    """

    settings = get_settings()
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=["HS256"],
        audience=settings.jwt_audience,
        options={"require": ["sub", "exp"]},
    )
