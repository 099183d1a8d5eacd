"""Utilities for issuing and validating session tokens."""

from __future__ import annotations

import time
from typing import Any

import jwt

from ..config import get_settings


def issue_session_token(account_id: str) -> tuple[str, int]:
    """Create a signed JWT identifying an authenticated account.

    The token carries only the account id. Role and balance are re-read from
    storage on every request, so nothing else is trusted from the client.

    Parameters
    ----------
    account_id:
        Account identifier to embed in the token `sub` claim.

    Returns
    -------
    tuple[str, int]
        A tuple containing the encoded JWT string and its TTL (in seconds).
    """

    settings = get_settings()
    now = int(time.time())
    expires_in = settings.session_ttl_seconds
    payload: dict[str, Any] = {
        "iss": settings.jwt_issuer,
        "sub": account_id,
        "iat": now,
        "exp": now + expires_in,
    }
    token = jwt.encode(payload, settings.jwt_secret, algorithm="HS256")
    return token, expires_in


def decode_session_token(token: str) -> str:
    """Verify a session token and return the account id it names.

    Raises
    ------
    jwt.PyJWTError
        Propagated when the token is invalid, expired, or signed by another issuer.
    """

    settings = get_settings()
    claims = jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=["HS256"],
        issuer=settings.jwt_issuer,
        options={"require": ["sub", "exp"]},
    )
    return str(claims["sub"])
