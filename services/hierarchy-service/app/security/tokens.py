"""Validation of session bearer tokens issued by the identity service."""

from __future__ import annotations

from dataclasses import dataclass

import jwt

from ..config import get_settings


@dataclass(slots=True, frozen=True)
class Principal:
    """Authenticated caller: the user and the session whose context they act in."""

    user_id: str
    session_id: str


def decode_access_token(token: str) -> Principal:
    """Verify a JWT and return the caller it identifies.

    Raises
    ------
    jwt.PyJWTError
        Propagated when the token is invalid, expired, signed by another issuer,
        or lacks the `sub`/`sid` claims.
    """

    settings = get_settings()
    claims = jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=["HS256"],
        issuer=settings.jwt_issuer,
        options={"require": ["sub", "sid", "exp"]},
    )
    return Principal(user_id=claims["sub"], session_id=claims["sid"])
