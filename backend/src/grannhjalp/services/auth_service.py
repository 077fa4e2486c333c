"""Token validation for the external identity provider.

Users sign up and log in elsewhere; this service only verifies the bearer
tokens it issues and reads the identity claims from them.
"""

from dataclasses import dataclass

from jose import JWTError, jwt

from grannhjalp.app.config import get_settings


@dataclass(frozen=True)
class CurrentUser:
    id: str
    email: str | None = None
    role: str = "user"


def decode_token(token: str) -> dict | None:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def user_from_claims(payload: dict) -> CurrentUser | None:
    """Build the caller's identity from verified claims, or None if incomplete."""
    subject = payload.get("sub")
    if not subject:
        return None
    return CurrentUser(
        id=str(subject),
        email=payload.get("email"),
        role=payload.get("role") or "user",
    )
