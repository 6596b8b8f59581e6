"""Access token signing and verification (JWT, `sub` = player id)."""
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from app.core.config import Settings, get_settings


def create_access_token(
    subject: str,
    extra: dict[str, Any] | None = None,
    settings: Settings | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a signed access token for the player id `subject`."""
    settings = settings or get_settings()
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.access_token_expire_minutes)
    expire = datetime.now(timezone.utc) + expires_delta
    to_encode = {"sub": str(subject), "exp": expire, "type": "access"}
    if extra:
        to_encode.update(extra)
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def decode_access_token(token: str, settings: Settings | None = None) -> dict | None:
    """Return the verified claims, or None for a bad / expired token."""
    settings = settings or get_settings()
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None


def subject_from_token(token: str | None, settings: Settings | None = None) -> str | None:
    if not token:
        return None
    claims = decode_access_token(token, settings)
    if not claims or claims.get("type", "access") != "access":
        return None
    sub = claims.get("sub")
    return str(sub) if sub else None
