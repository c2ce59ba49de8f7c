"""Signed bearer tokens identifying the acting user."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "vip_session"


@dataclass(frozen=True)
class SessionClaims:
    user_id: str
    email: Optional[str]
    expires_at: int


def issue_session_token(user_id: str, email: Optional[str] = None, ttl_hours: Optional[int] = None) -> str:
    """Sign an HS256 session token for ``user_id``."""
    issued_at = datetime.now(timezone.utc)
    hours = max(int(ttl_hours or settings.JWT_EXPIRATION_HOURS or 24), 1)
    claims = {
        "sub": user_id,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + timedelta(hours=hours)).timestamp()),
    }
    if email:
        claims["email"] = email
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def read_session_token(token: str) -> SessionClaims:
    """Verify signature, expiry and token type. Raises ValueError when any check fails."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if str(payload.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")
    user_id = str(payload.get("sub", "")).strip()
    if not user_id:
        raise ValueError("Session token missing subject.")
    return SessionClaims(
        user_id=user_id,
        email=str(payload.get("email", "")).strip() or None,
        expires_at=int(payload.get("exp", 0)),
    )
