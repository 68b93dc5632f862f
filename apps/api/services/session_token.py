"""Backend session tokens issued after a verified sign-in."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "pet_persona_session"


@dataclass(frozen=True)
class IssuedSession:
    token: str
    expires_at: int


@dataclass(frozen=True)
class SessionClaims:
    user_id: str
    email: Optional[str] = None


def _session_lifetime(expires_hours: Optional[int]) -> timedelta:
    hours = expires_hours or settings.JWT_EXPIRATION_HOURS or 24
    return timedelta(hours=max(int(hours), 1))


def issue_session(user_id: str, email: Optional[str] = None, expires_hours: Optional[int] = None) -> IssuedSession:
    issued_at = datetime.now(timezone.utc)
    expires_at = int((issued_at + _session_lifetime(expires_hours)).timestamp())
    claims: Dict[str, Any] = {
        "sub": user_id,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(issued_at.timestamp()),
        "exp": expires_at,
    }
    if email:
        claims["email"] = email
    token = jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    return IssuedSession(token=token, expires_at=expires_at)


def read_session(token: str) -> SessionClaims:
    """Validate a session token; raises ValueError when it is unusable."""
    try:
        claims = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if claims.get("type") != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")
    user_id = str(claims.get("sub") or "").strip()
    if not user_id:
        raise ValueError("Session token missing subject.")
    return SessionClaims(user_id=user_id, email=str(claims.get("email") or "") or None)
