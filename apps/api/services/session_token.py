"""Signed session tokens carrying the identity provider's user claims.

The login flow exchanges a provider identity for one of these tokens; every
credits and billing call presents it as a Bearer credential.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import ExpiredSignatureError, JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "instagen_session"


@dataclass(frozen=True)
class SessionClaims:
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    expires_at: Optional[int] = None


def issue_session_token(
    user_id: str,
    *,
    email: Optional[str] = None,
    name: Optional[str] = None,
    ttl_hours: Optional[int] = None,
) -> str:
    subject = (user_id or "").strip()
    if not subject:
        raise ValueError("user_id is required to issue a session token.")

    issued_at = datetime.now(timezone.utc)
    lifetime = timedelta(hours=max(int(ttl_hours or settings.JWT_EXPIRATION_HOURS or 24), 1))
    claims: Dict[str, Any] = {
        "sub": subject,
        "iss": settings.JWT_ISSUER,
        "typ": SESSION_TOKEN_TYPE,
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + lifetime).timestamp()),
    }
    if email:
        claims["email"] = email
    if name:
        claims["name"] = name
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def verify_session_token(token: str) -> SessionClaims:
    """Validate signature, expiry, issuer and token type.

    Raises ``ValueError`` with a client-safe message on any failure.
    """
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            issuer=settings.JWT_ISSUER,
        )
    except ExpiredSignatureError as exc:
        raise ValueError("Session token has expired.") from exc
    except JWTError as exc:
        raise ValueError("Invalid session token.") from exc

    if payload.get("typ") != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")

    subject = str(payload.get("sub") or "").strip()
    if not subject:
        raise ValueError("Session token missing subject.")

    return SessionClaims(
        user_id=subject,
        email=payload.get("email") or None,
        name=payload.get("name") or None,
        expires_at=payload.get("exp"),
    )
