"""Caller identity for the credits and billing routers."""

from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.session_token import SessionClaims, verify_session_token


bearer_scheme = HTTPBearer(auto_error=False)


async def require_caller(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> SessionClaims:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=401,
            detail="Sign in to use credits.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return verify_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(
            status_code=401,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


def scoped_user_id(caller: SessionClaims, requested_user_id: Optional[str]) -> str:
    """A caller may only act on its own balance."""
    if requested_user_id and requested_user_id != caller.user_id:
        raise HTTPException(status_code=403, detail="Cannot act on another user's credits.")
    return caller.user_id
