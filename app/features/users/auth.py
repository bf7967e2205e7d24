"""
Bearer token verification.

Tokens are issued by the session service and signed with ``JWT_SECRET``;
the ``sub`` claim carries the user id.
"""
from datetime import timedelta
from typing import Any, Dict, Optional

import jwt
from fastapi import HTTPException, status

from app.core import config
from app.utils import utcnow


def _secret() -> str:
    if not config.JWT_SECRET:
        raise RuntimeError("JWT_SECRET is not set")
    return config.JWT_SECRET


def create_access_token(user_id: str, expires_in: Optional[timedelta] = None) -> str:
    """
    Issue a signed token for ``user_id``.

    Used by scripts and tests; production tokens come from the session service.
    """
    now = utcnow()
    payload: Dict[str, Any] = {"sub": user_id, "iat": now}
    if expires_in is not None:
        payload["exp"] = now + expires_in
    return jwt.encode(payload, _secret(), algorithm=config.JWT_ALGORITHM)


def verify_jwt_token(token: str) -> dict:
    """
    Verify a bearer token and return its payload.

    Args:
        token: JWT token from Authorization header

    Returns:
        Decoded JWT payload

    Raises:
        HTTPException: If token is invalid or expired
    """
    try:
        return jwt.decode(
            token,
            _secret(),
            algorithms=[config.JWT_ALGORITHM],
            options={"require": ["sub"]},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )
