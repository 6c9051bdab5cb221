"""
Authentication dependencies for FastAPI routes

Sessions are issued by Supabase; the API only verifies the access token and
reads the user identity out of it.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from core.config import settings

logger = logging.getLogger(__name__)

# HTTP Bearer token scheme
security = HTTPBearer(auto_error=False)


@dataclass
class AuthenticatedUser:
    id: str
    email: Optional[str] = None
    full_name: Optional[str] = None


def decode_token(token: str) -> Optional[dict]:
    """Decode and validate an access token"""
    try:
        return jwt.decode(
            token,
            settings.supabase_jwt_secret,
            algorithms=[settings.algorithm],
            audience=settings.jwt_audience,
        )
    except JWTError as e:
        logger.warning(f"JWT decode error: {e}")
        return None


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="User not authenticated",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AuthenticatedUser:
    """
    Dependency to get the current authenticated user.
    Raises 401 if not authenticated.
    """
    if not credentials:
        raise _unauthorized()

    payload = decode_token(credentials.credentials)
    if not payload or not payload.get("sub"):
        raise _unauthorized()

    metadata = payload.get("user_metadata") or {}
    return AuthenticatedUser(
        id=payload["sub"],
        email=payload.get("email"),
        full_name=metadata.get("full_name"),
    )
