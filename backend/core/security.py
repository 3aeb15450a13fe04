"""
Security utilities for the workflow scheduler.

Includes:
- JWT access token generation and verification
- FastAPI dependency resolving the caller from the bearer token
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials as HTTPAuthCredentials
from pydantic import BaseModel, Field
import jwt

from app.config import get_settings

# JWT configuration
ALGORITHM = "HS256"

# HTTP Bearer for API endpoints; a missing header is reported as 401 below
security_scheme = HTTPBearer(auto_error=False)


class TokenPayload(BaseModel):
    """JWT token payload structure."""
    sub: str  # user_id
    email: str
    org_id: str
    permissions: list[str] = Field(default_factory=list)
    exp: datetime
    iat: datetime
    type: str  # "access"


def create_access_token(
    user_id: str,
    email: str,
    org_id: str,
    permissions: Optional[list[str]] = None,
    expires_minutes: Optional[int] = None,
) -> str:
    """
    Create a JWT access token.

    Args:
        user_id: User ID
        email: User email
        org_id: Organization ID
        permissions: Permission codes granted to the user (e.g. "schedules.read", "schedules.*")
        expires_minutes: Lifetime override; defaults to ACCESS_TOKEN_EXPIRE_MINUTES

    Returns:
        Encoded JWT token
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    expire = now + timedelta(
        minutes=expires_minutes if expires_minutes is not None else settings.ACCESS_TOKEN_EXPIRE_MINUTES
    )

    payload = {
        "sub": user_id,
        "email": email,
        "org_id": org_id,
        "permissions": list(permissions or []),
        "type": "access",
        "iat": now,
        "exp": expire,
    }

    return jwt.encode(payload, settings.SECRET_KEY, algorithm=ALGORITHM)


def verify_token(token: str) -> TokenPayload:
    """
    Verify and decode a JWT token.

    Args:
        token: Encoded JWT token

    Returns:
        Decoded token payload

    Raises:
        HTTPException: If token is invalid or expired
    """
    try:
        payload = jwt.decode(
            token,
            get_settings().SECRET_KEY,
            algorithms=[ALGORITHM],
        )
        user_id: str = payload.get("sub")
        email: str = payload.get("email")
        org_id: str = payload.get("org_id")
        token_type: str = payload.get("type")

        if user_id is None or email is None or org_id is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid token payload",
                headers={"WWW-Authenticate": "Bearer"},
            )

        return TokenPayload(
            sub=user_id,
            email=email,
            org_id=org_id,
            permissions=payload.get("permissions") or [],
            exp=datetime.fromtimestamp(payload.get("exp"), tz=timezone.utc),
            iat=datetime.fromtimestamp(payload.get("iat"), tz=timezone.utc),
            type=token_type,
        )

    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_current_user(
    credentials: Optional[HTTPAuthCredentials] = Depends(security_scheme),
) -> TokenPayload:
    """
    FastAPI dependency to get the current authenticated user from JWT token.

    Raises:
        HTTPException: If token is missing, invalid, or expired
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token_payload = verify_token(credentials.credentials)

    if token_payload.type != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return token_payload
