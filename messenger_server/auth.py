"""
Authentication module for JWT token management.

Issues and verifies the bearer tokens that guard directory writes and
message endpoints.
"""

from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from .settings import ServerSettings

bearer_scheme = HTTPBearer()


class Token(BaseModel):
    """Token response model"""
    access_token: str
    token_type: str
    username: str


def create_access_token(data: dict, settings: ServerSettings, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token.

    Args:
        data: Data to encode in the token
        settings: Server settings holding the signing key
        expires_delta: Token expiration time

    Returns:
        Encoded JWT token
    """
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=settings.access_token_expire_minutes)

    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.token_algorithm)


def verify_token(token: str, settings: ServerSettings) -> Optional[str]:
    """
    Verify a JWT token and extract username.

    Returns:
        Username if valid, None otherwise
    """
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.token_algorithm])
    except JWTError:
        return None
    username = payload.get("sub")
    if not isinstance(username, str) or not username:
        return None
    return username


def current_username(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> str:
    """FastAPI dependency returning the authenticated username"""
    username = verify_token(credentials.credentials, request.app.state.settings)
    if username is None:
        raise HTTPException(
            status_code=401,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return username
