"""
Authentication and authorization utilities for the orders service.

Provides password hashing, JWT token creation/validation, and FastAPI
dependencies for protecting endpoints. Tokens are read from the ``jwt``
httpOnly cookie first and from an ``Authorization: Bearer`` header otherwise.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel
from sqlalchemy.orm import Session

from . import crud, models
from .config import Settings
from .database import get_db
from .errors import Forbidden, Unauthorized

logger = logging.getLogger(__name__)

# Password hashing context
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

# Security scheme for JWT bearer tokens; the cookie is checked first
security = HTTPBearer(auto_error=False)


class CurrentUser(BaseModel):
    """Current authenticated user information."""
    id: int
    email: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def create_access_token(user: models.User, settings: Settings, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token for a user.

    Args:
        user: User the token is issued to
        settings: Application settings holding the signing secret
        expires_delta: Optional custom expiration time delta

    Returns:
        Encoded JWT token string
    """
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=settings.jwt_expires_minutes))
    to_encode = {"sub": str(user.id), "email": user.email, "role": user.role, "exp": expire}
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def set_auth_cookie(response: Response, token: str, settings: Settings) -> None:
    response.set_cookie(
        key=settings.cookie_name,
        value=token,
        httponly=True,
        secure=not settings.is_development,
        samesite="strict",
        max_age=settings.jwt_expires_minutes * 60,
    )


def clear_auth_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(key=settings.cookie_name, httponly=True, samesite="strict")


def authenticate_user(db: Session, email: str, password: str) -> Optional[models.User]:
    """
    Authenticate a user by email and password.

    Returns:
        User object if authentication succeeds, None otherwise
    """
    user = crud.get_user_by_email(db, email)
    if not user:
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


def _extract_token(request: Request, credentials: Optional[HTTPAuthorizationCredentials],
                   settings: Settings) -> Optional[str]:
    token = request.cookies.get(settings.cookie_name)
    if token:
        return token
    if credentials is not None:
        return credentials.credentials
    return None


def _resolve_user(db: Session, token: str, settings: Settings) -> CurrentUser:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        user_id = int(payload.get("sub"))
    except (JWTError, TypeError, ValueError) as e:
        logger.error(f"JWT validation error: {e}")
        raise Unauthorized("Not authorized, token failed")

    user = crud.get_user(db, user_id)
    if user is None:
        raise Unauthorized("Not authorized, user not found")
    if not user.is_active:
        raise Forbidden("User account is inactive")
    return CurrentUser(id=user.id, email=user.email, role=user.role)


def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> CurrentUser:
    """
    FastAPI dependency to get the current authenticated user.

    Raises:
        Unauthorized: 401 if no token is present or it is invalid
    """
    token = _extract_token(request, credentials, settings)
    if not token:
        raise Unauthorized("Not authorized, no token")
    return _resolve_user(db, token, settings)


def get_optional_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> Optional[CurrentUser]:
    """Like ``get_current_user`` but returns None for anonymous requests."""
    token = _extract_token(request, credentials, settings)
    if not token:
        return None
    return _resolve_user(db, token, settings)


def require_admin(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """
    FastAPI dependency to require admin role.

    Raises:
        Forbidden: 403 if user is not an admin
    """
    if not current_user.is_admin:
        raise Forbidden("Not authorized as an admin")
    return current_user
