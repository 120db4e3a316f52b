"""
User account endpoints.

Endpoints:
    POST /api/users: Register a new account
    POST /api/users/login: Authenticate and receive a token
    POST /api/users/logout: Clear the auth cookie
    GET /api/users/me: Current user profile
"""
import logging

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from .. import auth, crud, schemas
from ..config import Settings
from ..database import get_db
from ..errors import Unauthorized, ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["users"])


@router.post("", response_model=schemas.AuthResponse, status_code=status.HTTP_201_CREATED)
def register(
    user: schemas.UserRegister,
    response: Response,
    db: Session = Depends(get_db),
    settings: Settings = Depends(auth.get_settings),
):
    """
    Register a new user account.

    The access token is returned in the body and set as an httpOnly cookie.

    Raises:
        ValidationError: 400 if email already exists
    """
    if crud.get_user_by_email(db, email=user.email):
        raise ValidationError("User already exists", [{"field": "email", "message": "already registered"}])

    db_user = crud.create_user(db, user.name, user.email, auth.get_password_hash(user.password))
    logger.info(f"User {db_user.id} registered")

    access_token = auth.create_access_token(db_user, settings)
    auth.set_auth_cookie(response, access_token, settings)
    return schemas.AuthResponse(user=schemas.User.model_validate(db_user), access_token=access_token)


@router.post("/login", response_model=schemas.AuthResponse)
def login(
    credentials: schemas.UserLogin,
    response: Response,
    db: Session = Depends(get_db),
    settings: Settings = Depends(auth.get_settings),
):
    """
    Authenticate and login a user.

    Raises:
        Unauthorized: 401 if credentials are invalid
    """
    user = auth.authenticate_user(db, credentials.email, credentials.password)
    if not user:
        raise Unauthorized("Invalid email or password")

    access_token = auth.create_access_token(user, settings)
    auth.set_auth_cookie(response, access_token, settings)
    return schemas.AuthResponse(user=schemas.User.model_validate(user), access_token=access_token)


@router.post("/logout")
def logout(response: Response, settings: Settings = Depends(auth.get_settings)):
    auth.clear_auth_cookie(response, settings)
    return {"message": "Logged out successfully"}


@router.get("/me", response_model=schemas.User)
def get_current_user_info(
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    """Get current authenticated user information."""
    return crud.get_user(db, current_user.id)
