"""
NIMEX Marketplace — Auth Router
Password login for the marketplace team and vendors, cookie-based token
rotation, logout and the caller's own profile.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from jose import JWTError
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nimex.auth import (
    clear_refresh_cookie,
    create_access_token,
    create_refresh_token,
    decode_refresh_token,
    get_current_user,
    get_refresh_token_from_cookie,
    set_refresh_cookie,
    verify_password,
)
from nimex.config import get_settings
from nimex.database import get_session_factory
from nimex.middleware.rate_limit import RATE_LIMIT_AUTH, limiter
from nimex.models import User

logger = logging.getLogger("nimex.auth")
settings = get_settings()

router = APIRouter(prefix="/api/auth", tags=["Auth"])


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int = Field(..., description="Access token lifetime in seconds")
    user: dict


class UserProfileResponse(BaseModel):
    id: str
    full_name: str
    email: str
    role: str
    phone: Optional[str] = None
    is_verified: bool


def _session_response(user: User) -> JSONResponse:
    """Body carries the access token; the refresh token goes in the cookie."""
    body = TokenResponse(
        access_token=create_access_token(user.id, user.role.value, user.full_name),
        expires_in=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user={
            "id": user.id,
            "full_name": user.full_name,
            "email": user.email,
            "role": user.role.value,
        },
    )
    response = JSONResponse(content=body.model_dump())
    set_refresh_cookie(response, create_refresh_token(user.id))
    return response


def _unauthorized(detail: str, **extra) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail, **extra)


async def _find_user(session_factory: async_sessionmaker[AsyncSession], **criteria) -> Optional[User]:
    async with session_factory() as session:
        result = await session.execute(select(User).filter_by(**criteria))
        return result.scalar_one_or_none()


@router.post("/login", response_model=TokenResponse)
@limiter.limit(RATE_LIMIT_AUTH)
async def login(
    request: Request,
    form_data: OAuth2PasswordRequestForm = Depends(),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """OAuth2 password flow: `username` is the account email."""
    user = await _find_user(session_factory, email=form_data.username)
    verified = bool(
        user and user.password_hash and verify_password(form_data.password, user.password_hash)
    )
    if not verified:
        logger.warning("Failed login attempt for: %s", form_data.username)
        raise _unauthorized("Invalid email or password", headers={"WWW-Authenticate": "Bearer"})

    logger.info("✅ Login: %s (%s)", user.email, user.role.value)
    return _session_response(user)


@router.post("/refresh", response_model=TokenResponse)
async def refresh_tokens(
    request: Request,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """Issue a new access token and rotate the refresh cookie."""
    token = get_refresh_token_from_cookie(request)
    if not token:
        raise _unauthorized("No refresh token found. Please log in again.")

    try:
        user_id = decode_refresh_token(token)["sub"]
    except JWTError:
        raise _unauthorized("Refresh token expired or invalid. Please log in again.")

    user = await _find_user(session_factory, id=user_id)
    if user is None:
        raise _unauthorized("User no longer exists")

    logger.info("🔄 Token rotated for: %s", user.email)
    return _session_response(user)


@router.post("/logout")
async def logout():
    """Drop the refresh cookie; the client discards its access token."""
    response = JSONResponse(content={"message": "Logged out successfully"})
    clear_refresh_cookie(response)
    return response


@router.get("/me", response_model=UserProfileResponse)
async def get_me(current_user: User = Depends(get_current_user)):
    return UserProfileResponse(
        id=current_user.id,
        full_name=current_user.full_name,
        email=current_user.email,
        role=current_user.role.value,
        phone=current_user.phone,
        is_verified=bool(current_user.is_verified),
    )
