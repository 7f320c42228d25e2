"""
NIMEX Marketplace — Authentication & Authorization
Bearer JWT access tokens (python-jose), passlib/bcrypt password hashes and
role checks for the admin and wallet endpoints.

Settlement endpoints accept anonymous callers (the storefront's server-side
functions) but still reject a bearer token that does not verify; the token's
subject is then recorded as the acting user.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nimex.config import get_settings
from nimex.database import get_session_factory
from nimex.models import User

logger = logging.getLogger("nimex.auth")
settings = get_settings()

ACCESS = "access"
REFRESH = "refresh"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(plain_password: str) -> str:
    return pwd_context.hash(plain_password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


# ═══════════════════════════════════════════════════════
#  Tokens
# ═══════════════════════════════════════════════════════


def _secret_for(kind: str) -> str:
    return settings.JWT_REFRESH_SECRET_KEY if kind == REFRESH else settings.JWT_SECRET_KEY


def _issue(kind: str, claims: dict, lifetime: timedelta) -> str:
    issued_at = datetime.utcnow()
    payload = {**claims, "type": kind, "iat": issued_at, "exp": issued_at + lifetime}
    return jwt.encode(payload, _secret_for(kind), algorithm=settings.JWT_ALGORITHM)


def _decode(kind: str, token: str) -> dict:
    claims = jwt.decode(token, _secret_for(kind), algorithms=[settings.JWT_ALGORITHM])
    if claims.get("type") != kind or not claims.get("sub"):
        raise JWTError(f"not a usable {kind} token")
    return claims


def create_access_token(
    user_id: str,
    role: str,
    full_name: str,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Short-lived token sent as `Authorization: Bearer …`."""
    lifetime = expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    return _issue(ACCESS, {"sub": user_id, "role": role, "name": full_name}, lifetime)


def create_refresh_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    """Long-lived token, only ever stored in the HttpOnly refresh cookie."""
    lifetime = expires_delta or timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS)
    return _issue(REFRESH, {"sub": user_id}, lifetime)


def decode_access_token(token: str) -> dict:
    """Verified access-token claims; raises JWTError otherwise."""
    return _decode(ACCESS, token)


def decode_refresh_token(token: str) -> dict:
    """Verified refresh-token claims; raises JWTError otherwise."""
    return _decode(REFRESH, token)


# ═══════════════════════════════════════════════════════
#  Current user dependencies
# ═══════════════════════════════════════════════════════

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def _resolve_user(
    token: str,
    session_factory: async_sessionmaker[AsyncSession],
) -> User:
    try:
        user_id = decode_access_token(token)["sub"]
    except JWTError:
        raise _unauthorized()

    async with session_factory() as session:
        user = await session.get(User, user_id)

    if user is None:
        logger.warning("Token for unknown user %s rejected", user_id)
        raise _unauthorized()
    return user


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> User:
    """The authenticated user; 401 for a missing, expired or forged token."""
    return await _resolve_user(token, session_factory)


async def get_optional_user(
    token: Optional[str] = Depends(optional_oauth2_scheme),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> Optional[User]:
    """None for anonymous requests; a token that is present must still verify."""
    if not token:
        return None
    return await _resolve_user(token, session_factory)


class RoleChecker:
    """
    Dependency that admits only the listed roles.

        admin: User = Depends(RoleChecker(["admin"]))
    """

    def __init__(self, allowed_roles: list[str]):
        self.allowed_roles = allowed_roles

    async def __call__(self, user: User = Depends(get_current_user)) -> User:
        role = user.role.value
        if role in self.allowed_roles:
            return user

        logger.warning("RBAC denied: %s (%s) needs one of %s", user.email, role, self.allowed_roles)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Restricted to {', '.join(self.allowed_roles)} accounts. Your role: {role}.",
        )


# ═══════════════════════════════════════════════════════
#  Refresh cookie
# ═══════════════════════════════════════════════════════

REFRESH_COOKIE_NAME = "nimex_refresh_token"

# Scoped to the auth routes; never readable from JavaScript
_REFRESH_COOKIE_SCOPE = {
    "path": "/api/auth",
    "httponly": True,
    "secure": True,
    "samesite": "strict",
}


def set_refresh_cookie(response, refresh_token: str) -> None:
    response.set_cookie(
        key=REFRESH_COOKIE_NAME,
        value=refresh_token,
        max_age=settings.REFRESH_TOKEN_EXPIRE_DAYS * 86400,
        **_REFRESH_COOKIE_SCOPE,
    )


def clear_refresh_cookie(response) -> None:
    response.delete_cookie(key=REFRESH_COOKIE_NAME, **_REFRESH_COOKIE_SCOPE)


def get_refresh_token_from_cookie(request: Request) -> Optional[str]:
    return request.cookies.get(REFRESH_COOKIE_NAME)
