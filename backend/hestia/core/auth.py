"""
JWT authentication and actor access tokens
==========================================
python-jose + passlib based JWT issue/verify for staff and broker users,
and opaque expiring access tokens for actor portal links.

Demo accounts (replace with a users table in production):
  admin   / Hestia@admin2024
  staff   / Hestia@staff2024
  broker  / Hestia@broker2024
  broker2 / Hestia@broker2024
"""
from __future__ import annotations

import secrets
from datetime import UTC, datetime, timedelta
from typing import Any

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

from hestia.config import settings
from hestia.core.permissions import Principal, Role

# ── Password hashing ──────────────────────────────────────────
_pwd_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto")

# ── OAuth2 bearer scheme ──────────────────────────────────────
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/token")

# ── Demo user store ───────────────────────────────────────────
_DEMO_USERS: dict[str, dict[str, Any]] = {
    "admin": {
        "username": "admin",
        "hashed_password": _pwd_ctx.hash("Hestia@admin2024"),
        "role": Role.ADMIN,
        "full_name": "System Administrator",
    },
    "staff": {
        "username": "staff",
        "hashed_password": _pwd_ctx.hash("Hestia@staff2024"),
        "role": Role.STAFF,
        "full_name": "Operations Staff",
    },
    "broker": {
        "username": "broker",
        "hashed_password": _pwd_ctx.hash("Hestia@broker2024"),
        "role": Role.BROKER,
        "full_name": "Broker One",
    },
    "broker2": {
        "username": "broker2",
        "hashed_password": _pwd_ctx.hash("Hestia@broker2024"),
        "role": Role.BROKER,
        "full_name": "Broker Two",
    },
}


# ── Password verification ─────────────────────────────────────

def verify_password(plain: str, hashed: str) -> bool:
    return _pwd_ctx.verify(plain, hashed)


def authenticate_user(username: str, password: str) -> dict[str, Any] | None:
    user = _DEMO_USERS.get(username)
    if not user:
        return None
    if not verify_password(password, user["hashed_password"]):
        return None
    return user


def principal_for(user: dict[str, Any]) -> Principal:
    return Principal(role=Role(user["role"]), subject=user["username"], full_name=user["full_name"])


# ── JWT issue ─────────────────────────────────────────────────

def create_access_token(
    subject: str,
    role: Role | str,
    expires_delta: timedelta | None = None,
) -> str:
    expire = datetime.now(UTC) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    payload = {
        "sub": subject,
        "role": Role(role).value,
        "exp": expire,
        "iat": datetime.now(UTC),
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


# ── JWT verify ────────────────────────────────────────────────

def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _decode_token(token: str) -> dict[str, Any]:
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError as err:
        raise _unauthorized("Invalid token.") from err


# ── FastAPI dependency ────────────────────────────────────────

async def get_current_principal(token: str = Depends(oauth2_scheme)) -> Principal:
    """Resolve the bearer token into a staff or broker principal."""
    payload = _decode_token(token)
    username: str | None = payload.get("sub")
    if not username:
        raise _unauthorized("Token carries no subject.")
    user = _DEMO_USERS.get(username)
    if not user:
        raise _unauthorized("User not found.")
    # role changed since the token was issued
    if payload.get("role") != Role(user["role"]).value:
        raise _unauthorized("Token role is stale. Log in again.")
    return principal_for(user)


# ── Actor access tokens ───────────────────────────────────────

def generate_actor_token() -> str:
    return secrets.token_urlsafe(32)


def actor_token_expiry(now: datetime | None = None) -> datetime:
    return (now or datetime.now(UTC)) + timedelta(days=settings.ACTOR_TOKEN_EXPIRATION_DAYS)


def actor_portal_url(actor_type: str, token: str) -> str:
    return f"{settings.APP_BASE_URL.rstrip('/')}/actor/{actor_type}/{token}"
