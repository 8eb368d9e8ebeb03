"""
Auth API (/api/v1/auth)
=======================
JWT issue for staff and broker users (OAuth2 password flow).

  POST /api/v1/auth/token  ->  username + password -> access_token
  GET  /api/v1/auth/me     ->  current principal

Demo accounts:
  admin   / Hestia@admin2024   full access
  staff   / Hestia@staff2024   operations (investigation, contracts, payments)
  broker  / Hestia@broker2024  own policies only
"""
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import BaseModel

from hestia.config import settings
from hestia.core.auth import authenticate_user, create_access_token, get_current_principal
from hestia.core.permissions import ROLE_CAPABILITIES, Principal

router = APIRouter()


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds
    role: str
    username: str


class PrincipalResponse(BaseModel):
    username: str
    role: str
    full_name: str | None
    capabilities: list[str]


@router.post(
    "/token",
    response_model=TokenResponse,
    summary="Log in (issue JWT)",
)
async def login(form_data: OAuth2PasswordRequestForm = Depends()) -> TokenResponse:
    user = authenticate_user(form_data.username, form_data.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    expire_seconds = settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60
    token = create_access_token(
        subject=user["username"],
        role=user["role"],
        expires_delta=timedelta(seconds=expire_seconds),
    )
    return TokenResponse(
        access_token=token,
        token_type="bearer",
        expires_in=expire_seconds,
        role=user["role"].value,
        username=user["username"],
    )


@router.get(
    "/me",
    response_model=PrincipalResponse,
    summary="Current principal",
)
async def get_me(principal: Principal = Depends(get_current_principal)) -> PrincipalResponse:
    return PrincipalResponse(
        username=principal.subject,
        role=principal.role.value,
        full_name=principal.full_name,
        capabilities=sorted(c.value for c in ROLE_CAPABILITIES[principal.role]),
    )
