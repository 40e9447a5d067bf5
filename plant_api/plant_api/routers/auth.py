"""Authentication endpoints: signup, login, password setup and the own profile.

Signup, login and password setup are public and bypass the auth
middleware.  ``/auth/me`` requires a valid Bearer token.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr, Field

from plant_api.dependencies import SessionDep, UserDep
from plant_api.middleware.auth import get_token_manager
from plant_api.middleware.rbac import Permission, Role, require_permission
from plant_api.schemas import ProfileResponse, TokenResponse
from plant_api.services.auth_service import AuthError, AuthService
from plant_api.services.errors import NotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class SignupRequest(BaseModel):
    """Request body for member registration."""

    email: EmailStr = Field(..., description="Email address.")
    password: str = Field(..., min_length=8, description="Password (min 8 characters).")
    full_name: str = Field(..., min_length=1, max_length=256, description="Full name.")
    business_name: str | None = Field(None, max_length=256)
    phone: str | None = Field(None, max_length=32)


class LoginRequest(BaseModel):
    """Request body for email/password login."""

    email: EmailStr
    password: str = Field(..., min_length=1)


class SetPasswordRequest(BaseModel):
    """Request body for consuming a set-password link."""

    token: str = Field(..., min_length=1)
    password: str = Field(..., min_length=8)


class UpdateProfileRequest(BaseModel):
    """Fields a member may change on their own profile."""

    full_name: str | None = Field(None, min_length=1, max_length=256)
    business_name: str | None = Field(None, max_length=256)
    business_description: str | None = Field(None, max_length=4000)
    phone: str | None = Field(None, max_length=32)


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/signup", response_model=TokenResponse, status_code=201, summary="Create a member account")
async def signup(body: SignupRequest, session: SessionDep) -> TokenResponse:
    """Register a new member and return an access token."""
    svc = AuthService(session, get_token_manager())
    try:
        result = await svc.signup(
            email=body.email,
            password=body.password,
            full_name=body.full_name,
            business_name=body.business_name,
            phone=body.phone,
        )
    except AuthError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return TokenResponse(**result)


@router.post("/login", response_model=TokenResponse, summary="Log in with email and password")
async def login(body: LoginRequest, session: SessionDep) -> TokenResponse:
    """Validate credentials and return an access token."""
    svc = AuthService(session, get_token_manager())
    try:
        result = await svc.login(email=body.email, password=body.password)
    except AuthError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return TokenResponse(**result)


@router.post("/password", response_model=TokenResponse, summary="Set a password from an emailed link")
async def set_password(body: SetPasswordRequest, session: SessionDep) -> TokenResponse:
    """Consume a recovery token, store the new password and log the user in."""
    svc = AuthService(session, get_token_manager())
    try:
        result = await svc.set_password(body.token, body.password)
    except AuthError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return TokenResponse(**result)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/me", response_model=ProfileResponse, summary="Get current user profile")
async def get_me(session: SessionDep, user: UserDep) -> ProfileResponse:
    """Return the profile of the currently authenticated user."""
    try:
        return ProfileResponse(**await AuthService(session).me(user))
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.patch("/me", response_model=ProfileResponse, summary="Update own profile")
async def update_me(
    body: UpdateProfileRequest,
    session: SessionDep,
    user: UserDep,
    _role: Role = Depends(require_permission(Permission.UPDATE_OWN_PROFILE)),
) -> ProfileResponse:
    """Update name, business fields and phone.  Role and chapter stay admin-managed."""
    fields = body.model_dump(exclude_unset=True)
    if not fields:
        raise HTTPException(status_code=400, detail="No fields to update")
    try:
        return ProfileResponse(**await AuthService(session).update_me(user, **fields))
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
