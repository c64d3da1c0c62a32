"""HTTP route definitions for the identity service."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import redis
from fastapi import APIRouter, Depends, File, Form, HTTPException, Response, UploadFile, status
from pydantic import BaseModel, ConfigDict, EmailStr, Field

from ..config import get_settings
from ..domain.account import Account
from ..domain.contracts import ProfileUpdate, RegisterInput, Session
from ..domain.errors import IdentityError, NotFoundError, UnauthorizedError
from ..domain.service import IdentityService, normalise_email
from ..security.attempts import AttemptLimiter, SlidingWindowAttemptLimiter
from ..security.guard import AuthorizationGuard
from ..security.redis_attempts import RedisAttemptLimiter
from ..security.tokens import SessionClaims
from .dependencies import current_session, get_guard, get_service, http_error, optional_session
from .uploads import stage_upload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/user", tags=["user"])


class AvatarResponse(BaseModel):
    storage_id: str
    url: str


class AccountResponse(BaseModel):
    """Serialised representation of an `Account` aggregate, never carrying the credential."""

    id: str
    full_name: str
    email: EmailStr
    role: str
    avatar: AvatarResponse
    subscription: dict[str, Any]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, account: Account) -> "AccountResponse":
        """Build a response model from the domain aggregate."""
        return cls(
            id=account.account_id,
            full_name=account.full_name,
            email=account.email,
            role=account.role.value,
            avatar=AvatarResponse(storage_id=account.avatar.storage_id, url=account.avatar.url),
            subscription=account.subscription,
            created_at=account.created_at,
            updated_at=account.updated_at,
        )


class MessageResponse(BaseModel):
    success: bool = True
    message: str


class AccountEnvelope(MessageResponse):
    user: AccountResponse


class LoginRequest(BaseModel):
    email: str | None = None
    password: str | None = None


class ResetRequest(BaseModel):
    email: str | None = None


class CompleteResetRequest(BaseModel):
    password: str | None = None


class ChangePasswordRequest(BaseModel):
    """Body for changing the caller's own password."""

    model_config = ConfigDict(populate_by_name=True)

    old_password: str | None = Field(default=None, alias="oldPassword")
    new_password: str | None = Field(default=None, alias="newPassword")


settings = get_settings()


def _build_limiter(max_attempts: int, window_seconds: int, key_prefix: str) -> AttemptLimiter:
    """Instantiate the configured limiter backend, preferring Redis when available."""
    if settings.rate_limit_backend == "redis" and settings.redis_url:
        try:
            client = redis.from_url(settings.redis_url)
            # ensure connectivity early to fail fast and fall back
            client.ping()
            logger.info("%s limiter configured for redis backend at %s", key_prefix, settings.redis_url)
            return RedisAttemptLimiter(
                client,
                max_attempts=max_attempts,
                window_seconds=window_seconds,
                key_prefix=key_prefix,
            )
        except (redis.RedisError, ValueError) as exc:
            logger.warning("redis limiter unavailable, falling back to in-memory: %s", exc)

    logger.info("%s limiter using in-memory backend", key_prefix)
    return SlidingWindowAttemptLimiter(max_attempts=max_attempts, window_seconds=window_seconds)


login_limiter = _build_limiter(
    settings.login_max_failures, settings.login_failure_window_seconds, "login-failures"
)
reset_limiter = _build_limiter(
    settings.reset_request_limit, settings.reset_request_window_seconds, "reset-requests"
)


def _too_many_attempts() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail="Too many attempts, please try again later",
    )


def _set_session_cookie(response: Response, session: Session) -> None:
    response.set_cookie(
        key=settings.session_cookie_name,
        value=session.token,
        max_age=session.expires_in,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
    )


@router.post("/register", response_model=AccountEnvelope, status_code=status.HTTP_201_CREATED)
def register(
    response: Response,
    full_name: str | None = Form(default=None, alias="fullName"),
    email: str | None = Form(default=None),
    password: str | None = Form(default=None),
    avatar: UploadFile | None = File(default=None),
    service: IdentityService = Depends(get_service),
) -> AccountEnvelope:
    """Create an account; an attached avatar is processed after the response."""
    staged = stage_upload(avatar, settings.upload_dir)
    try:
        session = service.register(
            RegisterInput(full_name=full_name, email=email, password=password),
            staged,
        )
    except IdentityError as exc:
        raise http_error(exc) from exc
    _set_session_cookie(response, session)
    return AccountEnvelope(
        message="User registered successfully",
        user=AccountResponse.from_domain(session.account),
    )


@router.post("/login", response_model=AccountEnvelope)
def login(
    response: Response,
    payload: LoginRequest,
    service: IdentityService = Depends(get_service),
) -> AccountEnvelope:
    """Verify credentials and set the session cookie."""
    rate_key = normalise_email(payload.email) if payload.email else None
    if rate_key and login_limiter.exceeded(rate_key):
        raise _too_many_attempts()
    try:
        session = service.login(payload.email, payload.password)
    except UnauthorizedError as exc:
        if rate_key:
            login_limiter.record(rate_key)
        raise http_error(exc) from exc
    except IdentityError as exc:
        raise http_error(exc) from exc
    if rate_key:
        login_limiter.reset(rate_key)
    _set_session_cookie(response, session)
    return AccountEnvelope(
        message="User logged in successfully",
        user=AccountResponse.from_domain(session.account),
    )


@router.post("/logout", response_model=MessageResponse)
def logout(
    response: Response,
    claims: SessionClaims | None = Depends(optional_session),
    service: IdentityService = Depends(get_service),
) -> MessageResponse:
    """Clear the session cookie; the token itself lapses at its expiry."""
    service.logout(claims)
    response.delete_cookie(
        key=settings.session_cookie_name,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
    )
    return MessageResponse(message="User logged out successfully")


@router.get("/me", response_model=AccountEnvelope)
def me(
    claims: SessionClaims = Depends(current_session),
    service: IdentityService = Depends(get_service),
) -> AccountEnvelope:
    """Return the account behind the current session."""
    try:
        account = service.get_account(claims.account_id)
    except IdentityError as exc:
        raise http_error(exc) from exc
    return AccountEnvelope(message="User details", user=AccountResponse.from_domain(account))


@router.post("/reset", response_model=MessageResponse)
def request_password_reset(
    payload: ResetRequest,
    service: IdentityService = Depends(get_service),
) -> MessageResponse:
    """Email a password reset link to a registered address."""
    rate_key = normalise_email(payload.email) if payload.email else None
    if rate_key:
        if reset_limiter.exceeded(rate_key):
            raise _too_many_attempts()
        reset_limiter.record(rate_key)
    try:
        service.request_password_reset(payload.email)
    except NotFoundError as exc:
        raise http_error(exc, status.HTTP_400_BAD_REQUEST) from exc
    except IdentityError as exc:
        raise http_error(exc) from exc
    return MessageResponse(
        message=f"Reset password token has been sent to {normalise_email(payload.email or '')} successfully",
    )


@router.post("/reset/{reset_token}", response_model=MessageResponse)
def complete_password_reset(
    reset_token: str,
    payload: CompleteResetRequest,
    service: IdentityService = Depends(get_service),
) -> MessageResponse:
    """Set a new password using an emailed reset token."""
    try:
        service.complete_reset(reset_token, payload.password)
    except IdentityError as exc:
        raise http_error(exc) from exc
    return MessageResponse(message="Password changed successfully")


@router.post("/change-password", response_model=MessageResponse)
def change_password(
    payload: ChangePasswordRequest,
    claims: SessionClaims = Depends(current_session),
    service: IdentityService = Depends(get_service),
) -> MessageResponse:
    """Change the caller's password after verifying the current one."""
    try:
        service.change_password(claims.account_id, payload.old_password, payload.new_password)
    except IdentityError as exc:
        raise http_error(exc) from exc
    return MessageResponse(message="Password changed successfully")


@router.put("/update/{account_id}", response_model=AccountEnvelope)
def update_profile(
    account_id: str,
    full_name: str | None = Form(default=None, alias="fullName"),
    avatar: UploadFile | None = File(default=None),
    claims: SessionClaims = Depends(current_session),
    guard: AuthorizationGuard = Depends(get_guard),
    service: IdentityService = Depends(get_service),
) -> AccountEnvelope:
    """Update the profile of the caller (or any account, for admins)."""
    try:
        guard.require_self_or_admin(claims, account_id)
    except IdentityError as exc:
        raise http_error(exc) from exc
    staged = stage_upload(avatar, settings.upload_dir)
    try:
        account = service.update_profile(account_id, ProfileUpdate(full_name=full_name), staged)
    except IdentityError as exc:
        raise http_error(exc) from exc
    return AccountEnvelope(
        message="User details updated successfully",
        user=AccountResponse.from_domain(account),
    )
