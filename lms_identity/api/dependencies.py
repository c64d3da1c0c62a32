"""FastAPI dependencies resolving services and enforcing session policy."""

from __future__ import annotations

from typing import Callable

from fastapi import Depends, HTTPException, Request, status

from ..config import get_settings
from ..domain.account import Role
from ..domain.errors import IdentityError
from ..domain.service import IdentityService
from ..security.guard import AuthorizationGuard
from ..security.tokens import SessionClaims


def get_service(request: Request) -> IdentityService:
    """Resolve the `IdentityService` stored on the FastAPI application state."""
    service: IdentityService = request.app.state.identity_service
    return service


def get_guard(request: Request) -> AuthorizationGuard:
    guard: AuthorizationGuard = request.app.state.guard
    return guard


def http_error(exc: IdentityError, status_code: int | None = None) -> HTTPException:
    """Translate a domain error into the HTTP response the client sees."""
    code = status_code or exc.status_code
    headers = {"WWW-Authenticate": "Bearer"} if code == status.HTTP_401_UNAUTHORIZED else None
    return HTTPException(status_code=code, detail=exc.message, headers=headers)


def session_token(request: Request) -> str | None:
    """Read the session artifact from the cookie, falling back to a bearer header."""
    token = request.cookies.get(get_settings().session_cookie_name)
    if token:
        return token
    authorization = request.headers.get("Authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    return None


def current_session(
    request: Request,
    guard: AuthorizationGuard = Depends(get_guard),
) -> SessionClaims:
    """Require a verified session; attach its claims to ``request.state``."""
    try:
        claims = guard.authenticate(session_token(request))
    except IdentityError as exc:
        raise http_error(exc) from exc
    request.state.session = claims
    return claims


def optional_session(
    request: Request,
    guard: AuthorizationGuard = Depends(get_guard),
) -> SessionClaims | None:
    """Return session claims when a valid session accompanies the request."""
    try:
        return guard.authenticate(session_token(request))
    except IdentityError:
        return None


def require_roles(*roles: Role) -> Callable[..., SessionClaims]:
    """Build a dependency admitting only sessions whose role is in ``roles``."""

    def dependency(
        claims: SessionClaims = Depends(current_session),
        guard: AuthorizationGuard = Depends(get_guard),
    ) -> SessionClaims:
        try:
            guard.require_roles(claims, roles)
        except IdentityError as exc:
            raise http_error(exc) from exc
        return claims

    return dependency


def require_subscriber(
    claims: SessionClaims = Depends(current_session),
    guard: AuthorizationGuard = Depends(get_guard),
) -> SessionClaims:
    """Admit admins and accounts with an active subscription."""
    try:
        guard.require_active_subscription(claims)
    except IdentityError as exc:
        raise http_error(exc) from exc
    return claims
