"""Role and subscription gating for protected operations."""

from __future__ import annotations

import logging
from typing import Iterable

from ..domain.account import Role
from ..domain.errors import ForbiddenError, InternalError, StoreError, UnauthenticatedError
from ..repository import AccountRepository
from .tokens import SessionClaims, TokenService, TokenStatus

logger = logging.getLogger(__name__)


class AuthorizationGuard:
    """Evaluate session claims against per-operation predicates.

    An absent, tampered or expired session is ``UnauthenticatedError``; a
    verified session that fails a predicate is ``ForbiddenError``.
    """

    def __init__(self, tokens: TokenService, repository: AccountRepository) -> None:
        self._tokens = tokens
        self._repository = repository

    def authenticate(self, token: str | None) -> SessionClaims:
        result = self._tokens.verify(token)
        if not result.is_valid or result.claims is None:
            if result.status is TokenStatus.EXPIRED:
                raise UnauthenticatedError("Session expired, please log in again")
            raise UnauthenticatedError("Unauthenticated, please log in again")
        return result.claims

    def require_roles(self, claims: SessionClaims, allowed: Iterable[Role]) -> None:
        allowed = frozenset(allowed)
        if claims.role not in allowed:
            logger.info(
                "account %s with role %s denied; requires %s",
                claims.account_id,
                claims.role.value,
                sorted(role.value for role in allowed),
            )
            raise ForbiddenError("You do not have permission to access this route")

    def require_active_subscription(self, claims: SessionClaims) -> None:
        """Admit admins outright, otherwise read the current subscription from the store."""
        if claims.role is Role.ADMIN:
            return
        try:
            record = self._repository.get_account(claims.account_id)
        except StoreError as exc:
            logger.error("subscription check for account %s failed: %s", claims.account_id, exc)
            raise InternalError("Something went wrong, please try again.") from exc
        if record is None or not record.account.has_active_subscription:
            raise ForbiddenError("Please subscribe to access this route")

    def require_self_or_admin(self, claims: SessionClaims, account_id: str) -> None:
        if claims.role is Role.ADMIN or claims.account_id == account_id:
            return
        raise ForbiddenError("You can only modify your own profile")
