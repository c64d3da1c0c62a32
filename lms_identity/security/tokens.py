"""Utilities for issuing and validating session JWTs."""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import jwt

from ..domain.account import Role

_ALGORITHM = "HS256"


class TokenStatus(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    EXPIRED = "expired"


@dataclass(frozen=True, slots=True)
class SessionClaims:
    """Identity asserted by a verified session token."""

    account_id: str
    role: Role
    expires_at: datetime


@dataclass(frozen=True, slots=True)
class TokenVerification:
    status: TokenStatus
    claims: SessionClaims | None = None

    @property
    def is_valid(self) -> bool:
        return self.status is TokenStatus.VALID


class TokenService:
    """Stateless session tokens: the signature proves authenticity, ``exp`` bounds lifetime."""

    def __init__(self, secret: str, issuer: str, ttl_seconds: int) -> None:
        self._secret = secret
        self._issuer = issuer
        self._ttl_seconds = ttl_seconds

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def issue(self, *, account_id: str, role: Role, now: int | None = None) -> tuple[str, int]:
        """Create a signed JWT representing an authenticated account.

        Parameters
        ----------
        account_id:
            Account identifier to embed in the token ``sub`` claim.
        role:
            Role claim evaluated by the authorization guard.
        now:
            Issue time as a Unix timestamp; defaults to the current time.

        Returns
        -------
        tuple[str, int]
            A tuple containing the encoded JWT string and its TTL (in seconds).
        """
        issued_at = int(time.time()) if now is None else now
        payload: dict[str, Any] = {
            "iss": self._issuer,
            "sub": account_id,
            "role": role.value,
            "iat": issued_at,
            "exp": issued_at + self._ttl_seconds,
        }
        token = jwt.encode(payload, self._secret, algorithm=_ALGORITHM)
        return token, self._ttl_seconds

    def verify(self, token: str | None) -> TokenVerification:
        """Check signature, issuer and expiry without raising.

        Parameters
        ----------
        token:
            Encoded JWT issued by this service, or ``None`` when absent.

        Returns
        -------
        TokenVerification
            ``VALID`` with claims, ``EXPIRED``, or ``INVALID`` for anything
            else (absent, tampered, foreign issuer, malformed claims).
        """
        if not token:
            return TokenVerification(TokenStatus.INVALID)
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[_ALGORITHM],
                issuer=self._issuer,
                options={"require": ["exp", "sub", "iss"]},
            )
        except jwt.ExpiredSignatureError:
            return TokenVerification(TokenStatus.EXPIRED)
        except jwt.PyJWTError:
            return TokenVerification(TokenStatus.INVALID)

        try:
            role = Role(payload.get("role"))
        except ValueError:
            return TokenVerification(TokenStatus.INVALID)
        claims = SessionClaims(
            account_id=str(payload["sub"]),
            role=role,
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )
        return TokenVerification(TokenStatus.VALID, claims)
