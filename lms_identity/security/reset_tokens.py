"""Single-use, expiring password reset tokens.

Per account the flow moves NONE -> PENDING on :meth:`ResetTokenFlow.issue`
and back to NONE when the token is consumed, expires, or the surrounding
request rolls it back. Only the SHA-256 digest of a token is ever persisted;
the plaintext exists solely in the email sent to the account holder.
"""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from ..domain.account import AccountRecord, ResetState
from ..domain.errors import InvalidOrExpiredTokenError
from ..repository import AccountRepository

INVALID_OR_EXPIRED_MESSAGE = "Token is invalid or expired, please try again"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hash_reset_token(token: str) -> str:
    """Return the SHA-256 hex digest for a reset token string."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass(frozen=True, slots=True)
class IssuedResetToken:
    token: str
    state: ResetState


class ResetTokenFlow:
    """Generate, validate and consume password reset tokens."""

    def __init__(
        self,
        repository: AccountRepository,
        ttl_seconds: int,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    def issue(self) -> IssuedResetToken:
        """Generate a random token and the reset state to persist for it."""
        token = secrets.token_hex(20)
        state = ResetState(token_hash=hash_reset_token(token), expires_at=self._clock() + self._ttl)
        return IssuedResetToken(token=token, state=state)

    def validate(self, raw_token: str | None) -> AccountRecord:
        """Return the account with a live reset matching ``raw_token``.

        Unknown and expired tokens are indistinguishable to the caller.
        """
        if not raw_token:
            raise InvalidOrExpiredTokenError(INVALID_OR_EXPIRED_MESSAGE)
        record = self._repository.find_by_reset_token(hash_reset_token(raw_token), self._clock())
        if record is None:
            raise InvalidOrExpiredTokenError(INVALID_OR_EXPIRED_MESSAGE)
        return record

    def consume(self, raw_token: str, password_hash: str) -> AccountRecord:
        """Atomically install ``password_hash`` and clear the reset state."""
        record = self._repository.consume_reset_token(
            hash_reset_token(raw_token), self._clock(), password_hash
        )
        if record is None:
            raise InvalidOrExpiredTokenError(INVALID_OR_EXPIRED_MESSAGE)
        return record
