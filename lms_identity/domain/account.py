from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Role(str, Enum):
    LEARNER = "LEARNER"
    ADMIN = "ADMIN"


@dataclass(frozen=True, slots=True)
class Avatar:
    """Reference to an image held by object storage."""

    storage_id: str
    url: str


@dataclass(frozen=True, slots=True)
class ResetState:
    """Pending password reset: digest of the emailed token and its deadline."""

    token_hash: str
    expires_at: datetime

    def is_live(self, now: datetime) -> bool:
        return self.expires_at > now


@dataclass(slots=True)
class Account:
    """Aggregate root for a learner or administrator identity.

    Carries no credential; see :class:`AccountRecord`.
    """

    account_id: str
    email: str
    full_name: str
    role: Role
    avatar: Avatar
    created_at: datetime
    updated_at: datetime
    subscription: dict[str, Any] = field(default_factory=dict)

    @property
    def has_active_subscription(self) -> bool:
        return self.subscription.get("status") == "active"


@dataclass(slots=True)
class AccountRecord:
    """Store projection pairing an account with its credential state."""

    account: Account
    password_hash: str
    reset_state: ResetState | None = None

    @property
    def account_id(self) -> str:
        return self.account.account_id
