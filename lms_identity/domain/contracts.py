"""Domain-level request contracts shared by multiple layers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from .account import Account, Avatar, Role

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RegisterInput:
    """Raw registration fields as received from the boundary."""

    full_name: str | None
    email: str | None
    password: str | None


@dataclass(slots=True)
class ProfileUpdate:
    """Fields a caller may change on their own profile."""

    full_name: str | None = None


@dataclass(slots=True)
class NewAccount:
    """Validated, hashed values required to insert an account row."""

    email: str
    full_name: str
    password_hash: str
    avatar: Avatar
    role: Role = Role.LEARNER


@dataclass(slots=True)
class Session:
    """Result of a successful register or login."""

    account: Account
    token: str
    expires_in: int


@dataclass(frozen=True, slots=True)
class StagedUpload:
    """A client image written to local disk, awaiting object storage."""

    path: Path
    original_filename: str
    content_type: str | None = None

    def discard(self) -> None:
        """Remove the staged file, tolerating an already-missing file."""
        try:
            self.path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("could not remove staged upload %s: %s", self.path, exc)
