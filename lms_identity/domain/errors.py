"""Error taxonomy raised by identity workflows.

Routes translate these into HTTP responses; the domain layer never imports
FastAPI.
"""

from __future__ import annotations


class IdentityError(Exception):
    """Base class for failures surfaced to the caller of an identity operation."""

    code = "internal"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(IdentityError):
    code = "validation"
    status_code = 400


class ConflictError(IdentityError):
    code = "conflict"
    status_code = 409


class UnauthorizedError(IdentityError):
    """Credentials were presented and rejected."""

    code = "unauthorized"
    status_code = 401


class UnauthenticatedError(IdentityError):
    """No usable session accompanied the request."""

    code = "unauthenticated"
    status_code = 401


class ForbiddenError(IdentityError):
    code = "forbidden"
    status_code = 403


class NotFoundError(IdentityError):
    code = "not_found"
    status_code = 404


class InvalidOrExpiredTokenError(IdentityError):
    code = "invalid_or_expired"
    status_code = 400


class InternalError(IdentityError):
    code = "internal"
    status_code = 500


class DuplicateEmailError(Exception):
    """Raised by the store when the unique email index rejects an insert."""


class StorageError(Exception):
    """Object storage upload or delete failed."""


class EmailDeliveryError(Exception):
    """The outbound email could not be handed to the transport."""


class StoreError(Exception):
    """The account store could not complete a query."""
