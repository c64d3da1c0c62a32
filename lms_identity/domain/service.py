"""Identity service orchestrating persistence, credentials, sessions and avatars."""

from __future__ import annotations

import functools
import logging
from concurrent.futures import Executor
from typing import Callable, TypeVar

from email_validator import EmailNotValidError, validate_email

from .account import Account, AccountRecord, Avatar
from .contracts import NewAccount, ProfileUpdate, RegisterInput, Session, StagedUpload
from .errors import (
    ConflictError,
    DuplicateEmailError,
    InternalError,
    NotFoundError,
    StorageError,
    StoreError,
    UnauthorizedError,
    ValidationError,
)
from ..integrations.mailer import EmailSender
from ..integrations.storage import ImageTransform, ObjectStorage
from ..metrics import LOGINS, PASSWORD_RESETS
from ..repository import AccountRepository
from ..security.passwords import PasswordHasher
from ..security.reset_tokens import ResetTokenFlow
from ..security.tokens import SessionClaims, TokenService
from ..workers.avatar import AvatarIngestionWorker

logger = logging.getLogger(__name__)

# Identical for unknown email and wrong password.
LOGIN_FAILED_MESSAGE = "Email or password do not match or user does not exist"
ACCOUNT_MISSING_MESSAGE = "Invalid user id or user does not exist"

RESET_EMAIL_SUBJECT = "Reset Password"
SOMETHING_WENT_WRONG_MESSAGE = "Something went wrong, please try again."


def normalise_email(email: str) -> str:
    return email.strip().lower()


def _reset_email_body(reset_url: str) -> str:
    return (
        f'<p>You can reset your password by clicking <a href="{reset_url}" target="_blank">'
        "Reset your password</a>.</p>"
        f"<p>If the above link does not work, copy and paste this link into a new tab: {reset_url}</p>"
        "<p>If you have not requested this, kindly ignore this email.</p>"
    )


_T = TypeVar("_T")


def _store_failures_are_internal(func: Callable[..., _T]) -> Callable[..., _T]:
    """Surface account store outages to callers as ``InternalError``."""

    @functools.wraps(func)
    def wrapper(self: "IdentityService", *args, **kwargs) -> _T:
        try:
            return func(self, *args, **kwargs)
        except StoreError as exc:
            logger.error("%s aborted by account store failure: %s", func.__name__, exc)
            raise InternalError(SOMETHING_WENT_WRONG_MESSAGE) from exc

    return wrapper


class IdentityService:
    """Account workflows: registration, sessions, password reset and profile edits.

    Every operation re-reads the account from the repository; nothing is
    cached between calls.
    """

    def __init__(
        self,
        repository: AccountRepository,
        hasher: PasswordHasher,
        tokens: TokenService,
        reset_flow: ResetTokenFlow,
        storage: ObjectStorage,
        mailer: EmailSender,
        avatar_worker: AvatarIngestionWorker,
        background: Executor,
        *,
        placeholder_avatar: Avatar,
        frontend_url: str,
        image_transform: ImageTransform | None = None,
    ) -> None:
        """Store collaborators used by the identity workflows.

        ``background`` receives avatar ingestion jobs for new registrations;
        the service never waits on the returned future.
        """
        self._repository = repository
        self._hasher = hasher
        self._tokens = tokens
        self._reset_flow = reset_flow
        self._storage = storage
        self._mailer = mailer
        self._avatar_worker = avatar_worker
        self._background = background
        self._placeholder = placeholder_avatar
        self._frontend_url = frontend_url.rstrip("/")
        self._transform = image_transform or ImageTransform()
        # Verified against on unknown emails so both login failures cost a hash check.
        self._decoy_hash = hasher.hash("decoy-password-for-timing")

    @_store_failures_are_internal
    def register(self, payload: RegisterInput, image: StagedUpload | None = None) -> Session:
        """Create an account with a placeholder avatar and open a session.

        When ``image`` is supplied it is handed to the avatar worker in the
        background; the returned account still shows the placeholder.
        """
        handed_off = False
        try:
            full_name = (payload.full_name or "").strip()
            if not full_name or not payload.email or not payload.password:
                raise ValidationError("All fields are required")
            email = self._validated_email(payload.email)

            if self._repository.find_by_email(email) is not None:
                raise ConflictError("Email already exists")
            try:
                record = self._repository.create_account(
                    NewAccount(
                        email=email,
                        full_name=full_name,
                        password_hash=self._hasher.hash(payload.password),
                        avatar=self._placeholder,
                    )
                )
            except DuplicateEmailError as exc:
                raise ConflictError("Email already exists") from exc

            token, expires_in = self._tokens.issue(
                account_id=record.account_id, role=record.account.role
            )
            logger.info("registered account %s", record.account_id)

            if image is not None:
                handed_off = self._schedule_avatar(record.account_id, image)
            return Session(account=record.account, token=token, expires_in=expires_in)
        finally:
            if image is not None and not handed_off:
                image.discard()

    @_store_failures_are_internal
    def login(self, email: str | None, password: str | None) -> Session:
        """Verify credentials and open a session."""
        if not email or not password:
            raise ValidationError("Email and password are required")
        record = self._repository.find_by_email(normalise_email(email))
        if record is None:
            self._hasher.verify(password, self._decoy_hash)
            LOGINS.labels(outcome="rejected").inc()
            raise UnauthorizedError(LOGIN_FAILED_MESSAGE)
        if not self._hasher.verify(password, record.password_hash):
            LOGINS.labels(outcome="rejected").inc()
            raise UnauthorizedError(LOGIN_FAILED_MESSAGE)

        token, expires_in = self._tokens.issue(account_id=record.account_id, role=record.account.role)
        LOGINS.labels(outcome="accepted").inc()
        logger.info("account %s logged in", record.account_id)
        return Session(account=record.account, token=token, expires_in=expires_in)

    def logout(self, claims: SessionClaims | None) -> None:
        """End a session.

        Sessions are stateless signed tokens: nothing is revoked server side,
        the caller discards the cookie and the token lapses at its expiry.
        """
        if claims is not None:
            logger.info("account %s logged out", claims.account_id)

    @_store_failures_are_internal
    def get_account(self, account_id: str) -> Account:
        return self._require_record(account_id).account

    @_store_failures_are_internal
    def request_password_reset(self, email: str | None) -> None:
        """Email a reset link, rolling the pending reset back if sending fails."""
        if not email:
            raise ValidationError("Email is required")
        record = self._repository.find_by_email(normalise_email(email))
        if record is None:
            raise NotFoundError("Email not registered")

        issued = self._reset_flow.issue()
        self._repository.update_reset_state(record.account_id, issued.state)
        reset_url = f"{self._frontend_url}/reset-password/{issued.token}"
        try:
            self._mailer.send(record.account.email, RESET_EMAIL_SUBJECT, _reset_email_body(reset_url))
        except Exception as exc:
            self._repository.update_reset_state(record.account_id, None)
            PASSWORD_RESETS.labels(stage="rolled_back").inc()
            logger.error("reset email for account %s failed; reset state cleared", record.account_id)
            raise InternalError(SOMETHING_WENT_WRONG_MESSAGE) from exc
        PASSWORD_RESETS.labels(stage="requested").inc()
        logger.info("password reset requested for account %s", record.account_id)

    @_store_failures_are_internal
    def complete_reset(self, raw_token: str | None, new_password: str | None) -> None:
        """Replace the credential of the account holding a live ``raw_token``."""
        if not new_password:
            raise ValidationError("Password is required")
        self._reset_flow.validate(raw_token)
        record = self._reset_flow.consume(raw_token, self._hasher.hash(new_password))
        PASSWORD_RESETS.labels(stage="completed").inc()
        logger.info("password reset completed for account %s", record.account_id)

    @_store_failures_are_internal
    def change_password(
        self, account_id: str, old_password: str | None, new_password: str | None
    ) -> None:
        """Replace the credential after re-verifying the current one."""
        if not old_password or not new_password:
            raise ValidationError("Old password and new password are required")
        record = self._require_record(account_id)
        if not self._hasher.verify(old_password, record.password_hash):
            raise UnauthorizedError("Invalid old password")
        self._repository.update_password(account_id, self._hasher.hash(new_password))
        logger.info("account %s changed password", account_id)

    @_store_failures_are_internal
    def update_profile(
        self,
        account_id: str,
        update: ProfileUpdate,
        image: StagedUpload | None = None,
    ) -> Account:
        """Apply profile changes, uploading a new avatar synchronously.

        A failed upload aborts the whole update. The previous image is only
        removed from storage once the new one is persisted; a new image that
        could not be persisted is removed again.
        """
        try:
            record = self._require_record(account_id)
            fields: dict[str, str] = {}
            full_name = (update.full_name or "").strip()
            if full_name:
                fields["full_name"] = full_name

            previous = record.account.avatar
            uploaded: Avatar | None = None
            if image is not None:
                try:
                    uploaded = self._storage.upload(image.path, self._transform)
                except StorageError as exc:
                    logger.warning("avatar upload for account %s failed: %s", account_id, exc)
                    raise InternalError("File not uploaded, please try again") from exc
                fields["avatar_storage_id"] = uploaded.storage_id
                fields["avatar_url"] = uploaded.url

            try:
                updated = self._repository.update_fields(account_id, fields)
            except StoreError:
                if uploaded is not None:
                    self._delete_quietly(uploaded)
                raise
            if updated is None:
                # account vanished after the upload
                if uploaded is not None:
                    self._delete_quietly(uploaded)
                raise NotFoundError(ACCOUNT_MISSING_MESSAGE)
            if uploaded is not None and self._owns_image(previous, uploaded):
                self._delete_quietly(previous)
            return updated.account
        finally:
            if image is not None:
                image.discard()

    def _schedule_avatar(self, account_id: str, image: StagedUpload) -> bool:
        try:
            self._background.submit(self._avatar_worker.run, account_id, image)
        except RuntimeError as exc:
            logger.error("could not schedule avatar ingestion for account %s: %s", account_id, exc)
            return False
        return True

    def _owns_image(self, previous: Avatar, replacement: Avatar) -> bool:
        return (
            previous.storage_id != self._placeholder.storage_id
            and previous.storage_id != replacement.storage_id
        )

    def _delete_quietly(self, avatar: Avatar) -> None:
        try:
            self._storage.delete(avatar.storage_id)
        except StorageError as exc:
            logger.warning("could not delete replaced avatar %s: %s", avatar.storage_id, exc)

    def _require_record(self, account_id: str) -> AccountRecord:
        record = self._repository.get_account(account_id)
        if record is None:
            raise NotFoundError(ACCOUNT_MISSING_MESSAGE)
        return record

    def _validated_email(self, email: str) -> str:
        normalised = normalise_email(email)
        try:
            validate_email(normalised, check_deliverability=False)
        except EmailNotValidError as exc:
            raise ValidationError("Please provide a valid email address") from exc
        return normalised
