from __future__ import annotations

import copy
import dataclasses
import uuid
from concurrent.futures import Future
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from lms_identity.api import routes
from lms_identity.domain.account import Account, AccountRecord, Avatar, ResetState, Role
from lms_identity.domain.contracts import NewAccount, StagedUpload
from lms_identity.domain.errors import DuplicateEmailError, EmailDeliveryError, StorageError
from lms_identity.domain.service import IdentityService
from lms_identity.integrations.storage import ImageTransform
from lms_identity.security.attempts import SlidingWindowAttemptLimiter
from lms_identity.security.guard import AuthorizationGuard
from lms_identity.security.passwords import PasswordHasher
from lms_identity.security.reset_tokens import ResetTokenFlow
from lms_identity.security.tokens import TokenService
from lms_identity.workers.avatar import AvatarIngestionWorker

PLACEHOLDER = Avatar(storage_id="lms/avatar-placeholder", url="https://cdn.example.com/placeholder.jpg")
FRONTEND_URL = "https://lms.example.com"
JWT_SECRET = "test-secret"
JWT_ISSUER = "lms.identity.test"


class FakeRepository:
    """In-memory repository mimicking the Postgres-backed behaviours.

    Rows are stored as plain dicts and every read builds fresh objects, so
    callers cannot mutate stored state by accident.
    """

    def __init__(self) -> None:
        self._rows: dict[str, dict[str, Any]] = {}
        self.partial_updates: list[tuple[str, set[str]]] = []

    def create_account(self, payload: NewAccount) -> AccountRecord:
        if any(row["email"] == payload.email for row in self._rows.values()):
            raise DuplicateEmailError(payload.email)
        now = datetime.now(timezone.utc)
        account_id = str(uuid.uuid4())
        self._rows[account_id] = {
            "account_id": account_id,
            "email": payload.email,
            "full_name": payload.full_name,
            "role": payload.role,
            "subscription": {},
            "password_hash": payload.password_hash,
            "avatar_storage_id": payload.avatar.storage_id,
            "avatar_url": payload.avatar.url,
            "reset_token_hash": None,
            "reset_expires_at": None,
            "created_at": now,
            "updated_at": now,
        }
        return self._record(self._rows[account_id])

    def find_by_email(self, email: str) -> AccountRecord | None:
        for row in self._rows.values():
            if row["email"] == email:
                return self._record(row)
        return None

    def get_account(self, account_id: str) -> AccountRecord | None:
        row = self._rows.get(account_id)
        return self._record(row) if row else None

    def find_by_reset_token(self, token_hash: str, now: datetime) -> AccountRecord | None:
        row = self._live_reset_row(token_hash, now)
        return self._record(row) if row else None

    def consume_reset_token(self, token_hash: str, now: datetime, password_hash: str) -> AccountRecord | None:
        row = self._live_reset_row(token_hash, now)
        if row is None:
            return None
        row.update(
            password_hash=password_hash,
            reset_token_hash=None,
            reset_expires_at=None,
            updated_at=now,
        )
        return self._record(row)

    def update_reset_state(self, account_id: str, state: ResetState | None) -> None:
        self.update_fields(
            account_id,
            {
                "reset_token_hash": state.token_hash if state else None,
                "reset_expires_at": state.expires_at if state else None,
            },
        )

    def update_password(self, account_id: str, password_hash: str) -> None:
        self.update_fields(account_id, {"password_hash": password_hash})

    def update_avatar(self, account_id: str, avatar: Avatar) -> bool:
        record = self.update_fields(
            account_id,
            {"avatar_storage_id": avatar.storage_id, "avatar_url": avatar.url},
        )
        return record is not None

    def update_fields(self, account_id: str, fields: dict[str, Any]) -> AccountRecord | None:
        row = self._rows.get(account_id)
        if row is None:
            return None
        self.partial_updates.append((account_id, set(fields)))
        row.update(copy.deepcopy(fields))
        row["updated_at"] = datetime.now(timezone.utc)
        return self._record(row)

    # test helpers

    def row(self, account_id: str) -> dict[str, Any]:
        return self._rows[account_id]

    def set_role(self, account_id: str, role: Role) -> None:
        self._rows[account_id]["role"] = role

    def set_subscription(self, account_id: str, subscription: dict[str, Any]) -> None:
        self._rows[account_id]["subscription"] = dict(subscription)

    def delete(self, account_id: str) -> None:
        del self._rows[account_id]

    def _live_reset_row(self, token_hash: str, now: datetime) -> dict[str, Any] | None:
        for row in self._rows.values():
            expires_at = row["reset_expires_at"]
            if row["reset_token_hash"] == token_hash and expires_at is not None and expires_at > now:
                return row
        return None

    def _record(self, row: dict[str, Any]) -> AccountRecord:
        reset_state = None
        if row["reset_token_hash"] is not None:
            reset_state = ResetState(row["reset_token_hash"], row["reset_expires_at"])
        account = Account(
            account_id=row["account_id"],
            email=row["email"],
            full_name=row["full_name"],
            role=row["role"],
            subscription=dict(row["subscription"]),
            avatar=Avatar(row["avatar_storage_id"], row["avatar_url"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
        return AccountRecord(account=account, password_hash=row["password_hash"], reset_state=reset_state)


class FakeStorage:
    """Object storage double recording uploads and deletions."""

    def __init__(self) -> None:
        self.uploads: list[tuple[Path, ImageTransform]] = []
        self.deleted: list[str] = []
        self.failures_remaining = 0
        self.fail_deletes = False

    def upload(self, local_path: Path, transform: ImageTransform) -> Avatar:
        self.uploads.append((local_path, transform))
        if self.failures_remaining:
            self.failures_remaining -= 1
            raise StorageError("upstream timeout")
        index = len(self.uploads)
        return Avatar(
            storage_id=f"{transform.folder}/avatar-{index}",
            url=f"https://cdn.example.com/{transform.folder}/avatar-{index}.jpg",
        )

    def delete(self, storage_id: str) -> None:
        if self.fail_deletes:
            raise StorageError("delete refused")
        self.deleted.append(storage_id)


class FakeMailer:
    def __init__(self) -> None:
        self.sent: list[dict[str, str]] = []
        self.fail = False

    def send(self, to: str, subject: str, html_body: str) -> None:
        if self.fail:
            raise EmailDeliveryError("smtp relay unavailable")
        self.sent.append({"to": to, "subject": subject, "html": html_body})


class DeferredExecutor:
    """Executor double that queues work until the test drains it."""

    def __init__(self) -> None:
        self.pending: list[tuple[Callable[..., Any], tuple[Any, ...]]] = []

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        self.pending.append((fn, args))
        return Future()

    def run_pending(self) -> None:
        while self.pending:
            fn, args = self.pending.pop(0)
            fn(*args)


class MutableClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def last_reset_token(mailer) -> Callable[[], str]:
    """Pull the plaintext token out of the most recent reset email."""

    def _token() -> str:
        html_body = mailer.sent[-1]["html"]
        marker = f"{FRONTEND_URL}/reset-password/"
        start = html_body.index(marker) + len(marker)
        return html_body[start : html_body.index('"', start)]

    return _token


@pytest.fixture
def executor() -> DeferredExecutor:
    return DeferredExecutor()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def hasher() -> PasswordHasher:
    return PasswordHasher(rounds=4)


@pytest.fixture
def tokens() -> TokenService:
    return TokenService(JWT_SECRET, JWT_ISSUER, ttl_seconds=3600)


@pytest.fixture
def worker(repository, storage) -> AvatarIngestionWorker:
    return AvatarIngestionWorker(repository, storage, attempts=3, backoff_seconds=0)


@pytest.fixture
def service(repository, hasher, tokens, clock, storage, mailer, worker, executor) -> IdentityService:
    return IdentityService(
        repository,
        hasher,
        tokens,
        ResetTokenFlow(repository, ttl_seconds=900, clock=clock),
        storage,
        mailer,
        worker,
        executor,
        placeholder_avatar=PLACEHOLDER,
        frontend_url=FRONTEND_URL,
    )


@pytest.fixture
def guard(tokens, repository) -> AuthorizationGuard:
    return AuthorizationGuard(tokens, repository)


@pytest.fixture
def staged_image(tmp_path) -> Callable[[str], StagedUpload]:
    def _make(name: str = "face.jpg") -> StagedUpload:
        path = tmp_path / f"{uuid.uuid4().hex}-{name}"
        path.write_bytes(b"\xff\xd8\xff\xe0fake-jpeg")
        return StagedUpload(path=path, original_filename=name, content_type="image/jpeg")

    return _make


@pytest.fixture
def api_client(service, guard, tmp_path, monkeypatch):
    """Provide a FastAPI test client with isolated state."""
    app = FastAPI()
    app.include_router(routes.router)
    app.state.identity_service = service
    app.state.guard = guard

    monkeypatch.setattr(
        routes, "login_limiter", SlidingWindowAttemptLimiter(max_attempts=3, window_seconds=60)
    )
    monkeypatch.setattr(
        routes, "reset_limiter", SlidingWindowAttemptLimiter(max_attempts=2, window_seconds=60)
    )
    monkeypatch.setattr(
        routes, "settings", dataclasses.replace(routes.settings, upload_dir=str(tmp_path / "uploads"))
    )

    with TestClient(app) as client:
        yield client, service
