"""FastAPI application wiring for the identity service."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from psycopg_pool import ConnectionPool

from .api.routes import router as user_router
from .config import Settings, get_settings
from .domain.account import Avatar
from .domain.service import IdentityService
from .integrations.mailer import SmtpEmailSender
from .integrations.storage import CloudinaryStorage, ImageTransform
from .repository import AccountRepository
from .security.guard import AuthorizationGuard
from .security.passwords import PasswordHasher
from .security.reset_tokens import ResetTokenFlow
from .security.tokens import TokenService
from .workers.avatar import AvatarIngestionWorker

settings = get_settings()

logging.getLogger("lms_identity").setLevel(settings.log_level)


def build_service(
    settings: Settings,
    repository: AccountRepository,
    background: ThreadPoolExecutor,
) -> tuple[IdentityService, AuthorizationGuard]:
    """Assemble the identity service and guard from configuration."""
    tokens = TokenService(settings.jwt_secret, settings.jwt_issuer, settings.jwt_ttl_seconds)
    storage = CloudinaryStorage(
        cloud_name=settings.cloudinary_cloud_name,
        api_key=settings.cloudinary_api_key,
        api_secret=settings.cloudinary_api_secret,
        timeout_seconds=settings.avatar_upload_timeout_seconds,
    )
    mailer = SmtpEmailSender(
        host=settings.smtp_host,
        port=settings.smtp_port,
        from_email=settings.smtp_from_email,
        username=settings.smtp_username,
        password=settings.smtp_password,
        use_tls=settings.smtp_use_tls,
    )
    transform = ImageTransform(folder=settings.cloudinary_folder)
    worker = AvatarIngestionWorker(
        repository,
        storage,
        transform=transform,
        attempts=settings.avatar_upload_attempts,
    )
    service = IdentityService(
        repository,
        PasswordHasher(rounds=settings.bcrypt_rounds),
        tokens,
        ResetTokenFlow(repository, settings.reset_token_ttl_seconds),
        storage,
        mailer,
        worker,
        background,
        placeholder_avatar=Avatar(
            storage_id=settings.placeholder_avatar_id,
            url=settings.placeholder_avatar_url,
        ),
        frontend_url=settings.frontend_url,
        image_transform=transform,
    )
    return service, AuthorizationGuard(tokens, repository)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise shared resources (Postgres pool, avatar executor, services) for the app lifecycle."""
    pool = ConnectionPool(settings.database_url, open=False)
    pool.open()
    background = ThreadPoolExecutor(
        max_workers=settings.avatar_workers, thread_name_prefix="avatar-ingest"
    )
    app.state.pool = pool
    app.state.identity_service, app.state.guard = build_service(
        settings, AccountRepository(pool), background
    )
    try:
        yield
    finally:
        # let in-flight avatar ingestions finish before the pool goes away
        background.shutdown(wait=True)
        pool.close()


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With", "Accept", "Origin"],
    max_age=600,
)


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


@app.get("/metrics", include_in_schema=False)
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(user_router)


def run() -> None:
    """Serve the application with uvicorn using the configured host and port."""
    uvicorn.run(
        "lms_identity.main:app",
        host=settings.http_host,
        port=settings.http_port,
        log_level=settings.log_level.lower(),
    )
