"""Detached avatar ingestion for newly registered accounts.

The worker runs after the registration response has been sent, so nothing it
does can reach the original caller: failures are logged and counted, and the
account simply keeps its current avatar.
"""

from __future__ import annotations

import logging

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..domain.account import Avatar
from ..domain.contracts import StagedUpload
from ..domain.errors import StorageError
from ..integrations.storage import ImageTransform, ObjectStorage
from ..metrics import AVATAR_INGESTIONS
from ..repository import AccountRepository

logger = logging.getLogger(__name__)


class AvatarIngestionWorker:
    """Upload a staged image and patch the account's avatar fields."""

    def __init__(
        self,
        repository: AccountRepository,
        storage: ObjectStorage,
        *,
        transform: ImageTransform | None = None,
        attempts: int = 3,
        backoff_seconds: float = 1.0,
    ) -> None:
        self._repository = repository
        self._storage = storage
        self._transform = transform or ImageTransform()
        self._attempts = max(1, attempts)
        self._backoff = backoff_seconds

    def run(self, account_id: str, staged: StagedUpload) -> None:
        """Ingest ``staged`` for ``account_id``; never raises."""
        try:
            avatar = self._upload_with_retries(staged)
            if self._repository.update_avatar(account_id, avatar):
                AVATAR_INGESTIONS.labels(outcome="stored").inc()
                logger.info("avatar for account %s stored as %s", account_id, avatar.storage_id)
            else:
                AVATAR_INGESTIONS.labels(outcome="orphaned").inc()
                logger.warning(
                    "account %s vanished before avatar %s was attached",
                    account_id,
                    avatar.storage_id,
                )
        except Exception:
            AVATAR_INGESTIONS.labels(outcome="failed").inc()
            logger.exception("avatar ingestion failed for account %s", account_id)
        finally:
            staged.discard()

    def _upload_with_retries(self, staged: StagedUpload) -> Avatar:
        retrying = Retrying(
            stop=stop_after_attempt(self._attempts),
            wait=wait_exponential(multiplier=self._backoff, max=10),
            retry=retry_if_exception_type(StorageError),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        "retrying avatar upload %s (attempt %d)",
                        staged.original_filename,
                        attempt.retry_state.attempt_number,
                    )
                return self._storage.upload(staged.path, self._transform)
