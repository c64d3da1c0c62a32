"""Object storage for avatar images."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import cloudinary
import cloudinary.exceptions
import cloudinary.uploader

from ..domain.account import Avatar
from ..domain.errors import StorageError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ImageTransform:
    """Server-side transform applied to uploaded avatars."""

    folder: str = "lms"
    width: int = 250
    height: int = 250
    gravity: str = "faces"
    crop: str = "fill"


class ObjectStorage(Protocol):
    def upload(self, local_path: Path, transform: ImageTransform) -> Avatar: ...

    def delete(self, storage_id: str) -> None: ...


class CloudinaryStorage:
    """Cloudinary-backed :class:`ObjectStorage`."""

    def __init__(
        self,
        *,
        cloud_name: str,
        api_key: str,
        api_secret: str,
        timeout_seconds: int = 60,
    ) -> None:
        cloudinary.config(
            cloud_name=cloud_name,
            api_key=api_key,
            api_secret=api_secret,
            secure=True,
        )
        self._timeout = timeout_seconds

    def upload(self, local_path: Path, transform: ImageTransform) -> Avatar:
        try:
            result = cloudinary.uploader.upload(
                str(local_path),
                folder=transform.folder,
                width=transform.width,
                height=transform.height,
                gravity=transform.gravity,
                crop=transform.crop,
                timeout=self._timeout,
            )
        except (cloudinary.exceptions.Error, OSError) as exc:
            raise StorageError(f"upload of {local_path.name} failed: {exc}") from exc
        if not result or "public_id" not in result or "secure_url" not in result:
            raise StorageError(f"upload of {local_path.name} returned no image reference")
        logger.info("uploaded %s as %s", local_path.name, result["public_id"])
        return Avatar(storage_id=result["public_id"], url=result["secure_url"])

    def delete(self, storage_id: str) -> None:
        try:
            result = cloudinary.uploader.destroy(storage_id)
        except (cloudinary.exceptions.Error, OSError) as exc:
            raise StorageError(f"delete of {storage_id} failed: {exc}") from exc
        if result.get("result") not in ("ok", "not found"):
            raise StorageError(f"delete of {storage_id} returned {result!r}")
