"""Staging of multipart uploads onto local disk."""

from __future__ import annotations

import logging
import shutil
import uuid
from pathlib import Path

from fastapi import UploadFile

from ..domain.contracts import StagedUpload

logger = logging.getLogger(__name__)


def stage_upload(upload: UploadFile | None, directory: str) -> StagedUpload | None:
    """Copy an uploaded file to ``directory`` under a collision-free name.

    Returns ``None`` when the client sent no file (or an empty file field).
    """
    if upload is None or not upload.filename:
        return None
    target_dir = Path(directory)
    target_dir.mkdir(parents=True, exist_ok=True)
    suffix = Path(upload.filename).suffix.lower()
    target = target_dir / f"{uuid.uuid4().hex}{suffix}"
    try:
        with target.open("wb") as handle:
            shutil.copyfileobj(upload.file, handle)
    except Exception:
        target.unlink(missing_ok=True)
        logger.warning("staging of %s failed; removed partial file", upload.filename)
        raise
    logger.debug("staged upload %s at %s", upload.filename, target)
    return StagedUpload(path=target, original_filename=upload.filename, content_type=upload.content_type)
