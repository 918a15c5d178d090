from __future__ import annotations

import logging
import os
import uuid
from pathlib import Path

from services.errors import UpstreamFailureError


STORAGE_LOGGER = logging.getLogger("rentonway.storage")

_BASE_DIR = Path(__file__).resolve().parent.parent
UPLOADS_DIR = Path(os.environ.get("UPLOADS_DIR") or str(_BASE_DIR / "static" / "uploads"))
UPLOADS_BASE_URL = (os.environ.get("UPLOADS_BASE_URL") or "/uploads").rstrip("/")


def _safe_extension(filename: str | None) -> str:
    ext = os.path.splitext(filename or "")[1].lower()
    if not ext or len(ext) > 6 or not ext[1:].isalnum():
        return ".jpg"
    return ext


def upload_image(data: bytes, folder: str, filename: str | None = None) -> str:
    """Store one image and return the URL it is served from."""
    folder_name = (folder or "misc").strip("/") or "misc"
    target_dir = UPLOADS_DIR / folder_name
    stored_name = f"{uuid.uuid4().hex}{_safe_extension(filename)}"
    try:
        target_dir.mkdir(parents=True, exist_ok=True)
        with (target_dir / stored_name).open("wb") as output:
            output.write(data)
    except OSError as exc:
        STORAGE_LOGGER.error("Upload failed folder=%s error=%s", folder_name, exc)
        raise UpstreamFailureError("Image upload failed.") from exc
    return f"{UPLOADS_BASE_URL}/{folder_name}/{stored_name}"
