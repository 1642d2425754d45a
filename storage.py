"""Upload storage for profile pictures and game images.

With IMAGE_HOST_URL set, files are posted to the remote image host (an
unsigned-upload endpoint answering with `secure_url`); otherwise they are
written under UPLOAD_DIR and served from /uploads.
"""
import logging
import os
import uuid
from pathlib import Path

import httpx
from fastapi import HTTPException, UploadFile

from config import settings

logger = logging.getLogger(__name__)

_ALLOWED_TYPES = {"image/jpeg", "image/png", "image/webp", "image/gif"}
_MAX_BYTES = 5 * 1024 * 1024


def upload_root() -> Path:
    return Path(settings.upload_dir)


def save_upload(file: UploadFile) -> str:
    """Persist an uploaded image and return its public URL."""
    if file.content_type not in _ALLOWED_TYPES:
        raise HTTPException(status_code=400, detail="Unsupported image type")
    content = file.file.read()
    if len(content) > _MAX_BYTES:
        raise HTTPException(status_code=400, detail="Image too large")

    if settings.image_host_url:
        return _upload_remote(file.filename or "upload", file.content_type, content)

    ext = os.path.splitext(file.filename or "")[1].lower() or ".jpg"
    name = f"{uuid.uuid4().hex}{ext}"
    root = upload_root()
    root.mkdir(parents=True, exist_ok=True)
    (root / name).write_bytes(content)
    return f"/uploads/{name}"


def _upload_remote(filename: str, content_type: str, content: bytes) -> str:
    data = {"upload_preset": settings.image_host_preset} if settings.image_host_preset else {}
    try:
        resp = httpx.post(
            settings.image_host_url,
            data=data,
            files={"file": (filename, content, content_type)},
            timeout=30,
        )
        resp.raise_for_status()
        return resp.json()["secure_url"]
    except (httpx.HTTPError, KeyError, ValueError) as e:
        logger.error("Image host upload failed: %s", e)
        raise HTTPException(status_code=502, detail="Image upload failed")
