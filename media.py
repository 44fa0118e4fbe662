import logging
import os
import secrets
import time
from pathlib import Path
from typing import Optional

from fastapi import Request, UploadFile

from errors import ValidationError

UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", "uploads"))
UPLOAD_FOLDERS = ("chat", "posts", "profiles")
MAX_IMAGE_BYTES = 5 * 1024 * 1024

log = logging.getLogger("orbya.media")


def prepare_upload_dirs() -> None:
    for folder in UPLOAD_FOLDERS:
        (UPLOAD_DIR / folder).mkdir(parents=True, exist_ok=True)


async def store_image(upload: UploadFile, folder: str, prefix: str) -> str:
    """Validate an uploaded image, write it under UPLOAD_DIR/<folder> and return the filename."""
    if not (upload.content_type or "").startswith("image/"):
        raise ValidationError("Only image files are allowed")
    raw = await upload.read()
    if not raw:
        raise ValidationError("Empty image file")
    if len(raw) > MAX_IMAGE_BYTES:
        raise ValidationError("Image exceeds the 5MB limit")

    suffix = Path(upload.filename or "").suffix.lower()
    filename = f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(4)}{suffix}"
    target = UPLOAD_DIR / folder
    target.mkdir(parents=True, exist_ok=True)
    (target / filename).write_bytes(raw)
    return filename


def discard_image(folder: str, filename: Optional[str]) -> None:
    if not filename:
        return
    path = UPLOAD_DIR / folder / filename
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        log.error("Could not remove %s: %s", path, exc)


def media_url(base_url: str, folder: str, filename: Optional[str]) -> Optional[str]:
    if not filename:
        return None
    return f"{base_url.rstrip('/')}/uploads/{folder}/{filename}"


def request_base_url(request: Request) -> str:
    # scheme and host of the request itself, so links work behind any hostname
    return str(request.base_url)
