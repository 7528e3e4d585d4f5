"""
Asset files

Product images, product engine sounds and user avatars are stored on disk
under UPLOAD_ROOT and served by the app under /public. Only the filename is
kept on the record; the directory comes from the asset kind.
"""

import logging
import os
import random
import shutil
import time
from typing import Optional

from fastapi import UploadFile

from errors import ValidationFailed

logger = logging.getLogger(__name__)

UPLOAD_ROOT = os.getenv("UPLOAD_ROOT", "public")

PRODUCT_IMAGE = "product_image"
USER_IMAGE = "user_image"
SOUND = "sound"

_FOLDERS = {
    PRODUCT_IMAGE: os.path.join("images", "products"),
    USER_IMAGE: os.path.join("images", "users"),
    SOUND: "sounds",
}

_IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg")
_SOUND_EXTENSIONS = (".mp3", ".wav", ".ogg", ".m4a")

_ALLOWED = {
    PRODUCT_IMAGE: _IMAGE_EXTENSIONS,
    USER_IMAGE: _IMAGE_EXTENSIONS,
    SOUND: _SOUND_EXTENSIONS,
}


def asset_dir(kind: str) -> str:
    return os.path.join(UPLOAD_ROOT, _FOLDERS[kind])


def ensure_dirs() -> None:
    for kind in _FOLDERS:
        os.makedirs(asset_dir(kind), exist_ok=True)


def generate_filename(original: str) -> str:
    ext = os.path.splitext(original)[1].lower()
    return f"{int(time.time() * 1000)}{random.randint(0, 999)}{ext}"


def check_upload(kind: str, upload: UploadFile) -> None:
    ext = os.path.splitext(upload.filename or "")[1].lower()
    if ext not in _ALLOWED[kind]:
        allowed = ", ".join(e.lstrip(".") for e in _ALLOWED[kind])
        raise ValidationFailed(f"Invalid file '{upload.filename}': only {allowed} are accepted")


def save_upload(kind: str, upload: UploadFile) -> str:
    """Write an uploaded file under a fresh server-generated name and return that name."""
    check_upload(kind, upload)
    os.makedirs(asset_dir(kind), exist_ok=True)
    filename = generate_filename(upload.filename or "")
    while os.path.exists(os.path.join(asset_dir(kind), filename)):
        filename = generate_filename(upload.filename or "")
    with open(os.path.join(asset_dir(kind), filename), "wb") as out:
        shutil.copyfileobj(upload.file, out)
    return filename


def remove_asset(kind: str, filename: Optional[str]) -> bool:
    """Best-effort delete. Returns True when a file was removed; errors are logged, never raised."""
    if not filename:
        return False
    # stored names never contain a path
    path = os.path.join(asset_dir(kind), os.path.basename(filename))
    try:
        os.remove(path)
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.warning("Could not remove %s asset %s: %s", kind, filename, e)
        return False
    return True
