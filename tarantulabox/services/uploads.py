from __future__ import annotations

import os
import secrets

from fastapi import HTTPException

from ..config import ALLOWED_IMAGE_TYPES, MAX_UPLOAD_BYTES, UPLOAD_DIR

_SIGNATURES = (
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
)


def sniff_image_type(data: bytes) -> str | None:
    for signature, mime in _SIGNATURES:
        if data.startswith(signature):
            return mime
    return None


def save_tarantula_image(data: bytes, owner_id: int, upload_dir: str = UPLOAD_DIR) -> str:
    """Validate and store an uploaded photo, returning its public URL."""
    if not data:
        raise HTTPException(status_code=400, detail="Image is required.")
    if len(data) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="Image too large (max 2MB).")
    mime = sniff_image_type(data)
    if mime not in ALLOWED_IMAGE_TYPES:
        raise HTTPException(
            status_code=400,
            detail="The provided file format is not allowed. Please upload a JPEG or PNG image.",
        )
    owner_dir = os.path.join(upload_dir, str(owner_id))
    os.makedirs(owner_dir, exist_ok=True)
    filename = secrets.token_urlsafe(18) + ALLOWED_IMAGE_TYPES[mime]
    with open(os.path.join(owner_dir, filename), "wb") as handle:
        handle.write(data)
    return f"/uploads/{owner_id}/{filename}"
