"""
Image upload handling.

- ``read_payload`` reads a request body that is either JSON or a form with at
  most one file under ``profileImage``.
- ``ImageStorage`` validates, stores and removes images below the upload
  root; stored references look like ``profiles/<file>`` and are served from
  ``/uploads``.
"""
from __future__ import annotations

import json
import logging
import os
import secrets
import time
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from fastapi import Request
from starlette.datastructures import UploadFile

from .errors import UploadError, ValidationError
from .models import DEFAULT_PROFILE_IMAGE

logger = logging.getLogger(__name__)

PROFILE_IMAGE_FIELD = "profileImage"
PROFILE_SUBDIR = "profiles"

ALLOWED_MIME_TYPES = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/bmp": ".bmp",
    "image/tiff": ".tiff",
}
ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp", ".tiff"}

_CHUNK_SIZE = 64 * 1024
# Room for multipart boundaries, headers and the text fields next to the file.
FORM_OVERHEAD_BYTES = 64 * 1024


def _format_size(limit: int) -> str:
    mb = limit / (1024 * 1024)
    return f"{mb:g}MB" if mb >= 1 else f"{limit} bytes"


def _declared_length(request: Request) -> int:
    try:
        return int(request.headers.get("content-length", ""))
    except ValueError:
        return 0


# PUBLIC_INTERFACE
async def read_payload(
    request: Request, file_field: str = PROFILE_IMAGE_FIELD, max_bytes: Optional[int] = None
) -> Tuple[Dict[str, Any], Optional[UploadFile]]:
    """
    Return (fields, upload) from a JSON or form request body.

    Form bodies may carry one file under ``file_field``; a file under any
    other name or a second file is rejected. Empty file parts (a form
    submitted without choosing a file) count as no file.

    With ``max_bytes`` set, a form whose declared Content-Length exceeds
    ``max_bytes`` plus FORM_OVERHEAD_BYTES is rejected before the body is
    read. Bodies without a Content-Length are spooled by Starlette and
    only checked against the exact limit by ``ImageStorage.save``.

    Raises:
        ValidationError: body is not valid JSON or not a JSON object.
        UploadError: unexpected or repeated file field, or a body
            declared far larger than the upload limit.
    """
    content_type = request.headers.get("content-type", "").lower()
    if content_type.startswith("multipart/form-data") or content_type.startswith(
        "application/x-www-form-urlencoded"
    ):
        if max_bytes is not None and _declared_length(request) > max_bytes + FORM_OVERHEAD_BYTES:
            logger.info("Rejected form body of %s bytes before reading", request.headers.get("content-length"))
            raise UploadError(
                f"File too large. Maximum size is {_format_size(max_bytes)}",
                UploadError.LIMIT_FILE_SIZE,
            )
        form = await request.form()
        fields: Dict[str, Any] = {}
        upload: Optional[UploadFile] = None
        for key, value in form.multi_items():
            if not isinstance(value, UploadFile):
                fields[key] = value
                continue
            if not value.filename:
                continue
            if key != file_field:
                raise UploadError(f"Upload error: Unexpected field '{key}'", UploadError.LIMIT_UNEXPECTED_FILE)
            if upload is not None:
                raise UploadError("Upload error: Only one file is allowed", UploadError.LIMIT_UNEXPECTED_FILE)
            upload = value
        return fields, upload

    body = await request.body()
    if not body.strip():
        return {}, None
    try:
        data = json.loads(body)
    except ValueError as exc:
        raise ValidationError("Request body is not valid JSON") from exc
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data, None


class ImageStorage:
    """
    Stores uploaded images under ``root/<subdir>`` with collision-resistant
    names: ``<owner>-<epoch millis>-<random><ext>``.
    """

    def __init__(self, root: str, max_bytes: int = 5 * 1024 * 1024, subdir: str = PROFILE_SUBDIR) -> None:
        self.root = Path(root).resolve()
        self.max_bytes = max_bytes
        self.subdir = subdir
        (self.root / subdir).mkdir(parents=True, exist_ok=True)

    def validate(self, upload: UploadFile) -> str:
        """
        Accept the file when either its MIME type or its extension is an
        allowed image type. Return the lower-cased extension to store with.
        """
        mime = (upload.content_type or "").lower()
        ext = os.path.splitext(upload.filename or "")[1].lower()
        mime_ok = mime in ALLOWED_MIME_TYPES
        ext_ok = ext in ALLOWED_EXTENSIONS
        if not (mime_ok or ext_ok):
            logger.info("Rejected upload filename=%s mime=%s ext=%s", upload.filename, mime, ext)
            raise UploadError(
                f"Invalid file type. Received MIME type: {mime or 'unknown'}, "
                f"Extension: {ext or 'none'}. Only image files are allowed.",
                UploadError.INVALID_FILE_TYPE,
            )
        if not ext_ok:
            ext = ALLOWED_MIME_TYPES[mime]
        return ext

    def _new_name(self, owner: Any, ext: str) -> str:
        millis = int(time.time() * 1000)
        return f"{owner}-{millis}-{secrets.randbelow(10 ** 9)}{ext}"

    def save(self, upload: UploadFile, owner: Any) -> str:
        """
        Validate and write ``upload`` to disk; return its reference
        (``<subdir>/<filename>``).

        Raises:
            UploadError: bad type (INVALID_FILE_TYPE) or larger than
                max_bytes (LIMIT_FILE_SIZE). No partial file is left behind.
        """
        ext = self.validate(upload)
        filename = self._new_name(owner, ext)
        target = self.root / self.subdir / filename

        written = 0
        source = upload.file
        source.seek(0)
        try:
            with open(target, "wb") as out:
                while True:
                    chunk = source.read(_CHUNK_SIZE)
                    if not chunk:
                        break
                    written += len(chunk)
                    if written > self.max_bytes:
                        raise UploadError(
                            f"File too large. Maximum size is {_format_size(self.max_bytes)}",
                            UploadError.LIMIT_FILE_SIZE,
                        )
                    out.write(chunk)
        except BaseException:
            target.unlink(missing_ok=True)
            raise

        reference = f"{self.subdir}/{filename}"
        logger.info("Stored upload %s (%d bytes)", reference, written)
        return reference

    def resolve(self, reference: str) -> Optional[Path]:
        """Absolute path for a stored reference, or None if it escapes the root."""
        candidate = (self.root / reference).resolve()
        if candidate == self.root or self.root not in candidate.parents:
            return None
        return candidate

    def remove(self, reference: Optional[str]) -> bool:
        """
        Best-effort delete of a stored image. The default sentinel and
        references outside the root are never touched. Failures are logged.
        """
        if not reference or reference == DEFAULT_PROFILE_IMAGE:
            return False
        path = self.resolve(reference)
        if path is None:
            logger.warning("Refusing to delete %r outside upload root", reference)
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            logger.warning("Stored image already gone: %s", reference)
            return False
        except OSError:
            logger.exception("Error deleting stored image %s", reference)
            return False
        logger.info("Deleted stored image %s", reference)
        return True

    @staticmethod
    def url_for(reference: str, base_url: str) -> str:
        return f"{base_url.rstrip('/')}/uploads/{reference}"
