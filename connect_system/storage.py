"""Blob storage for complaint attachments and avatars."""
import asyncio
import logging
import re
from pathlib import Path, PurePosixPath
from typing import Optional
from uuid import uuid4
from config import config
from errors import ValidationError

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp"}
DOCUMENT_EXTENSIONS = {".pdf", ".doc", ".docx", ".txt"}

IMAGE_MIME_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp"}
DOCUMENT_MIME_TYPES = {
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "text/plain",
}

# Allowed uploads per bucket: (extensions, MIME types)
BUCKET_RULES = {
    config.AVATAR_BUCKET: (IMAGE_EXTENSIONS, IMAGE_MIME_TYPES),
    config.ATTACHMENT_BUCKET: (
        IMAGE_EXTENSIONS | DOCUMENT_EXTENSIONS,
        IMAGE_MIME_TYPES | DOCUMENT_MIME_TYPES
    ),
}

SAFE_SEGMENT = re.compile(r"^[A-Za-z0-9_-]+$")


def validate_upload(bucket: str, filename: str, content_type: Optional[str] = None) -> str:
    """Check the bucket, extension and MIME type of an upload.

    Returns:
        The lower-cased extension to store the blob under

    Raises:
        ValidationError: Unknown bucket or disallowed file type
    """
    if bucket not in BUCKET_RULES:
        raise ValidationError(f"Unknown bucket {bucket}")
    extensions, mime_types = BUCKET_RULES[bucket]

    suffix = PurePosixPath(filename or "").suffix.lower()
    if suffix not in extensions:
        raise ValidationError(
            f"File type {suffix or '(none)'} is not allowed; use one of {', '.join(sorted(extensions))}"
        )
    if content_type and content_type.split(";")[0].strip().lower() not in mime_types:
        raise ValidationError(f"Content type {content_type} is not allowed")
    return suffix


class BlobStore:
    """Stores uploads under generated keys inside named buckets.

    Files live on local disk below ``root`` and are served publicly from
    ``base_url``. Keys are ``<owner>/<uuid><ext>``; the owner id must be a
    single safe path segment and the written path must stay under ``root``.
    """

    def __init__(self, root: str = None, base_url: str = None, max_bytes: int = None):
        self.root = Path(root or config.STORAGE_DIR)
        self.base_url = (base_url or config.PUBLIC_BASE_URL).rstrip("/")
        self.max_bytes = max_bytes or config.MAX_ATTACHMENT_BYTES

    def _generate_key(self, owner_id: str, suffix: str) -> str:
        if not owner_id or not SAFE_SEGMENT.match(owner_id):
            raise ValidationError("Owner id contains characters not allowed in storage keys")
        return f"{owner_id}/{uuid4().hex}{suffix}"

    def _resolve(self, bucket: str, key: str) -> Path:
        root = self.root.resolve()
        path = (root / bucket / key).resolve()
        if not path.is_relative_to(root):
            raise ValidationError("Storage key escapes the storage directory")
        return path

    def public_url(self, bucket: str, key: str) -> str:
        return f"{self.base_url}/{bucket}/{key}"

    async def upload(
        self,
        bucket: str,
        owner_id: str,
        filename: str,
        data: bytes,
        content_type: Optional[str] = None
    ) -> str:
        """Write a blob and return its public URL.

        Raises:
            ValidationError: Empty, oversized or disallowed upload, or an
                owner id that is not a safe path segment
        """
        if not data:
            raise ValidationError("Uploaded file is empty")
        if len(data) > self.max_bytes:
            raise ValidationError(f"Uploaded file exceeds {self.max_bytes} bytes")

        suffix = validate_upload(bucket, filename, content_type)
        key = self._generate_key(owner_id, suffix)
        path = self._resolve(bucket, key)
        await asyncio.to_thread(self._write, path, data)
        logger.info(f"Stored {len(data)} bytes in {bucket}/{key}")
        return self.public_url(bucket, key)

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
