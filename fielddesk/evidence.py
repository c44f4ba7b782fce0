"""Completion evidence storage.

Files are written under ``UPLOAD_DIR/evidence`` with a random UUID name; the
rest of the system only ever sees the opaque reference returned by ``save``.
"""
from __future__ import annotations

import logging
import re
import uuid
from pathlib import Path
from typing import BinaryIO

from .config import settings
from .domain_errors import NotFound, ValidationError

logger = logging.getLogger(__name__)

EVIDENCE_URL_PREFIX = "/api/v1/evidence/"

_SAFE_FILENAME_RE = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}\.[A-Za-z0-9]{1,16}$"
)
_CHUNK_SIZE = 1024 * 1024  # 1MB


class LocalEvidenceStore:
    def __init__(
        self,
        root: str | Path | None = None,
        *,
        max_size: int | None = None,
        allowed_extensions: list[str] | None = None,
    ):
        self.root = Path(root or settings.UPLOAD_DIR) / "evidence"
        self.max_size = max_size or settings.MAX_UPLOAD_SIZE
        self.allowed_extensions = allowed_extensions or settings.allowed_extensions_list

    def _extension_for(self, filename: str | None) -> str:
        if not filename:
            raise ValidationError("Filename is required", code="EVIDENCE_FILENAME_REQUIRED")
        if "." not in filename:
            raise ValidationError("File extension is required", code="EVIDENCE_EXTENSION_REQUIRED")
        ext = filename.rsplit(".", 1)[-1].lower()
        if ext not in self.allowed_extensions:
            raise ValidationError(
                f"File type not allowed. Allowed: {', '.join(self.allowed_extensions)}",
                code="EVIDENCE_TYPE_NOT_ALLOWED",
            )
        return ext

    def save(self, filename: str | None, stream: BinaryIO) -> str:
        """Stream ``stream`` to disk with a hard size limit; return its reference."""
        ext = self._extension_for(filename)
        self.root.mkdir(parents=True, exist_ok=True)
        stored_name = f"{uuid.uuid4()}.{ext}"
        dest_path = self.root / stored_name

        size = 0
        try:
            with dest_path.open("xb") as out:
                while True:
                    chunk = stream.read(_CHUNK_SIZE)
                    if not chunk:
                        break
                    size += len(chunk)
                    if size > self.max_size:
                        raise ValidationError(
                            f"File too large. Max size: {self.max_size} bytes",
                            code="EVIDENCE_TOO_LARGE",
                        )
                    out.write(chunk)
        except ValidationError:
            # Ensure partial file is removed.
            dest_path.unlink(missing_ok=True)
            raise

        if size == 0:
            dest_path.unlink(missing_ok=True)
            raise ValidationError("File is empty", code="EVIDENCE_EMPTY")

        logger.info("Stored evidence %s (%s bytes)", stored_name, size)
        return f"{EVIDENCE_URL_PREFIX}{stored_name}"

    def discard(self, reference: str) -> None:
        """Remove a file stored by ``save`` whose ticket update was rejected."""
        if not reference.startswith(EVIDENCE_URL_PREFIX):
            return
        try:
            self.path_for(reference[len(EVIDENCE_URL_PREFIX):]).unlink(missing_ok=True)
        except NotFound:
            return

    def path_for(self, filename: str) -> Path:
        """Resolve a stored file name; anything not produced by ``save`` is NotFound."""
        if not filename or Path(filename).name != filename or not _SAFE_FILENAME_RE.match(filename):
            raise NotFound("Evidence not found", code="EVIDENCE_NOT_FOUND")
        if filename.rsplit(".", 1)[-1].lower() not in self.allowed_extensions:
            raise NotFound("Evidence not found", code="EVIDENCE_NOT_FOUND")
        path = self.root / filename
        if not path.is_file():
            raise NotFound("Evidence not found", code="EVIDENCE_NOT_FOUND")
        return path


def get_evidence_store() -> LocalEvidenceStore:
    """FastAPI dependency; override it in tests."""
    return LocalEvidenceStore()
