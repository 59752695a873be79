"""
Content Source - Where uploaded registration content is read from.

Storage itself belongs to the upload side; this service only reads bytes back
to hash them.
"""

import asyncio
import hashlib
from pathlib import Path
from typing import Protocol

from stampledger.exceptions import NotFoundError, ValidationError
from stampledger.observability import get_logger

logger = get_logger(__name__)


class ContentSource(Protocol):
    """Storage collaborator protocol."""

    async def read(self, content_path: str) -> bytes:
        """
        Return the stored bytes for a registration.

        Raises:
            NotFoundError: If nothing is stored at content_path
            ValidationError: If content_path is not a valid location
        """
        ...


class FilesystemContentSource:
    """Reads content from files below a root directory."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()

    def resolve(self, content_path: str) -> Path:
        """Map a stored relative path to a file under the root."""
        if not content_path or not content_path.strip():
            raise ValidationError("content_path is required")

        candidate = (self.root / content_path).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            raise ValidationError(f"content_path escapes the content root: {content_path}")
        return candidate

    async def read(self, content_path: str) -> bytes:
        path = self.resolve(content_path)
        if not path.is_file():
            raise NotFoundError("Content", content_path)

        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            logger.error("content_read_failed", content_path=content_path, error=str(e))
            raise NotFoundError("Content", content_path) from e


def compute_content_hash(data: bytes) -> str:
    """Lowercase hex SHA-256 of the content."""
    return hashlib.sha256(data).hexdigest()
