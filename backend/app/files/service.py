"""File storage service for chat uploads.

Handles file storage on disk with an in-memory metadata index.
Files are stored in: {upload_dir}/{uuid}.{ext}

Nothing here survives a restart: the index is rebuilt empty and orphaned
files are ignored.
"""
import logging
import threading
import uuid
from pathlib import Path
from typing import Dict, Optional

from .schemas import FileMetadata

logger = logging.getLogger(__name__)


class FileTooLargeError(ValueError):
    """Upload exceeds the configured size limit."""


class FileStorageService:
    """Service for managing file uploads and storage."""

    _instance: Optional["FileStorageService"] = None
    _upload_dir: str = "uploads"
    _max_size_bytes: int = 20 * 1024 * 1024

    def __init__(self, upload_dir: Optional[str] = None, max_size_bytes: Optional[int] = None):
        """Initialize the file storage service."""
        if upload_dir:
            self._upload_dir = upload_dir
        if max_size_bytes:
            self._max_size_bytes = max_size_bytes

        self._files: Dict[str, FileMetadata] = {}
        self._lock = threading.Lock()
        self._ensure_upload_dir()

    @classmethod
    def get_instance(
        cls, upload_dir: Optional[str] = None, max_size_bytes: Optional[int] = None
    ) -> "FileStorageService":
        """Get or create the singleton instance."""
        if cls._instance is None:
            cls._instance = cls(upload_dir, max_size_bytes)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance (for testing)."""
        cls._instance = None

    @property
    def max_size_bytes(self) -> int:
        return self._max_size_bytes

    def _ensure_upload_dir(self) -> None:
        """Ensure the upload directory exists."""
        Path(self._upload_dir).mkdir(parents=True, exist_ok=True)

    def save_file(self, filename: str, content: bytes, mime_type: str) -> FileMetadata:
        """Save an uploaded file to disk and record metadata.

        Blocking; call it from a worker thread in async code.

        Args:
            filename: Original filename
            content: File content as bytes
            mime_type: MIME type of the file

        Returns:
            FileMetadata object with file information

        Raises:
            FileTooLargeError: If file exceeds size limit
            OSError: If the file cannot be written
        """
        size_bytes = len(content)
        if size_bytes > self._max_size_bytes:
            raise FileTooLargeError(
                f"File size ({size_bytes} bytes) exceeds limit ({self._max_size_bytes} bytes)"
            )

        # Generate unique filename
        file_id = str(uuid.uuid4())
        ext = Path(filename).suffix.lower() or ""
        stored_filename = f"{file_id}{ext}"

        self._ensure_upload_dir()
        file_path = Path(self._upload_dir) / stored_filename
        file_path.write_bytes(content)

        logger.info(f"Saved file: {file_path} ({size_bytes} bytes)")

        metadata = FileMetadata(
            id=file_id,
            original_filename=filename,
            stored_filename=stored_filename,
            mime_type=mime_type,
            size_bytes=size_bytes,
        )
        with self._lock:
            self._files[file_id] = metadata
        return metadata

    def get_file(self, file_id: str) -> Optional[FileMetadata]:
        """Get file metadata by ID."""
        return self._files.get(file_id)

    def get_file_path(self, file_id: str) -> Optional[Path]:
        """Get the on-disk path of a file, or None if it is gone."""
        metadata = self.get_file(file_id)
        if metadata is None:
            return None
        path = Path(self._upload_dir) / metadata.stored_filename
        return path if path.exists() else None
