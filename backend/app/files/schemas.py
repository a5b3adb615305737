"""Pydantic schemas for file upload functionality.

This module defines the data models for file sharing:
- FileMetadata: File information kept in the in-memory index
- FileUploadResponse: API response after successful upload; its
  ``{url, mimeType}`` pair is what clients send back as a file message

Files are stored in a single upload directory with UUID-based filenames to
prevent collisions.
"""
import time
import uuid

from pydantic import BaseModel, Field


class FileMetadata(BaseModel):
    """Metadata for an uploaded file.

    It includes both the original filename (for download) and the stored
    filename (UUID-based, for disk storage).
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Unique file ID")
    original_filename: str = Field(..., description="Original filename")
    stored_filename: str = Field(..., description="Filename on disk (UUID-based)")
    mime_type: str = Field(..., description="MIME type of the file")
    size_bytes: int = Field(..., description="File size in bytes")
    uploaded_at: float = Field(default_factory=time.time, description="Upload timestamp")


class FileUploadResponse(BaseModel):
    """Response after successful file upload."""
    url: str = Field(..., description="URL to download the file")
    mimeType: str = Field(..., description="MIME type")
