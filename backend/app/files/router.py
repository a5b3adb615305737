"""FastAPI router for file upload endpoints."""
import logging

from fastapi import APIRouter, File, HTTPException, UploadFile
from fastapi.responses import FileResponse
from starlette.concurrency import run_in_threadpool

from app.config import get_config

from .schemas import FileUploadResponse
from .service import FileStorageService, FileTooLargeError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/files", tags=["files"])


def get_storage() -> FileStorageService:
    uploads = get_config().uploads
    return FileStorageService.get_instance(uploads.directory, uploads.max_size_bytes)


def get_download_url(file_id: str) -> str:
    """Generate download URL for a file."""
    prefix = get_config().uploads.url_prefix.rstrip("/")
    return f"{prefix}/{file_id}"


@router.post("/upload", response_model=FileUploadResponse)
async def upload_file(file: UploadFile = File(...)) -> FileUploadResponse:
    """Upload a file to share in a chat room.

    The returned ``{url, mimeType}`` pair is sent back over the chat socket
    as the payload of a ``sendMessage`` with ``kind: "file"``.

    Raises:
        HTTPException 413: If file exceeds the size limit
        HTTPException 500: If the file cannot be stored
    """
    content = await file.read()
    mime_type = file.content_type or "application/octet-stream"
    service = get_storage()

    try:
        # Disk writes stay off the event loop.
        metadata = await run_in_threadpool(
            service.save_file, file.filename or "unnamed", content, mime_type
        )
    except FileTooLargeError as e:
        raise HTTPException(status_code=413, detail=str(e))
    except OSError as e:
        logger.error(f"File upload failed: {e}")
        raise HTTPException(status_code=500, detail="Upload failed")

    logger.info(f"File uploaded: {metadata.original_filename} ({metadata.size_bytes} bytes)")
    return FileUploadResponse(url=get_download_url(metadata.id), mimeType=metadata.mime_type)


@router.get("/download/{file_id}")
async def download_file(file_id: str):
    """Download a file by ID.

    Raises:
        HTTPException 404: If file not found
    """
    service = get_storage()

    metadata = service.get_file(file_id)
    if not metadata:
        raise HTTPException(status_code=404, detail="File not found")

    file_path = service.get_file_path(file_id)
    if not file_path:
        raise HTTPException(status_code=404, detail="File not found on disk")

    return FileResponse(
        path=file_path,
        filename=metadata.original_filename,
        media_type=metadata.mime_type,
    )
