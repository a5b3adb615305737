"""Room Chat Backend Application.

This is the main entry point for the room chat service: real-time group
messaging in named, optionally password-protected rooms, with live presence
and an administrator who can warn and ban abusive clients.

Modules:
    - chat: WebSocket room chat (coordinator, registries, transport)
    - files: File uploads referenced by file messages

Run with:
    uvicorn app.main:app --host 0.0.0.0 --port 8000
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.chat.coordinator import SessionCoordinator
from app.chat.router import router as chat_router
from app.config import get_config
from app.files.router import get_storage, router as files_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# uvicorn logs every websocket handshake at INFO
for _noisy in ("uvicorn.access", "websockets", "multipart"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in roomchat.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    SessionCoordinator.get_instance()
    storage = get_storage()
    logger.info(
        "Room chat ready on %s:%s (history capacity %d, uploads up to %d bytes)",
        config.server.host,
        config.server.port,
        config.chat.history_capacity,
        storage.max_size_bytes,
    )

    yield  # Application runs here

    # Shutdown
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Room Chat API",
    description="Real-time room-based group chat with presence and moderation",
    version="0.1.0",
    lifespan=lifespan,
)

# Register all routers
app.include_router(chat_router)
app.include_router(files_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}
