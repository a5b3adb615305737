"""Chat router providing WebSocket and HTTP endpoints.

This module provides:
    - WebSocket /ws/chat: Real-time room chat
    - GET /rooms: Room search over HTTP

The WebSocket protocol is JSON frames with a ``type`` discriminator.

Protocol Message Types (client -> server):
    - adminLogin, createRoom, searchRooms, joinRoom, leaveRoom,
      sendMessage, deleteRoom
    - banUser, warnUser, unbanUser, requestBanList, listUsers (admin only)
    - requestRoomUsers

Protocol Message Types (server -> client):
    - roomList, adminSuccess/adminFailed, joinSuccess/joinFailed,
      createFailed, chatHistory, newMessage, systemMessage, roomUsers,
      banned, banList, warned, userList, error
"""
import asyncio
import json
import logging
from typing import Callable, List

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool

from app.config import get_config

from .coordinator import Outcome, SessionCoordinator
from .manager import manager
from .schemas import RoomSummary, error_event

logger = logging.getLogger(__name__)

router = APIRouter()


def resolve_origin(websocket: WebSocket, trust_forwarded_for: bool) -> str:
    """Network origin of a connection (used for bans and admin throttling)."""
    if trust_forwarded_for:
        forwarded = websocket.headers.get("x-forwarded-for", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    if websocket.client is not None:
        return websocket.client.host
    return "unknown"


def _apply(coordinator: SessionCoordinator, step: Callable[[], Outcome]) -> Outcome:
    """Run one coordinator step and enqueue its frames under the same lock.

    Blocking; the endpoint calls it from a worker thread.
    """
    with coordinator.exclusive():
        outcome = step()
        manager.dispatch(outcome)
    return outcome


@router.get("/rooms", response_model=List[RoomSummary])
async def search_rooms(
    keyword: str = Query("", description="Case-sensitive substring of the room name")
) -> List[RoomSummary]:
    """List rooms whose name contains ``keyword`` (all rooms when empty).

    Example:
        GET /rooms?keyword=lobby
    """
    coordinator = SessionCoordinator.get_instance()
    with coordinator.exclusive():
        return coordinator.rooms.search(keyword)


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for real-time room chat.

    Protocol Flow:
        1. Client connects
           → banned origin: {type: "banned"} then the socket is closed (1008)
           → otherwise:     {type: "roomList", rooms: [...]}
        2. Client sends {type: "createRoom" | "joinRoom", ..., nickname}
           → {type: "joinSuccess"}, {type: "chatHistory"}, then room-wide
             {type: "roomUsers"} and {type: "systemMessage"}
        3. Client sends {type: "sendMessage", roomId, nickname, message, kind}
           → room-wide {type: "newMessage", message: {...}}
        4. On disconnect → remaining members get roomUsers + a "left" notice,
           everyone gets a fresh roomList

    Args:
        websocket: The WebSocket connection.
    """
    config = get_config()
    origin = resolve_origin(websocket, config.server.trust_forwarded_for)
    coordinator = SessionCoordinator.get_instance()

    client = await manager.connect(websocket, origin)
    sender = asyncio.create_task(manager.pump(client))

    try:
        outcome = await run_in_threadpool(
            _apply, coordinator, lambda: coordinator.connect(client.id, origin)
        )
        if client.id in outcome.terminate:
            # Let the sender flush the ban notice and close the socket.
            await sender
            return

        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                manager.send_to(client.id, error_event("unknown", "Invalid message format: expected JSON"))
                continue

            logger.debug("[WS] %s received: type=%s", client.id, data.get("type", "?") if isinstance(data, dict) else "?")
            try:
                # Password hashing happens here, outside the coordinator lock.
                prepared = await run_in_threadpool(coordinator.prepare_frame, client.id, data)
                await run_in_threadpool(
                    _apply, coordinator, lambda: coordinator.handle_prepared(prepared)
                )
            except Exception:
                logger.exception(f"[WS] Unhandled error processing frame from {client.id}")
                action = data.get("type", "unknown") if isinstance(data, dict) else "unknown"
                manager.send_to(client.id, error_event(str(action), "Internal server error"))

    except WebSocketDisconnect:
        logger.info(f"[WS] Client {client.id} disconnected")
    finally:
        await run_in_threadpool(_apply, coordinator, lambda: coordinator.disconnect(client.id))
        manager.disconnect(client)
        if not sender.done():
            sender.cancel()
