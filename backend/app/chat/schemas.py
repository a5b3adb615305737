"""Pydantic schemas for the room chat protocol.

Inbound frames are validated against ``InboundEvent``, a union discriminated
on ``type``. Outbound frames are plain dicts built by the ``*_event`` helpers
at the bottom of this module so every payload shape lives in one place.
"""
import time
import uuid
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class MessageKind(str, Enum):
    """Kind of chat message.

    Attributes:
        TEXT: Plain text, escaped before storage.
        FILE: Reference to an uploaded file (``FileRef`` payload).
    """
    TEXT = "text"
    FILE = "file"


class FileRef(BaseModel):
    """File reference returned by the upload endpoint."""
    model_config = ConfigDict(frozen=True)

    url: str = Field(..., min_length=1, description="Download URL")
    mimeType: str = Field(default="application/octet-stream", description="MIME type")


class ChatMessage(BaseModel):
    """A message stored in a room's history and broadcast to its members.

    Attributes:
        id: Unique message identifier (auto-generated UUID).
        roomId: Room this message belongs to.
        author: Display name of the sender.
        kind: ``text`` or ``file``.
        payload: Escaped text, or a ``FileRef`` for file messages.
        timestamp: Server-assigned Unix timestamp (seconds since epoch).
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Unique message ID")
    roomId: str = Field(..., description="Room ID this message belongs to")
    author: str = Field(..., description="Display name of the sender")
    kind: MessageKind = Field(default=MessageKind.TEXT, description="Message kind")
    payload: Union[FileRef, str] = Field(..., description="Text or file reference")
    timestamp: float = Field(default_factory=time.time, description="Seconds since epoch")


class RoomSummary(BaseModel):
    """Public view of a room; never carries the password."""
    id: str
    name: str
    hasPassword: bool
    owner: str


class UserInfo(BaseModel):
    """Admin view of a bound identity."""
    name: str
    origin: str
    roomId: Optional[str] = None
    isAdmin: bool = False


# =============================================================================
# Inbound events (connection -> server)
# =============================================================================


class AdminLogin(BaseModel):
    type: Literal["adminLogin"]
    name: str = ""
    secret: str = ""


class CreateRoom(BaseModel):
    type: Literal["createRoom"]
    roomName: str = ""
    hasPassword: bool = False
    password: Optional[str] = None
    nickname: str = ""


class SearchRooms(BaseModel):
    type: Literal["searchRooms"]
    keyword: str = ""


class JoinRoom(BaseModel):
    type: Literal["joinRoom"]
    roomId: str
    nickname: str = ""
    password: Optional[str] = None


class LeaveRoom(BaseModel):
    type: Literal["leaveRoom"]
    roomId: str
    nickname: str = ""


class SendMessage(BaseModel):
    type: Literal["sendMessage"]
    roomId: str
    nickname: str = ""
    message: Union[FileRef, str]
    kind: MessageKind = MessageKind.TEXT


class DeleteRoom(BaseModel):
    type: Literal["deleteRoom"]
    roomId: str
    nickname: str = ""


class BanUser(BaseModel):
    type: Literal["banUser"]
    targetName: str


class WarnUser(BaseModel):
    type: Literal["warnUser"]
    targetName: str
    reason: Optional[str] = None


class UnbanUser(BaseModel):
    type: Literal["unbanUser"]
    origin: str


class RequestBanList(BaseModel):
    type: Literal["requestBanList"]


class RequestRoomUsers(BaseModel):
    type: Literal["requestRoomUsers"]
    roomId: str


class ListUsers(BaseModel):
    type: Literal["listUsers"]


InboundEvent = Annotated[
    Union[
        AdminLogin,
        CreateRoom,
        SearchRooms,
        JoinRoom,
        LeaveRoom,
        SendMessage,
        DeleteRoom,
        BanUser,
        WarnUser,
        UnbanUser,
        RequestBanList,
        RequestRoomUsers,
        ListUsers,
    ],
    Field(discriminator="type"),
]

inbound_adapter: TypeAdapter = TypeAdapter(InboundEvent)


# =============================================================================
# Outbound events (server -> connection)
# =============================================================================


def room_list_event(rooms: List[RoomSummary]) -> dict:
    return {"type": "roomList", "rooms": [r.model_dump() for r in rooms]}


def admin_success_event(ban_list: List[str]) -> dict:
    return {"type": "adminSuccess", "banList": ban_list}


def admin_failed_event() -> dict:
    return {"type": "adminFailed", "reason": "Administrator login failed"}


def join_success_event(room_id: str) -> dict:
    return {"type": "joinSuccess", "roomId": room_id}


def join_failed_event(reason: str) -> dict:
    return {"type": "joinFailed", "reason": reason}


def create_failed_event(reason: str) -> dict:
    return {"type": "createFailed", "reason": reason}


def chat_history_event(room_id: str, messages: List[ChatMessage]) -> dict:
    return {
        "type": "chatHistory",
        "roomId": room_id,
        "messages": [m.model_dump(mode="json") for m in messages],
    }


def new_message_event(message: ChatMessage) -> dict:
    return {"type": "newMessage", "message": message.model_dump(mode="json")}


def system_message_event(room_id: str, text: str) -> dict:
    return {"type": "systemMessage", "roomId": room_id, "text": text}


def room_users_event(room_id: str, users: List[str]) -> dict:
    return {"type": "roomUsers", "roomId": room_id, "users": users}


def banned_event(reason: str) -> dict:
    return {"type": "banned", "reason": reason}


def ban_list_event(origins: List[str]) -> dict:
    return {"type": "banList", "origins": origins}


def warned_event(reason: str) -> dict:
    return {"type": "warned", "reason": reason}


def user_list_event(users: List[UserInfo]) -> dict:
    return {"type": "userList", "users": [u.model_dump() for u in users]}


def error_event(action: str, reason: str) -> dict:
    return {"type": "error", "action": action, "reason": reason}
