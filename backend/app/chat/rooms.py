"""Room registry and per-room history buffers.

Rooms live in memory for the lifetime of the process: they are created by a
named user, persist until their owner deletes them, and carry a bounded
FIFO history that backfills newly joined members.

Key points:
    - Room ids are millisecond timestamps made strictly increasing, so two
      rooms created within the same millisecond still get distinct ids.
    - Room names are HTML-escaped before storage; searches match the
      keyword against the unescaped name, so entity text never matches.
    - Passwords are stored as salted PBKDF2 hashes and compared in constant
      time. The plaintext is never kept.
"""
import hashlib
import hmac
import html
import logging
import os
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional

from .errors import InvalidInputError, NotFoundError, UnauthorizedError
from .schemas import ChatMessage, RoomSummary

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

DEFAULT_HISTORY_CAPACITY = 500

PASSWORD_HASH_ITERATIONS = 100_000


def sanitize_text(text: str) -> str:
    """Escape markup-significant characters (& < > " ')."""
    return html.escape(text, quote=True)


def hash_password(password: str) -> str:
    salt = os.urandom(16)
    dk = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PASSWORD_HASH_ITERATIONS)
    return salt.hex() + "$" + dk.hex()


def verify_password(password: str, hashed: str) -> bool:
    salt_hex, dk_hex = hashed.split("$")
    dk_actual = hashlib.pbkdf2_hmac(
        "sha256", password.encode("utf-8"), bytes.fromhex(salt_hex), PASSWORD_HASH_ITERATIONS
    )
    return hmac.compare_digest(dk_actual, bytes.fromhex(dk_hex))


class RoomIdGenerator:
    """Time-derived, strictly increasing room ids.

    The id is the current Unix time in milliseconds, bumped to ``last + 1``
    whenever the clock has not advanced (or went backwards).
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._last = 0
        self._lock = threading.Lock()

    def next_id(self) -> str:
        with self._lock:
            candidate = int(self._clock() * 1000)
            if candidate <= self._last:
                candidate = self._last + 1
            self._last = candidate
            return str(candidate)


class HistoryBuffer:
    """Bounded, ordered message log; the oldest entry is evicted first."""

    def __init__(self, capacity: int = DEFAULT_HISTORY_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._messages: Deque[ChatMessage] = deque(maxlen=capacity)

    def append(self, message: ChatMessage) -> ChatMessage:
        self._messages.append(message)
        return message

    def snapshot(self) -> List[ChatMessage]:
        """Copy of the current history, oldest first."""
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)


@dataclass
class Room:
    """A chat room.

    Attributes:
        id: Immutable unique id.
        name: Escaped display name.
        owner: Display name of the creator (the only one who may delete it).
        password_hash: Salted hash, or None for open rooms.
        members: Display names in first-join order, no duplicates.
        history: Bounded message history.
    """
    id: str
    name: str
    owner: str
    password_hash: Optional[str] = None
    members: List[str] = field(default_factory=list)
    history: HistoryBuffer = field(default_factory=HistoryBuffer)

    @property
    def has_password(self) -> bool:
        return self.password_hash is not None

    def check_password(self, password: Optional[str]) -> bool:
        if self.password_hash is None:
            return True
        return verify_password(password or "", self.password_hash)

    def summary(self) -> RoomSummary:
        return RoomSummary(
            id=self.id,
            name=self.name,
            hasPassword=self.has_password,
            owner=self.owner,
        )


class RoomRegistry:
    """All live rooms, keyed by id in creation order.

    Not thread-safe on its own; the session coordinator serializes access.
    """

    def __init__(
        self,
        history_capacity: int = DEFAULT_HISTORY_CAPACITY,
        max_name_length: int = 64,
        id_generator: Optional[RoomIdGenerator] = None,
    ) -> None:
        self.history_capacity = history_capacity
        self.max_name_length = max_name_length
        self._ids = id_generator or RoomIdGenerator()
        self._rooms: Dict[str, Room] = {}

    def validate_name(self, name: str) -> str:
        """Return the stripped room name, raising if it is unusable."""
        name = (name or "").strip()
        if not name:
            raise InvalidInputError("Room name is required")
        if len(name) > self.max_name_length:
            raise InvalidInputError(
                f"Room name must be at most {self.max_name_length} characters"
            )
        return name

    def create(
        self,
        name: str,
        has_password: bool,
        password: Optional[str],
        owner: str,
        password_hash: Optional[str] = None,
    ) -> Room:
        """Create a room with a fresh id and empty history.

        ``password_hash`` is used as is when given, so callers can run the
        key derivation themselves.

        Raises:
            InvalidInputError: Empty or oversize name, or password missing.
            RuntimeError: The id generator repeated an id.
        """
        name = self.validate_name(name)
        if has_password and not password:
            raise InvalidInputError("Password is required for a protected room")

        room_id = self._ids.next_id()
        if room_id in self._rooms:
            raise RuntimeError(f"Room id collision: {room_id}")

        room = Room(
            id=room_id,
            name=sanitize_text(name),
            owner=owner,
            password_hash=(password_hash or hash_password(password)) if has_password else None,
            history=HistoryBuffer(self.history_capacity),
        )
        self._rooms[room_id] = room
        logger.info(f"[Rooms] Created room {room_id} ({room.name!r}) owned by {owner!r}")
        return room

    def find(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    def get(self, room_id: str) -> Room:
        room = self._rooms.get(room_id)
        if room is None:
            raise NotFoundError("Room does not exist")
        return room

    def search(self, keyword: str) -> List[RoomSummary]:
        """Summaries of rooms whose name contains ``keyword`` (case-sensitive).

        An empty keyword matches every room.
        """
        needle = keyword or ""
        return [r.summary() for r in self._rooms.values() if needle in html.unescape(r.name)]

    def summaries(self) -> List[RoomSummary]:
        return [r.summary() for r in self._rooms.values()]

    def check_delete(self, room_id: str, requester: str) -> Room:
        """Return the room if ``requester`` may delete it, else raise."""
        room = self.get(room_id)
        if room.owner != requester:
            raise UnauthorizedError("Only the room owner can delete this room")
        return room

    def delete(self, room_id: str, requester: str) -> Room:
        """Remove a room and its history.

        Raises:
            NotFoundError: Room does not exist.
            UnauthorizedError: ``requester`` is not the owner.
        """
        room = self.check_delete(room_id, requester)
        del self._rooms[room_id]
        logger.info(f"[Rooms] Deleted room {room_id} by owner {requester!r}")
        return room

    def add_member(self, room_id: str, name: str) -> bool:
        """Add ``name`` to the member list; False if already present."""
        room = self.get(room_id)
        if name in room.members:
            return False
        room.members.append(name)
        return True

    def remove_member(self, room_id: str, name: str) -> bool:
        """Remove ``name`` from the member list; False if absent."""
        room = self.find(room_id)
        if room is None or name not in room.members:
            return False
        room.members.remove(name)
        return True

    def append(self, room_id: str, message: ChatMessage) -> ChatMessage:
        return self.get(room_id).history.append(message)

    def snapshot(self, room_id: str) -> List[ChatMessage]:
        return self.get(room_id).history.snapshot()

    def __len__(self) -> int:
        return len(self._rooms)

    def __contains__(self, room_id: str) -> bool:
        return room_id in self._rooms
