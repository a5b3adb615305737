"""Session coordinator for room chat.

The coordinator owns every piece of shared chat state (ban registry,
identity binding, room registry and the per-room histories) and handles
each connection's lifecycle events against it. It never talks to a socket:
every handler returns an ``Outcome`` describing which connections receive
which frames and which connections must be terminated. The transport
(``ConnectionManager``) delivers that outcome.

Per-connection state machine:

    ANONYMOUS --claim name--> AUTHENTICATED --create/join--> IN_ROOM
        IN_ROOM --leave/room deleted--> AUTHENTICATED
        any state --disconnect/ban--> (gone)

Thread Safety:
    All handlers run under one re-entrant lock, so events for the same room
    or identity are fully serialized. Handlers do no I/O, so the lock is
    never held across a network write. Within one room, messages and
    system notices reach members in the order the coordinator accepted
    them, as long as the transport enqueues each outcome in order.

    Room password key derivation is slow, so it never runs under the lock.
    Frames go through two phases: ``prepare_frame`` validates the payload
    and hashes or verifies passwords without holding the lock, then
    ``handle_prepared`` commits under it. ``handle_frame`` chains both.

Error Handling:
    Handlers validate before they mutate and raise ``ChatError`` subclasses
    on rejection; ``handle_prepared`` turns those into the event-specific failure
    frame for the initiating connection.
"""
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import BaseModel, ValidationError

from app.config import AppSettings, get_config

from . import schemas
from .admin import AdminAuthenticator
from .bans import BanRegistry
from .errors import (
    ChatError,
    ConflictError,
    InvalidInputError,
    NotFoundError,
    UnauthorizedError,
    WrongPasswordError,
)
from .identity import IdentityBinding
from .rooms import Room, RoomRegistry, hash_password, sanitize_text, verify_password
from .schemas import ChatMessage, FileRef, MessageKind, UserInfo

logger = logging.getLogger(__name__)


# =============================================================================
# Outcomes
# =============================================================================


@dataclass
class Delivery:
    """One frame addressed to an explicit set of connections."""
    recipients: Tuple[str, ...]
    event: dict


@dataclass
class Outcome:
    """Everything the transport must do after one event.

    Attributes:
        deliveries: Frames to send, in order.
        terminate: Connections to close after their pending frames are sent.
    """
    deliveries: List[Delivery] = field(default_factory=list)
    terminate: List[str] = field(default_factory=list)

    def send(self, recipients: Iterable[str], event: dict) -> "Outcome":
        recipients = tuple(recipients)
        if recipients:
            self.deliveries.append(Delivery(recipients, event))
        return self

    def events_for(self, connection_id: str) -> List[dict]:
        """Frames addressed to one connection (handy in tests)."""
        return [d.event for d in self.deliveries if connection_id in d.recipients]


class SessionState(str, Enum):
    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"
    IN_ROOM = "in_room"


@dataclass
class Session:
    """Per-connection state. The bound name lives in ``IdentityBinding``."""
    connection_id: str
    origin: str
    is_admin: bool = False
    room_id: Optional[str] = None


@dataclass
class PasswordProof:
    """Result of checking a join password against a room's stored hash."""
    room_id: str
    checked_hash: Optional[str]
    ok: bool

    def admits(self, room: Room) -> bool:
        if room.password_hash is None:
            return True
        return (
            self.ok
            and self.room_id == room.id
            and self.checked_hash == room.password_hash
        )


@dataclass
class PreparedFrame:
    """A validated inbound frame plus any password work done for it.

    Exactly one of ``event`` and ``rejection`` is set.
    """
    connection_id: str
    event: Optional[BaseModel] = None
    rejection: Optional[Outcome] = None
    password_hash: Optional[str] = None
    proof: Optional[PasswordProof] = None


# Inbound events whose failures get a dedicated reply type
_FAILURE_EVENTS: Dict[str, Callable[[str], dict]] = {
    "createRoom": schemas.create_failed_event,
    "joinRoom": schemas.join_failed_event,
}

BANNED_ON_CONNECT = "This address is banned"
BANNED_BY_ADMIN = "You have been banned by an administrator"


class SessionCoordinator:
    """Owns rooms, identities and bans; turns events into outcomes."""

    _instance: Optional["SessionCoordinator"] = None

    def __init__(self, config: Optional[AppSettings] = None) -> None:
        config = config or get_config()
        self.config = config
        self._lock = threading.RLock()

        self.bans = BanRegistry()
        self.identities = IdentityBinding(config.admin.name)
        self.rooms = RoomRegistry(
            history_capacity=config.chat.history_capacity,
            max_name_length=config.chat.max_room_name_length,
        )
        self.admin_auth = AdminAuthenticator(
            admin_name=config.admin.name,
            secret=config.secrets.admin.secret,
            max_failed_attempts=config.admin.max_failed_attempts,
            window_seconds=config.admin.failure_window_seconds,
        )

        # connection_id -> Session
        self._sessions: Dict[str, Session] = {}

        self._handlers: Dict[str, Callable[[str, BaseModel, PreparedFrame], Outcome]] = {
            "adminLogin": lambda c, e, p: self.admin_login(c, e.name, e.secret),
            "createRoom": lambda c, e, p: self.create_room(
                c, e.roomName, e.hasPassword, e.password, e.nickname,
                password_hash=p.password_hash,
            ),
            "searchRooms": lambda c, e, p: self.search_rooms(c, e.keyword),
            "joinRoom": lambda c, e, p: self.join_room(
                c, e.roomId, e.nickname, e.password, proof=p.proof
            ),
            "leaveRoom": lambda c, e, p: self.leave_room(c, e.roomId, e.nickname),
            "sendMessage": lambda c, e, p: self.send_message(
                c, e.roomId, e.nickname, e.message, e.kind
            ),
            "deleteRoom": lambda c, e, p: self.delete_room(c, e.roomId, e.nickname),
            "banUser": lambda c, e, p: self.ban_user(c, e.targetName),
            "warnUser": lambda c, e, p: self.warn_user(c, e.targetName, e.reason),
            "unbanUser": lambda c, e, p: self.unban_user(c, e.origin),
            "requestBanList": lambda c, e, p: self.request_ban_list(c),
            "requestRoomUsers": lambda c, e, p: self.request_room_users(c, e.roomId),
            "listUsers": lambda c, e, p: self.list_users(c),
        }

    @classmethod
    def get_instance(cls) -> "SessionCoordinator":
        """Get or create the process-wide coordinator."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the process-wide coordinator (for testing)."""
        cls._instance = None

    def exclusive(self) -> threading.RLock:
        """The coordinator's lock, for callers that must deliver in order.

        Usage:
            prepared = coordinator.prepare_frame(cid, data)
            with coordinator.exclusive():
                manager.dispatch(coordinator.handle_prepared(prepared))
        """
        return self._lock

    # =========================================================================
    # Dispatch
    # =========================================================================

    def handle_frame(self, connection_id: str, data: object) -> Outcome:
        """Validate a raw inbound frame and handle it."""
        return self.handle_prepared(self.prepare_frame(connection_id, data))

    def prepare_frame(self, connection_id: str, data: object) -> PreparedFrame:
        """Validate a raw frame and do its password work. Must not hold the lock."""
        action = data.get("type") if isinstance(data, dict) else None
        if not isinstance(action, str) or action not in self._handlers:
            return PreparedFrame(connection_id, rejection=Outcome().send(
                (connection_id,), schemas.error_event(str(action), "Unknown event type")
            ))
        try:
            event = schemas.inbound_adapter.validate_python(data)
        except ValidationError as exc:
            first = exc.errors()[0]
            where = ".".join(str(p) for p in first.get("loc", ())[1:])
            reason = f"Invalid {action} payload: {where} {first.get('msg', '')}".strip()
            return PreparedFrame(
                connection_id,
                rejection=Outcome().send((connection_id,), schemas.error_event(action, reason)),
            )

        prepared = PreparedFrame(connection_id, event=event)
        if connection_id not in self._sessions:
            return prepared
        if action == "createRoom" and event.hasPassword and event.password:
            prepared.password_hash = hash_password(event.password)
        elif action == "joinRoom":
            prepared.proof = self.check_room_password(event.roomId, event.password)
        return prepared

    def handle_prepared(self, prepared: PreparedFrame) -> Outcome:
        """Run one prepared inbound event, converting rejections to replies."""
        if prepared.rejection is not None:
            return prepared.rejection
        connection_id = prepared.connection_id
        event = prepared.event
        action = event.type
        with self._lock:
            session = self._sessions.get(connection_id)
            if session is None:
                logger.debug(f"[Coordinator] Ignoring {action} from unknown connection {connection_id}")
                return Outcome()
            if self.bans.is_banned(session.origin):
                outcome = Outcome()
                self._eject(session, BANNED_ON_CONNECT, outcome)
                return outcome.send(self._everyone(), self._room_list())
            try:
                return self._handlers[action](connection_id, event, prepared)
            except ChatError as exc:
                logger.info(f"[Coordinator] {action} rejected for {connection_id}: {exc.reason}")
                failure = _FAILURE_EVENTS.get(action)
                reply = failure(exc.reason) if failure else schemas.error_event(action, exc.reason)
                return Outcome().send((connection_id,), reply)

    def check_room_password(self, room_id: str, password: Optional[str]) -> PasswordProof:
        """Verify ``password`` against the room's stored hash outside the lock."""
        with self._lock:
            room = self.rooms.find(room_id)
            stored = room.password_hash if room is not None else None
        if stored is None:
            return PasswordProof(room_id, None, True)
        return PasswordProof(room_id, stored, verify_password(password or "", stored))

    # =========================================================================
    # Queries
    # =========================================================================

    def state_of(self, connection_id: str) -> Optional[SessionState]:
        with self._lock:
            session = self._sessions.get(connection_id)
            if session is None:
                return None
            if session.room_id is not None:
                return SessionState.IN_ROOM
            if self.identities.name_of(connection_id) is not None:
                return SessionState.AUTHENTICATED
            return SessionState.ANONYMOUS

    def session(self, connection_id: str) -> Optional[Session]:
        return self._sessions.get(connection_id)

    def connection_count(self) -> int:
        return len(self._sessions)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def connect(self, connection_id: str, origin: str) -> Outcome:
        """Register a new connection, or refuse it if its origin is banned."""
        with self._lock:
            outcome = Outcome()
            if self.bans.is_banned(origin):
                logger.info(f"[Coordinator] Refusing banned origin {origin} ({connection_id})")
                outcome.send((connection_id,), schemas.banned_event(BANNED_ON_CONNECT))
                outcome.terminate.append(connection_id)
                return outcome

            self._sessions[connection_id] = Session(connection_id=connection_id, origin=origin)
            logger.info(f"[Coordinator] Connection {connection_id} from {origin}")
            return outcome.send((connection_id,), self._room_list())

    def disconnect(self, connection_id: str) -> Outcome:
        """Release everything tied to a connection. Safe to call repeatedly."""
        with self._lock:
            outcome = Outcome()
            session = self._sessions.get(connection_id)
            if session is None:
                return outcome
            self._drop(session, outcome)
            logger.info(f"[Coordinator] Connection {connection_id} disconnected")
            return outcome.send(self._everyone(), self._room_list())

    # =========================================================================
    # Admin
    # =========================================================================

    def admin_login(self, connection_id: str, name: str, secret: str) -> Outcome:
        with self._lock:
            session = self._session(connection_id)
            outcome = Outcome()
            if not self.admin_auth.authenticate(session.origin, name, secret):
                return outcome.send((connection_id,), schemas.admin_failed_event())
            session.is_admin = True
            return outcome.send(
                (connection_id,), schemas.admin_success_event(self.bans.list())
            )

    def ban_user(self, connection_id: str, target_name: str) -> Outcome:
        """Ban the origin of ``target_name`` and drop every session from it."""
        with self._lock:
            session = self._require_admin(connection_id)
            outcome = Outcome()
            target_id = self.identities.lookup(target_name)
            if target_id is None:
                logger.info(f"[Coordinator] banUser: no live connection for {target_name!r}")
                return outcome

            origin = self._sessions[target_id].origin
            if origin == session.origin:
                raise ConflictError("You cannot ban your own address")

            self.bans.ban(origin)
            logger.warning(
                f"[Coordinator] Admin {connection_id} banned {target_name!r} (origin {origin})"
            )
            for victim in [s for s in self._sessions.values() if s.origin == origin]:
                self._eject(victim, BANNED_BY_ADMIN, outcome)

            outcome.send(self._everyone(), self._room_list())
            return outcome.send(self._ban_list_audience(), schemas.ban_list_event(self.bans.list()))

    def unban_user(self, connection_id: str, origin: str) -> Outcome:
        with self._lock:
            self._require_admin(connection_id)
            if not self.config.admin.allow_unban:
                raise UnauthorizedError("Unbanning is disabled on this server")
            if not self.bans.unban(origin):
                raise NotFoundError(f"{origin} is not banned")
            logger.warning(f"[Coordinator] Admin {connection_id} unbanned {origin}")
            return Outcome().send(
                self._ban_list_audience(), schemas.ban_list_event(self.bans.list())
            )

    def warn_user(
        self, connection_id: str, target_name: str, reason: Optional[str] = None
    ) -> Outcome:
        with self._lock:
            self._require_admin(connection_id)
            outcome = Outcome()
            target_id = self.identities.lookup(target_name)
            if target_id is None:
                logger.info(f"[Coordinator] warnUser: no live connection for {target_name!r}")
                return outcome
            logger.warning(f"[Coordinator] Admin {connection_id} warned {target_name!r}")
            text = sanitize_text(reason) if reason else self.config.admin.warning_text
            return outcome.send((target_id,), schemas.warned_event(text))

    def request_ban_list(self, connection_id: str) -> Outcome:
        with self._lock:
            self._require_admin(connection_id)
            return Outcome().send((connection_id,), schemas.ban_list_event(self.bans.list()))

    def list_users(self, connection_id: str) -> Outcome:
        with self._lock:
            self._require_admin(connection_id)
            users = []
            for name in self.identities.names():
                s = self._sessions[self.identities.lookup(name)]
                users.append(UserInfo(name=name, origin=s.origin, roomId=s.room_id, isAdmin=s.is_admin))
            return Outcome().send((connection_id,), schemas.user_list_event(users))

    # =========================================================================
    # Rooms
    # =========================================================================

    def search_rooms(self, connection_id: str, keyword: str) -> Outcome:
        with self._lock:
            self._session(connection_id)
            return Outcome().send(
                (connection_id,), schemas.room_list_event(self.rooms.search(keyword))
            )

    def create_room(
        self,
        connection_id: str,
        room_name: str,
        has_password: bool,
        password: Optional[str],
        nickname: str,
        password_hash: Optional[str] = None,
    ) -> Outcome:
        """Create a room owned by ``nickname`` and move the creator into it.

        Pass ``password_hash`` when it was derived ahead of time; otherwise the
        hash is computed here, before the lock is taken.
        """
        if has_password and password and password_hash is None:
            password_hash = hash_password(password)
        with self._lock:
            session = self._session(connection_id)
            name = self._validate_nickname(nickname)
            self._check_identity(session, name)
            room = self.rooms.create(
                room_name, has_password, password, owner=name, password_hash=password_hash
            )

            # Nothing below can fail.
            self.identities.claim(name, connection_id, is_admin=session.is_admin)
            outcome = Outcome()
            if session.room_id is not None:
                self._exit_room(session, name, outcome)
            outcome.send(self._everyone(), self._room_list())
            self._enter_room(session, name, room, outcome)
            return outcome

    def join_room(
        self,
        connection_id: str,
        room_id: str,
        nickname: str,
        password: Optional[str] = None,
        proof: Optional[PasswordProof] = None,
    ) -> Outcome:
        if proof is None:
            proof = self.check_room_password(room_id, password)
        with self._lock:
            session = self._session(connection_id)
            room = self.rooms.get(room_id)
            if not proof.admits(room):
                raise WrongPasswordError("Wrong password")
            name = self._validate_nickname(nickname)
            self._check_identity(session, name)

            self.identities.claim(name, connection_id, is_admin=session.is_admin)
            outcome = Outcome()
            if session.room_id == room.id:
                # Already inside: resend the view without a second notice.
                outcome.send((connection_id,), schemas.join_success_event(room.id))
                outcome.send((connection_id,), schemas.chat_history_event(room.id, room.history.snapshot()))
                return outcome.send((connection_id,), schemas.room_users_event(room.id, list(room.members)))

            if session.room_id is not None:
                self._exit_room(session, name, outcome)
            self._enter_room(session, name, room, outcome)
            return outcome

    def leave_room(self, connection_id: str, room_id: str, nickname: str) -> Outcome:
        with self._lock:
            session = self._session(connection_id)
            name = self._require_bound(connection_id, nickname)
            self.rooms.get(room_id)
            if session.room_id != room_id:
                raise NotFoundError("You are not in this room")
            outcome = Outcome()
            self._exit_room(session, name, outcome)
            return outcome

    def delete_room(self, connection_id: str, room_id: str, nickname: str) -> Outcome:
        """Owner-only delete; members are notified and moved out first."""
        with self._lock:
            self._session(connection_id)
            name = self._require_bound(connection_id, nickname)
            room = self.rooms.check_delete(room_id, name)

            outcome = Outcome()
            member_ids = self._room_recipients(room)
            outcome.send(
                member_ids, schemas.system_message_event(room.id, f"Room {room.name} was deleted")
            )
            for member_id in member_ids:
                self._sessions[member_id].room_id = None
            self.rooms.delete(room_id, name)
            return outcome.send(self._everyone(), self._room_list())

    def request_room_users(self, connection_id: str, room_id: str) -> Outcome:
        with self._lock:
            session = self._session(connection_id)
            room = self.rooms.get(room_id)
            if session.room_id != room.id:
                raise UnauthorizedError("Join the room to see its members")
            return Outcome().send(
                (connection_id,), schemas.room_users_event(room.id, list(room.members))
            )

    # =========================================================================
    # Messages
    # =========================================================================

    def send_message(
        self,
        connection_id: str,
        room_id: str,
        nickname: str,
        message: Union[str, FileRef, dict],
        kind: MessageKind = MessageKind.TEXT,
    ) -> Outcome:
        """Append a message to the room history and fan it out to members."""
        with self._lock:
            session = self._session(connection_id)
            room = self.rooms.get(room_id)
            name = self._require_bound(connection_id, nickname)
            if session.room_id != room.id:
                raise UnauthorizedError("Join the room before sending messages")

            kind = MessageKind(kind)
            if kind == MessageKind.TEXT:
                if not isinstance(message, str) or not message.strip():
                    raise InvalidInputError("Message text is required")
                limit = self.config.chat.max_message_length
                if len(message) > limit:
                    raise InvalidInputError(f"Message must be at most {limit} characters")
                payload: Union[str, FileRef] = sanitize_text(message)
            else:
                if isinstance(message, dict):
                    message = FileRef(**message)
                if not isinstance(message, FileRef):
                    raise InvalidInputError("File messages need a {url, mimeType} reference")
                payload = message

            chat_message = self.rooms.append(
                room.id, ChatMessage(roomId=room.id, author=name, kind=kind, payload=payload)
            )
            return Outcome().send(
                self._room_recipients(room), schemas.new_message_event(chat_message)
            )

    # =========================================================================
    # Internals
    # =========================================================================

    def _session(self, connection_id: str) -> Session:
        session = self._sessions.get(connection_id)
        if session is None:
            raise NotFoundError("Unknown connection")
        if self.bans.is_banned(session.origin):
            raise UnauthorizedError(BANNED_ON_CONNECT)
        return session

    def _require_admin(self, connection_id: str) -> Session:
        session = self._session(connection_id)
        if not session.is_admin:
            logger.warning(f"[Coordinator] Privileged action refused for {connection_id}")
            raise UnauthorizedError("Administrator privileges required")
        return session

    def _validate_nickname(self, nickname: str) -> str:
        nickname = (nickname or "").strip()
        if not nickname:
            raise InvalidInputError("Nickname is required")
        limit = self.config.chat.max_nickname_length
        if len(nickname) > limit:
            raise InvalidInputError(f"Nickname must be at most {limit} characters")
        return sanitize_text(nickname)

    def _require_bound(self, connection_id: str, nickname: str) -> str:
        name = sanitize_text((nickname or "").strip())
        if not name or self.identities.name_of(connection_id) != name:
            raise UnauthorizedError("That nickname is not signed in on this connection")
        return name

    def _check_identity(self, session: Session, name: str) -> None:
        current = self.identities.name_of(session.connection_id)
        if current is not None and current != name and session.room_id is not None:
            raise ConflictError("Leave your current room before changing nickname")
        self.identities.check_claim(name, session.connection_id, is_admin=session.is_admin)

    def _enter_room(self, session: Session, name: str, room: Room, outcome: Outcome) -> None:
        self.rooms.add_member(room.id, name)
        session.room_id = room.id
        cid = session.connection_id
        outcome.send((cid,), schemas.join_success_event(room.id))
        outcome.send((cid,), schemas.chat_history_event(room.id, room.history.snapshot()))
        members = self._room_recipients(room)
        outcome.send(members, schemas.room_users_event(room.id, list(room.members)))
        outcome.send(members, schemas.system_message_event(room.id, f"{name} joined"))
        logger.info(f"[Coordinator] {name!r} joined room {room.id} ({len(room.members)} members)")

    def _exit_room(self, session: Session, name: str, outcome: Outcome) -> None:
        room = self.rooms.find(session.room_id)
        session.room_id = None
        if room is None:
            return
        self.rooms.remove_member(room.id, name)
        remaining = self._room_recipients(room)
        outcome.send(remaining, schemas.room_users_event(room.id, list(room.members)))
        outcome.send(remaining, schemas.system_message_event(room.id, f"{name} left"))
        logger.info(f"[Coordinator] {name!r} left room {room.id}")

    def _drop(self, session: Session, outcome: Outcome) -> None:
        """Forget a session: leave its room, release its name."""
        name = self.identities.name_of(session.connection_id)
        if name is not None and session.room_id is not None:
            self._exit_room(session, name, outcome)
        self.identities.release(session.connection_id)
        self._sessions.pop(session.connection_id, None)

    def _eject(self, session: Session, reason: str, outcome: Outcome) -> None:
        outcome.send((session.connection_id,), schemas.banned_event(reason))
        outcome.terminate.append(session.connection_id)
        self._drop(session, outcome)

    def _room_recipients(self, room: Room) -> List[str]:
        ids = []
        for member in room.members:
            cid = self.identities.lookup(member)
            if cid is not None:
                ids.append(cid)
        return ids

    def _everyone(self) -> List[str]:
        return list(self._sessions)

    def _ban_list_audience(self) -> List[str]:
        if self.config.admin.ban_list_audience == "everyone":
            return self._everyone()
        return [cid for cid, s in self._sessions.items() if s.is_admin]

    def _room_list(self) -> dict:
        return schemas.room_list_event(self.rooms.summaries())
