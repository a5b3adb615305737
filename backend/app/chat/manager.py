"""WebSocket connection manager for real-time chat rooms.

This module is the transport half of the chat service. The session
coordinator decides who receives what; the manager owns the live WebSocket
objects and delivers those decisions.

Key features:
    - One outbox queue and one sender task per connection
    - Non-blocking fan-out: dispatching an outcome only enqueues frames
    - Per-connection frame order equals dispatch order
    - Forced termination (bans) after pending frames are flushed
    - Automatic dead connection cleanup

Thread Safety:
    ``dispatch`` may be called from any thread or event loop: frames are
    handed to each connection's own loop with ``call_soon_threadsafe``.
    Callers that need cross-connection ordering (all room fan-out) dispatch
    while holding the coordinator's lock.
"""
import asyncio
import logging
import threading
import uuid
from typing import Dict, Optional

from fastapi import WebSocket

from .coordinator import Outcome

logger = logging.getLogger(__name__)

# WebSocket close code for a policy violation (used for bans)
POLICY_VIOLATION_CLOSE_CODE = 1008

_CLOSE = object()


class ClientConnection:
    """A live WebSocket plus its outbound queue.

    Attributes:
        id: Server-assigned connection id used by the coordinator.
        websocket: The accepted WebSocket.
        origin: Network origin (peer address) fixed for the connection's lifetime.
    """

    def __init__(self, websocket: WebSocket, origin: str) -> None:
        self.id = str(uuid.uuid4())
        self.websocket = websocket
        self.origin = origin
        self.loop = asyncio.get_running_loop()
        self.outbox: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def enqueue(self, item: object) -> bool:
        """Queue a frame (or the close marker) for the sender task."""
        if self.closed:
            return False
        try:
            self.loop.call_soon_threadsafe(self.outbox.put_nowait, item)
        except RuntimeError:
            # Event loop already shut down
            self.closed = True
            logger.debug(f"[Manager] Dropped frame for closed connection {self.id}")
            return False
        return True


class ConnectionManager:
    """Tracks live connections and delivers coordinator outcomes to them."""

    def __init__(self) -> None:
        # connection_id -> ClientConnection
        self.active_connections: Dict[str, ClientConnection] = {}
        self._lock = threading.Lock()

    async def connect(self, websocket: WebSocket, origin: str) -> ClientConnection:
        """Accept a WebSocket and register it under a fresh connection id."""
        await websocket.accept()
        client = ClientConnection(websocket, origin)
        with self._lock:
            self.active_connections[client.id] = client
        logger.info(f"[Manager] Accepted {client.id} from {origin} ({len(self.active_connections)} live)")
        return client

    def disconnect(self, client: ClientConnection) -> None:
        """Forget a connection. No-op if it is already gone."""
        with self._lock:
            self.active_connections.pop(client.id, None)

    def get(self, connection_id: str) -> Optional[ClientConnection]:
        return self.active_connections.get(connection_id)

    def send_to(self, connection_id: str, event: dict) -> bool:
        client = self.get(connection_id)
        return client.enqueue(event) if client else False

    def dispatch(self, outcome: Outcome) -> None:
        """Enqueue every delivery, then schedule terminations."""
        for delivery in outcome.deliveries:
            for connection_id in delivery.recipients:
                self.send_to(connection_id, delivery.event)

        for connection_id in outcome.terminate:
            with self._lock:
                client = self.active_connections.pop(connection_id, None)
            if client is not None:
                client.enqueue(_CLOSE)
                logger.info(f"[Manager] Terminating connection {connection_id}")

    async def pump(self, client: ClientConnection) -> None:
        """Sender task: drain a connection's outbox until closed or failed."""
        while True:
            item = await client.outbox.get()
            if item is _CLOSE:
                client.closed = True
                try:
                    await client.websocket.close(code=POLICY_VIOLATION_CLOSE_CODE)
                except Exception as e:
                    logger.debug(f"Failed to close connection {client.id}: {e}")
                return
            try:
                await client.websocket.send_json(item)
            except Exception as e:
                logger.debug(f"Failed to send to connection {client.id}: {e}")
                client.closed = True
                self.disconnect(client)
                return

    def get_connection_count(self) -> int:
        """Get the number of live connections."""
        return len(self.active_connections)


# Global singleton instance used by all WebSocket handlers
manager = ConnectionManager()
