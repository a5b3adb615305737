"""Identity binding between display names and live connections."""
import logging
from typing import Dict, List, Optional

from .errors import AdminNameReservedError, NameTakenError

logger = logging.getLogger(__name__)


class IdentityBinding:
    """Bidirectional map ``display name <-> connection id``.

    Invariants:
        - At most one connection is bound to a given name.
        - A connection holds at most one name; claiming a new one releases
          the old one.
        - The reserved administrator name can only be claimed by a
          connection holding an admin session.

    Not thread-safe on its own; the session coordinator serializes access.
    """

    def __init__(self, admin_name: str) -> None:
        self.admin_name = admin_name
        self._by_name: Dict[str, str] = {}
        self._by_connection: Dict[str, str] = {}

    def check_claim(self, name: str, connection_id: str, *, is_admin: bool = False) -> None:
        """Raise if ``claim`` would fail, without changing anything."""
        if name == self.admin_name and not is_admin:
            raise AdminNameReservedError(
                "This nickname is reserved for the administrator"
            )
        holder = self._by_name.get(name)
        if holder is not None and holder != connection_id:
            raise NameTakenError(f"Nickname '{name}' is already in use")

    def claim(self, name: str, connection_id: str, *, is_admin: bool = False) -> None:
        """Bind ``name`` to ``connection_id``.

        Re-claiming an existing binding is a no-op.

        Raises:
            AdminNameReservedError: Admin name claimed without an admin session.
            NameTakenError: Name is bound to a different connection.
        """
        self.check_claim(name, connection_id, is_admin=is_admin)

        previous = self._by_connection.get(connection_id)
        if previous == name:
            return
        if previous is not None:
            del self._by_name[previous]
            logger.info(f"[Identity] Connection {connection_id} renamed {previous!r} -> {name!r}")

        self._by_name[name] = connection_id
        self._by_connection[connection_id] = name

    def release(self, connection_id: str) -> Optional[str]:
        """Drop the binding held by ``connection_id``; returns the released name."""
        name = self._by_connection.pop(connection_id, None)
        if name is not None:
            self._by_name.pop(name, None)
        return name

    def lookup(self, name: str) -> Optional[str]:
        return self._by_name.get(name)

    def name_of(self, connection_id: str) -> Optional[str]:
        return self._by_connection.get(connection_id)

    def names(self) -> List[str]:
        return list(self._by_name)
