"""Ban registry: the process-lifetime deny-list of connection origins."""
import logging
from typing import Dict, List

logger = logging.getLogger(__name__)


class BanRegistry:
    """Set of banned origins (network addresses).

    Insertion order is kept so ban lists are reported oldest first.
    Not thread-safe on its own; the session coordinator serializes access.
    """

    def __init__(self) -> None:
        # origin -> True; a dict keeps insertion order with O(1) membership
        self._origins: Dict[str, bool] = {}

    def is_banned(self, origin: str) -> bool:
        return origin in self._origins

    def ban(self, origin: str) -> bool:
        """Add an origin. Returns False if it was already banned."""
        if origin in self._origins:
            return False
        self._origins[origin] = True
        logger.info(f"[Bans] Origin banned: {origin}")
        return True

    def unban(self, origin: str) -> bool:
        """Remove an origin. Returns False if it was not banned."""
        if self._origins.pop(origin, None) is None:
            return False
        logger.info(f"[Bans] Origin unbanned: {origin}")
        return True

    def list(self) -> List[str]:
        return list(self._origins)

    def __len__(self) -> int:
        return len(self._origins)
