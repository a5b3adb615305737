"""Administrator credential check with a per-origin failure throttle."""
import hmac
import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

logger = logging.getLogger(__name__)


class AdminAuthenticator:
    """Verifies admin logins and throttles repeated failures per origin.

    A login succeeds only when both the name and the secret match. Callers
    get a single boolean back so the reply cannot reveal which half was
    wrong. Once an origin has ``max_failed_attempts`` failures inside
    ``window_seconds`` it is refused without the credential being checked.
    """

    def __init__(
        self,
        admin_name: str,
        secret: Optional[str],
        max_failed_attempts: int = 5,
        window_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.admin_name = admin_name
        self._secret = secret
        self.max_failed_attempts = max_failed_attempts
        self.window_seconds = window_seconds
        self._clock = clock
        self._failures: Dict[str, Deque[float]] = {}

    def _prune(self, origin: str, now: float) -> Deque[float]:
        dq = self._failures.setdefault(origin, deque())
        cutoff = now - self.window_seconds
        while dq and dq[0] < cutoff:
            dq.popleft()
        return dq

    def _sweep(self, now: float) -> None:
        """Forget origins whose every recorded failure has aged out."""
        cutoff = now - self.window_seconds
        stale = [o for o, dq in self._failures.items() if not dq or dq[-1] < cutoff]
        for origin in stale:
            del self._failures[origin]

    def tracked_origins(self) -> int:
        return len(self._failures)

    def is_locked_out(self, origin: str) -> bool:
        if self.max_failed_attempts <= 0:
            return False
        dq = self._failures.get(origin)
        if dq is None:
            return False
        self._prune(origin, self._clock())
        if not dq:
            self._failures.pop(origin, None)
        return len(dq) >= self.max_failed_attempts

    def authenticate(self, origin: str, name: str, secret: str) -> bool:
        if self.is_locked_out(origin):
            logger.warning(f"[Admin] Login refused for throttled origin {origin}")
            return False

        # An empty configured secret never matches.
        name_ok = hmac.compare_digest(name.encode("utf-8"), self.admin_name.encode("utf-8"))
        secret_ok = bool(self._secret) and hmac.compare_digest(
            (secret or "").encode("utf-8"), self._secret.encode("utf-8")
        )
        if name_ok and secret_ok:
            self._failures.pop(origin, None)
            logger.info(f"[Admin] Login succeeded from {origin}")
            return True

        now = self._clock()
        self._sweep(now)
        self._prune(origin, now).append(now)
        logger.warning(f"[Admin] Login failed from {origin}")
        return False
