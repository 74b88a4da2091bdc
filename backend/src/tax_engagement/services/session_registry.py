"""In-process registry of open engagement sessions.

Sessions idle for longer than ``idle_ttl_seconds`` are pruned on the next
open or lookup; when ``max_sessions`` is reached the least recently used
session is evicted to make room.
"""

import logging
import time
import uuid
from collections.abc import Callable

from tax_engagement.infra.gateway import EngagementGateway
from tax_engagement.services.session_controller import EngagementSession

logger = logging.getLogger(__name__)

DEFAULT_IDLE_TTL_SECONDS = 1800
DEFAULT_MAX_SESSIONS = 500


class SessionRegistry:
    """Maps session ids to live ``EngagementSession`` objects."""

    def __init__(
        self,
        gateway_factory: Callable[[], EngagementGateway],
        idle_ttl_seconds: float = DEFAULT_IDLE_TTL_SECONDS,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.gateway_factory = gateway_factory
        self.idle_ttl_seconds = idle_ttl_seconds
        self.max_sessions = max_sessions
        self._clock = clock
        self._sessions: dict[str, EngagementSession] = {}
        self._last_seen: dict[str, float] = {}

    def open(self) -> tuple[str, EngagementSession]:
        now = self._prune()
        while self._sessions and len(self._sessions) >= self.max_sessions:
            oldest = min(self._last_seen, key=self._last_seen.get)
            logger.warning("Session cap %d reached; evicting %s", self.max_sessions, oldest)
            self._drop(oldest)

        session_id = str(uuid.uuid4())
        session = EngagementSession(self.gateway_factory())
        self._sessions[session_id] = session
        self._last_seen[session_id] = now
        logger.info("Opened engagement session %s (%d open)", session_id, len(self._sessions))
        return session_id, session

    def get(self, session_id: str) -> EngagementSession | None:
        now = self._prune()
        session = self._sessions.get(session_id)
        if session is not None:
            self._last_seen[session_id] = now
        return session

    def close(self, session_id: str) -> bool:
        if session_id not in self._sessions:
            return False
        self._drop(session_id)
        logger.info("Closed engagement session %s", session_id)
        return True

    def _prune(self) -> float:
        """Drop idle sessions and return the current clock reading."""
        now = self._clock()
        expired = [k for k, t in self._last_seen.items() if now - t > self.idle_ttl_seconds]
        for session_id in expired:
            logger.info("Expiring idle engagement session %s", session_id)
            self._drop(session_id)
        return now

    def _drop(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._last_seen.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._sessions)
