"""In-process session registry.

Maps connection identity to the live ``Session`` for that client. Sessions
never share state; the registry is the only structure touched by more than
one session.
"""

import asyncio
import logging
from collections.abc import Iterator

from voice_assistant.session import Session

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Active sessions keyed by session id."""

    def __init__(self) -> None:
        """Initialize empty registry."""
        self._sessions: dict[str, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    async def add(self, session: Session) -> None:
        """Register a session.

        A session already registered under the same id is replaced and
        closed (last writer wins).

        Args:
            session: Session to register
        """
        previous = self._sessions.get(session.session_id)
        self._sessions[session.session_id] = session

        if previous is not None and previous is not session:
            logger.warning(
                "Replacing existing session with same identity",
                extra={"session_id": session.session_id},
            )
            await previous.close()

        logger.info(
            "Session registered",
            extra={"session_id": session.session_id, "active_sessions": len(self._sessions)},
        )

    def remove(self, session: Session) -> None:
        """Unregister a session if it is still the registered one."""
        if self._sessions.get(session.session_id) is session:
            del self._sessions[session.session_id]
            logger.info(
                "Session unregistered",
                extra={"session_id": session.session_id, "active_sessions": len(self._sessions)},
            )

    def get(self, session_id: str) -> Session | None:
        """Look up a session by id."""
        return self._sessions.get(session_id)

    def summaries(self) -> list[dict[str, str | float | int | None]]:
        """Metrics summaries for all active sessions."""
        return [session.get_metrics_summary() for session in self._sessions.values()]

    async def close_all(self) -> None:
        """Close and unregister every session."""
        sessions = list(self._sessions.values())
        self._sessions.clear()
        if sessions:
            logger.info("Closing all sessions", extra={"count": len(sessions)})
            await asyncio.gather(*(session.close() for session in sessions))
