import logging
from dataclasses import dataclass
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


@dataclass
class BoundSession:
    user_id: str
    session_id: str
    session: object
    connected_since: str


class SessionRegistry:
    """Which device session is currently attached for each user.

    A cache of live connections only; recording status always comes from the
    database.
    """

    def __init__(self):
        self._sessions: dict[str, BoundSession] = {}

    def bind(self, user_id: str, session_id: str, session) -> BoundSession:
        previous = self._sessions.get(user_id)
        if previous and previous.session_id != session_id:
            logger.info("Replacing session %s for user %s with %s",
                        previous.session_id, user_id, session_id)
        bound = BoundSession(
            user_id=user_id,
            session_id=session_id,
            session=session,
            connected_since=datetime.now(timezone.utc).isoformat(),
        )
        self._sessions[user_id] = bound
        logger.info("Registered session %s for user %s (%d active)",
                    session_id, user_id, len(self._sessions))
        return bound

    def unbind(self, user_id: str, session_id: str | None = None) -> bool:
        bound = self._sessions.get(user_id)
        if bound is None:
            return False
        if session_id is not None and bound.session_id != session_id:
            # A newer session already took over for this user
            return False
        del self._sessions[user_id]
        logger.info("Unregistered session %s for user %s (%d active)",
                    bound.session_id, user_id, len(self._sessions))
        return True

    def get(self, user_id: str) -> BoundSession | None:
        return self._sessions.get(user_id)

    def is_connected(self, user_id: str) -> bool:
        return user_id in self._sessions

    def sessions(self) -> list[dict]:
        return [
            {"userId": b.user_id, "sessionId": b.session_id, "connectedSince": b.connected_since}
            for b in self._sessions.values()
        ]

    def __len__(self) -> int:
        return len(self._sessions)
