"""
Session Manager
Per-user conversation state, created on a user's first message
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from souschef.logger import get_logger
from souschef.models import IngredientCuisine, User

logger = get_logger(__name__)


@dataclass
class Session:
    """Conversation state for one user"""
    user_id: str
    user: Optional[User] = None
    conversation_context: Optional[dict[str, Any]] = None
    # ingredient/cuisine record the current recipe list came from
    ingredient_cuisine: Optional[IngredientCuisine] = None
    started: bool = False
    last_seen: float = field(default_factory=time.monotonic)
    # held for the whole of a turn so one user's turns never interleave
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)


class SessionManager:
    """Maps user identities to sessions and evicts idle ones"""

    def __init__(self, idle_timeout: float = 0):
        self.idle_timeout = idle_timeout
        self._sessions: dict[str, Session] = {}

    def get_or_create(self, user_id: str) -> Session:
        session = self._sessions.get(user_id)
        if session is None:
            session = Session(user_id=user_id)
            self._sessions[user_id] = session
            logger.debug(f"Created session for {user_id}")
        session.last_seen = time.monotonic()
        return session

    def clear(self, session: Session) -> None:
        """Reset the conversation; the user record is kept"""
        session.ingredient_cuisine = None
        session.conversation_context = None
        session.started = False

    def evict_idle(self, now: Optional[float] = None) -> int:
        """Drop sessions idle for longer than idle_timeout that are not mid-turn"""
        if not self.idle_timeout:
            return 0
        now = time.monotonic() if now is None else now
        expired = [
            user_id for user_id, session in self._sessions.items()
            if now - session.last_seen > self.idle_timeout and not session.lock.locked()
        ]
        for user_id in expired:
            del self._sessions[user_id]
        if expired:
            logger.info(f"Evicted {len(expired)} idle sessions")
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._sessions
