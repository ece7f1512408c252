"""
Session registry.

The authoritative in-memory table of live sessions, plus a secondary index
from user id to that user's session ids. The two maps are only ever mutated
together, inside this class.

Single-active-session-per-user is enforced by callers holding `user_lock()`
around the whole check -> evict -> create sequence. Without the lock two
concurrent starts for the same user can both see an empty index and both
create a session.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from claudebox.lib.logger import short_id
from claudebox.models.session import Session

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Owned table of sessions keyed by session id."""

    def __init__(self):
        self._sessions: dict[str, Session] = {}
        self._by_user: dict[str, set[str]] = {}
        self._user_locks: dict[str, asyncio.Lock] = {}
        self._lock_waiters: dict[str, int] = {}

    @asynccontextmanager
    async def user_lock(self, user_id: str) -> AsyncIterator[None]:
        """Mutual exclusion scope for one user's session changes."""
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = self._user_locks[user_id] = asyncio.Lock()
        self._lock_waiters[user_id] = self._lock_waiters.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_waiters[user_id] -= 1
            if self._lock_waiters[user_id] == 0:
                del self._lock_waiters[user_id]
                if user_id not in self._by_user:
                    self._user_locks.pop(user_id, None)

    def create(self, user_id: str, session: Session) -> str:
        """Register a fully provisioned session and index it under its user."""
        if session.user_id != user_id:
            raise ValueError("Session owner does not match user id")
        if not session.is_bound:
            raise ValueError("Only sessions with a sandbox and terminal can be registered")
        if session.session_id in self._sessions:
            raise ValueError(f"Session {short_id(session.session_id)} already registered")

        self._sessions[session.session_id] = session
        self._by_user.setdefault(user_id, set()).add(session.session_id)
        logger.debug(f"Registered session {short_id(session.session_id)} for {user_id}")
        return session.session_id

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def remove_and_unindex(self, session_id: str) -> Optional[Session]:
        """Remove a session from both maps. Returns it, or None if already gone."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return None

        user_sessions = self._by_user.get(session.user_id)
        if user_sessions is not None:
            user_sessions.discard(session_id)
            if not user_sessions:
                del self._by_user[session.user_id]
                if session.user_id not in self._lock_waiters:
                    self._user_locks.pop(session.user_id, None)

        logger.debug(f"Removed session {short_id(session_id)} for {session.user_id}")
        return session

    def list_active_for(self, user_id: str) -> set[str]:
        """Snapshot of a user's session ids."""
        return set(self._by_user.get(user_id, ()))

    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def sessions_for(self, user_id: str) -> list[Session]:
        return [
            self._sessions[sid]
            for sid in self._by_user.get(user_id, ())
            if sid in self._sessions
        ]

    @property
    def total_sessions(self) -> int:
        return len(self._sessions)

    @property
    def active_users(self) -> int:
        return len(self._by_user)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
