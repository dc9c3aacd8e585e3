#!/usr/bin/env python3
"""
Session Store Module for SEEDRELAY

Keeps the mapping from opaque session ids to the authenticated user. The
store is an interface so the server can be handed an in-memory store with a
fake clock in tests; production uses InMemorySessionStore with TTL eviction.
"""

import logging
import secrets
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class Session(BaseModel):
    """Authenticated user session"""
    session_id: str
    user_id: str
    user_name: str
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class SessionStore(ABC):
    """Capability set required by the credential gate and upload guard"""

    @abstractmethod
    def create(self, user_id: str, user_name: str) -> Session:
        """Create a session with a freshly generated id"""

    @abstractmethod
    def lookup(self, session_id: str) -> Optional[Session]:
        """Return the live session for ``session_id`` or None"""

    @abstractmethod
    def destroy(self, session_id: str) -> bool:
        """Remove a session; returns True if one was removed"""

    @abstractmethod
    def sweep_expired(self) -> int:
        """Evict expired sessions; returns how many were evicted"""


class InMemorySessionStore(SessionStore):
    """
    Process-wide session store backed by a dict.

    Lookups are plain dict reads. Creation, destruction and sweeping take a
    lock so a login that rotates a session cannot race a logout of the same
    id.
    """

    def __init__(self, ttl: float = 24 * 3600, clock: Callable[[], float] = time.time):
        """
        Args:
            ttl: Session lifetime in seconds
            clock: Returns the current time in seconds; injectable for tests
        """
        if ttl <= 0:
            raise ValueError("Session TTL must be positive")
        self.ttl = ttl
        self._clock = clock
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    def create(self, user_id: str, user_name: str) -> Session:
        now = self._clock()
        with self._lock:
            session_id = secrets.token_urlsafe(32)
            while session_id in self._sessions:
                session_id = secrets.token_urlsafe(32)
            session = Session(
                session_id=session_id,
                user_id=user_id,
                user_name=user_name,
                created_at=now,
                expires_at=now + self.ttl,
            )
            self._sessions[session_id] = session
        logger.debug(f"Created session for user {user_name}")
        return session

    def lookup(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if session.is_expired(self._clock()):
            with self._lock:
                # Only evict the exact entry we saw
                if self._sessions.get(session_id) is session:
                    del self._sessions[session_id]
            logger.debug(f"Evicted expired session for user {session.user_name}")
            return None
        return session

    def destroy(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is not None:
            logger.debug(f"Destroyed session for user {session.user_name}")
        return session is not None

    def sweep_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [sid for sid, s in self._sessions.items() if s.is_expired(now)]
            for sid in expired:
                del self._sessions[sid]
        if expired:
            logger.info(f"Swept {len(expired)} expired session(s)")
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)
