"""Debug session bookkeeping.

A debug session records which pod and container a user is browsing, so the
route layer can reuse the resolution between requests. The store is
injected; ``InMemorySessionStore`` is the single-process implementation.
"""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from typing import Protocol

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger()

DEFAULT_SESSION_TTL = timedelta(minutes=30)


def _now() -> datetime:
    return datetime.now(UTC)


def session_key(namespace: str, pod_name: str, container: str | None) -> str:
    """Store key ``namespace:pod:container``."""
    return f"{namespace}:{pod_name}:{container or ''}"


class DebugSession(BaseModel):
    """An open debug session against one container."""

    service_name: str
    namespace: str
    pod_name: str
    container: str | None = None
    created_at: datetime = Field(default_factory=_now)
    last_activity: datetime = Field(default_factory=_now)

    @property
    def key(self) -> str:
        return session_key(self.namespace, self.pod_name, self.container)

    def touch(self, now: datetime | None = None) -> None:
        """Mark the session as used."""
        self.last_activity = now or _now()

    def is_expired(self, ttl: timedelta, now: datetime | None = None) -> bool:
        return (now or _now()) - self.last_activity > ttl


class DebugSessionStore(Protocol):
    """Storage for debug sessions."""

    def get(self, key: str) -> DebugSession | None: ...

    def put(self, session: DebugSession) -> None: ...

    def delete(self, key: str) -> bool: ...

    def sweep_expired(self, now: datetime | None = None) -> int: ...


class InMemorySessionStore:
    """Thread-safe in-process session store with idle expiry.

    Args:
        ttl: Idle time after which a session expires.
    """

    def __init__(self, ttl: timedelta = DEFAULT_SESSION_TTL) -> None:
        self._ttl = ttl
        self._sessions: dict[str, DebugSession] = {}
        self._lock = threading.Lock()

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def get(self, key: str) -> DebugSession | None:
        """Return a live session and refresh its activity time.

        Expired sessions are dropped and reported as missing.
        """
        with self._lock:
            session = self._sessions.get(key)
            if session is None:
                return None
            if session.is_expired(self._ttl):
                del self._sessions[key]
                logger.debug("debug_session_expired", key=key)
                return None
            session.touch()
            return session

    def put(self, session: DebugSession) -> None:
        with self._lock:
            self._sessions[session.key] = session
        logger.debug("debug_session_stored", key=session.key)

    def delete(self, key: str) -> bool:
        with self._lock:
            removed = self._sessions.pop(key, None) is not None
        if removed:
            logger.debug("debug_session_deleted", key=key)
        return removed

    def sweep_expired(self, now: datetime | None = None) -> int:
        """Drop every expired session.

        Returns:
            Number of sessions removed.
        """
        current = now or _now()
        with self._lock:
            expired = [
                key
                for key, session in self._sessions.items()
                if session.is_expired(self._ttl, current)
            ]
            for key in expired:
                del self._sessions[key]
        if expired:
            logger.info("debug_sessions_swept", count=len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
