"""
Session store - holds validated archive.org credentials in memory.

A session is created after the remote identity check succeeds and lives
until logout or until it has been idle longer than the idle timeout.
Nothing here is ever written to disk.
"""

import asyncio
import secrets
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Optional

from .logging import get_logger

logger = get_logger("sessions")


@dataclass
class Session:
    """A validated credential pair plus the identity it resolved to."""

    id: str
    access_key: str
    secret_key: str
    display_name: str
    created_at: float
    last_activity_at: float

    @property
    def credentials(self) -> tuple[str, str]:
        return self.access_key, self.secret_key

    def to_dict(self) -> dict:
        """Public view, credentials excluded."""
        return {
            "session_id": self.id,
            "username": self.display_name,
            "created_at": self.created_at,
            "last_activity_at": self.last_activity_at,
        }

    def __repr__(self) -> str:
        return f"Session(id={self.id[:8]}..., display_name={self.display_name!r})"


class SessionStore:
    """Thread-safe map of session id -> Session with idle expiry."""

    def __init__(
        self,
        idle_timeout: float = 24 * 3600.0,
        clock: Callable[[], float] = time.time,
    ):
        self.idle_timeout = idle_timeout
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def _is_expired(self, session: Session, now: float) -> bool:
        return now - session.last_activity_at > self.idle_timeout

    def create(self, access_key: str, secret_key: str, display_name: str) -> str:
        """Store a new session and return its unguessable id."""
        now = self._clock()
        with self._lock:
            session_id = secrets.token_urlsafe(32)
            while session_id in self._sessions:
                session_id = secrets.token_urlsafe(32)
            self._sessions[session_id] = Session(
                id=session_id,
                access_key=access_key,
                secret_key=secret_key,
                display_name=display_name,
                created_at=now,
                last_activity_at=now,
            )
        logger.info(f"Session created for {display_name} ({session_id[:8]})")
        return session_id

    def get(self, session_id: Optional[str]) -> Optional[Session]:
        """Return a snapshot of the session, or None if unknown or expired.

        Expired entries are evicted on the way out.
        """
        if not session_id:
            return None
        now = self._clock()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if self._is_expired(session, now):
                del self._sessions[session_id]
                logger.info(f"Session {session_id[:8]} expired")
                return None
            return replace(session)

    def touch(self, session_id: str) -> bool:
        """Refresh last activity. Returns False if the session is gone."""
        now = self._clock()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or self._is_expired(session, now):
                self._sessions.pop(session_id, None)
                return False
            session.last_activity_at = now
            return True

    def remove(self, session_id: Optional[str]) -> bool:
        if not session_id:
            return False
        with self._lock:
            removed = self._sessions.pop(session_id, None)
        if removed:
            logger.info(f"Session {session_id[:8]} closed")
        return removed is not None

    def sweep(self) -> int:
        """Drop every expired session. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [
                sid for sid, session in self._sessions.items()
                if self._is_expired(session, now)
            ]
            for sid in expired:
                del self._sessions[sid]
        if expired:
            logger.info(f"Swept {len(expired)} expired session(s)")
        return len(expired)


async def sweep_loop(
    sweep: Callable[[], int],
    interval: float,
    shutdown_event: asyncio.Event,
    name: str = "sweep",
):
    """Run a sweep callable every `interval` seconds until shutdown.

    Exits immediately when shutdown_event is set.
    """
    while not shutdown_event.is_set():
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
            break
        except asyncio.TimeoutError:
            pass

        try:
            sweep()
        except Exception as e:
            # Don't crash the background task on a bad entry
            logger.error(f"{name} failed: {type(e).__name__}: {e}")
