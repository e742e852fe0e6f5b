"""Lifecycle tracking for streaming chat sessions."""

import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

from chat_gateway.constants import (
    SESSION_IDLE_TIMEOUT_SECONDS,
    TERMINAL_SESSION_STATUSES,
    SessionStatus,
)
from chat_gateway.errors import SessionNotFound

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation flag shared by a session and its orchestration."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.RLock()

    def cancel(self) -> None:
        # Waits for an in-flight delivery so nothing is emitted after this returns.
        with self._lock:
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def run_unless_cancelled(self, callback: Callable[..., object], *args: object) -> bool:
        """Call ``callback`` unless cancelled; returns False when skipped."""
        with self._lock:
            if self._event.is_set():
                return False
            callback(*args)
            return True


@dataclass
class Session:
    id: str
    conversation_id: str
    started_at: float
    last_update_at: float
    token: CancellationToken = field(default_factory=CancellationToken)
    status: SessionStatus = "active"


class SessionManager:
    """Owns the set of active sessions; terminal sessions are removed immediately."""

    def __init__(
        self,
        idle_timeout_seconds: float = SESSION_IDLE_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._idle_timeout = idle_timeout_seconds
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def create(self, conversation_id: str, token: CancellationToken | None = None) -> Session:
        now = self._clock()
        session = Session(
            id=uuid.uuid4().hex,
            conversation_id=conversation_id,
            started_at=now,
            last_update_at=now,
            token=token or CancellationToken(),
        )
        with self._lock:
            self._sessions[session.id] = session
        logger.debug(
            "Stream session created",
            extra={"session_id": session.id, "conversation_id": conversation_id},
        )
        return session

    def get(self, session_id: str) -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def is_active(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def touch(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            session.last_update_at = self._clock()
            return True

    def finish(self, session_id: str, status: SessionStatus) -> bool:
        """Record a terminal status and retire the session. False if already retired."""
        if status not in TERMINAL_SESSION_STATUSES:
            raise ValueError(f"Not a terminal session status: {status}")
        with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                return False
            session.status = status
        logger.debug(
            "Stream session finished", extra={"session_id": session_id, "status": status}
        )
        return True

    def cancel(self, session_id: str) -> bool:
        """Cancel an active session. Unknown or already terminal ids are a no-op."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                return False
            session.status = "aborted"
        session.token.cancel()
        logger.info("Stream session aborted", extra={"session_id": session_id})
        return True

    def sweep(self) -> list[str]:
        """Cancel and remove every session idle for longer than the threshold."""
        now = self._clock()
        with self._lock:
            idle = [
                session
                for session in self._sessions.values()
                if now - session.last_update_at > self._idle_timeout
            ]
            for session in idle:
                del self._sessions[session.id]
                session.status = "aborted"
        for session in idle:
            session.token.cancel()
            logger.info(
                "Cleaning up idle stream session",
                extra={
                    "session_id": session.id,
                    "conversation_id": session.conversation_id,
                    "idle_seconds": round(now - session.last_update_at, 1),
                },
            )
        return [session.id for session in idle]

    def cancel_all(self) -> int:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.status = "aborted"
            session.token.cancel()
        return len(sessions)

    def active_count(self) -> int:
        with self._lock:
            return len(self._sessions)
