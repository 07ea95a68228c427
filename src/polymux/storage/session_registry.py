"""Per-adapter session registry

Each adapter instance owns one registry mapping session id to the handle of
the turn currently driving it. Check-and-mutate happens under a lock with no
await in between, so two turns can never both believe they own an id.
"""

import threading
from typing import Dict, List, Optional

import structlog

from polymux.errors import SessionAlreadyActiveError
from polymux.models.session import SessionHandle


logger = structlog.get_logger(__name__)


class SessionRegistry:
    """Live session handles for one provider"""

    def __init__(self, provider_id: str):
        self.provider_id = provider_id
        self._sessions: Dict[str, SessionHandle] = {}
        self._lock = threading.Lock()

    def add(self, handle: SessionHandle) -> None:
        """Register a handle; an id that is already live is rejected"""
        with self._lock:
            if handle.session_id in self._sessions:
                raise SessionAlreadyActiveError(
                    "Session already active",
                    provider=self.provider_id,
                    session_id=handle.session_id,
                )
            self._sessions[handle.session_id] = handle

        logger.debug("Session registered",
                     provider=self.provider_id,
                     session_id=handle.session_id,
                     user_id=handle.user_id)

    def remove(self, session_id: str) -> Optional[SessionHandle]:
        """Remove and return the handle, or None if it was already gone"""
        with self._lock:
            handle = self._sessions.pop(session_id, None)

        if handle is not None:
            logger.debug("Session removed", provider=self.provider_id, session_id=session_id)
        return handle

    def lookup(self, session_id: str) -> Optional[SessionHandle]:
        with self._lock:
            return self._sessions.get(session_id)

    def touch(self, session_id: str) -> bool:
        with self._lock:
            handle = self._sessions.get(session_id)
            if handle is None:
                return False
            handle.touch()
            return True

    def list_all(self) -> List[SessionHandle]:
        with self._lock:
            return list(self._sessions.values())

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
