"""Conversation-keyed session registry

Bot platforms talk in conversations, not sessions. This registry remembers
which backend session a ``(platform, conversation)`` pair is using so the next
message resumes it, and evicts pairs that have been idle longer than the TTL.
"""

import asyncio
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import structlog


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ConversationEntry:
    session_id: str
    provider_id: str
    platform: str
    user_id: Optional[str]
    conversation_id: Optional[str]
    last_active_at: float
    # replayed to backends that keep no session state
    history: Tuple[Dict[str, Any], ...] = ()

    def to_dict(self) -> Dict:
        return {
            "session_id": self.session_id,
            "provider": self.provider_id,
            "platform": self.platform,
            "user_id": self.user_id,
            "conversation_id": self.conversation_id,
            "last_active_at": self.last_active_at,
            "history_messages": len(self.history),
        }


def conversation_key(
    platform: str,
    conversation_id: Optional[str],
    user_id: Optional[str],
) -> Tuple[str, str]:
    """Key a conversation by platform and conversation id, falling back to the user"""
    return (platform, conversation_id or user_id or "")


class ConversationRegistry:
    """TTL-bounded map of conversation to backend session

    The sweep runs from a background task started with ``start()``; lookups and
    writes never sweep inline.
    """

    def __init__(
        self,
        ttl_seconds: float = 1800,
        sweep_interval_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds or ttl_seconds
        self._clock = clock
        self._entries: Dict[Tuple[str, str], ConversationEntry] = {}
        self._lock = threading.Lock()
        self._sweep_task: Optional[asyncio.Task] = None
        self._running = False

    def get(
        self,
        platform: str,
        conversation_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Optional[ConversationEntry]:
        key = conversation_key(platform, conversation_id, user_id)
        with self._lock:
            return self._entries.get(key)

    def record(
        self,
        platform: str,
        session_id: str,
        provider_id: str,
        conversation_id: Optional[str] = None,
        user_id: Optional[str] = None,
        history: Sequence[Dict[str, Any]] = (),
    ) -> ConversationEntry:
        """Remember the session a conversation is using and mark it active"""
        key = conversation_key(platform, conversation_id, user_id)
        entry = ConversationEntry(
            session_id=session_id,
            provider_id=provider_id,
            platform=platform,
            user_id=user_id,
            conversation_id=conversation_id,
            last_active_at=self._clock(),
            history=tuple(history),
        )
        with self._lock:
            self._entries[key] = entry
        return entry

    def clear(
        self,
        platform: str,
        conversation_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> bool:
        key = conversation_key(platform, conversation_id, user_id)
        with self._lock:
            return self._entries.pop(key, None) is not None

    def list(self) -> List[ConversationEntry]:
        with self._lock:
            return list(self._entries.values())

    def sweep(self) -> int:
        """Evict entries idle for longer than the TTL; returns how many"""
        cutoff = self._clock() - self.ttl_seconds
        with self._lock:
            stale = [key for key, entry in self._entries.items() if entry.last_active_at < cutoff]
            for key in stale:
                del self._entries[key]

        if stale:
            logger.info("Expired conversation sessions swept", sessions_cleaned=len(stale))
        return len(stale)

    async def start(self) -> None:
        """Start the background sweep"""
        if self._running:
            return
        self._running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("Conversation registry started",
                    ttl_seconds=self.ttl_seconds,
                    sweep_interval=self.sweep_interval_seconds)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False

        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        logger.info("Conversation registry stopped")

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.sweep_interval_seconds)
                self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in conversation sweep loop", error=str(e))
