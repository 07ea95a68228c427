"""
Base Provider Interface

Abstract base class every backend adapter implements, plus the per-turn
bookkeeping they share: registering the session, truncating oversized output
and claiming the single terminal event of a turn.
"""

import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

import structlog

from polymux.config import Settings, get_settings
from polymux.errors import (
    AuthenticationError,
    CapacityError,
    ConfigurationError,
    InvalidRequestError,
    ProviderError,
    ResumeError,
    SessionAlreadyActiveError,
    TransportError,
    UpstreamError,
)
from polymux.models.commands import TurnOptions
from polymux.models.events import (
    CanonicalEvent,
    ContentDelta,
    ContentStop,
    ErrorCategory,
    SessionCreated,
    TurnComplete,
    TurnError,
    TurnResult,
)
from polymux.models.session import CancellationToken, SessionHandle
from polymux.providers.catalog import ProviderDescriptor, TransportType
from polymux.storage.session_registry import SessionRegistry


logger = structlog.get_logger(__name__)

TRUNCATION_MARKER = "\n\n...(Response truncated)"


def generate_session_id(provider_id: str) -> str:
    """Gateway-side session id for backends that never issue one"""
    return f"{provider_id}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


@dataclass(frozen=True)
class ResolvedCredential:
    """Secrets handed to an adapter for one turn"""
    api_key: str = field(repr=False)
    secret_key: Optional[str] = field(default=None, repr=False)


class Turn:
    """State of one start-or-resume turn inside an adapter

    Whoever removes the session from the registry first decides how the turn
    ends: ``complete``/``fail`` emit a terminal event only if they win that
    race against ``BaseProvider.abort``.
    """

    def __init__(
        self,
        provider: "BaseProvider",
        options: TurnOptions,
        token: CancellationToken,
        output_limit: int,
    ):
        self.provider = provider
        self.options = options
        self.token = token
        self.output_limit = output_limit
        self.model = options.model or provider.descriptor.default_model
        self.cwd = options.cwd or ""
        self.session_id: Optional[str] = None
        self.truncated = False
        self.produced_output = False
        self._opened = False
        self._stopped = False
        self._parts: List[str] = []
        self._length = 0

    @property
    def provider_id(self) -> str:
        return self.provider.provider_id

    @property
    def opened(self) -> bool:
        return self._opened

    @property
    def content(self) -> str:
        return "".join(self._parts)

    def open(self, session_id: str) -> SessionCreated:
        """Register the session and announce it"""
        handle = SessionHandle(
            session_id=session_id,
            provider_id=self.provider_id,
            token=self.token,
            user_id=self.options.user_id,
            metadata={"model": self.model, "cwd": self.cwd},
        )
        self.provider.registry.add(handle)
        self.session_id = session_id
        self._opened = True

        logger.info("Session opened",
                    provider=self.provider_id,
                    session_id=session_id,
                    user_id=self.options.user_id,
                    resumed=self.options.is_resume)

        return SessionCreated(
            session_id=session_id,
            provider=self.provider_id,
            model=self.model,
            cwd=self.cwd,
        )

    def ensure_open(self) -> List[CanonicalEvent]:
        """Open under a generated id if the backend has not announced one yet"""
        if self._opened:
            return []
        return [self.open(generate_session_id(self.provider_id))]

    def delta(self, text: Optional[str] = None, thinking: Optional[str] = None) -> List[CanonicalEvent]:
        """Content events for one fragment, applying the output cap"""
        events = self.ensure_open()
        if self.truncated or not (text or thinking):
            return events

        self.produced_output = True
        self.provider.registry.touch(self.session_id)

        if thinking:
            events.append(ContentDelta(session_id=self.session_id, thinking=thinking))
            return events

        remaining = self.output_limit - self._length
        if len(text) <= remaining:
            self._parts.append(text)
            self._length += len(text)
            events.append(ContentDelta(session_id=self.session_id, text=text))
            return events

        head = text[:remaining]
        if head:
            self._parts.append(head)
            events.append(ContentDelta(session_id=self.session_id, text=head))
        self._parts.append(TRUNCATION_MARKER)
        self._length = self.output_limit
        self.truncated = True
        events.append(ContentDelta(session_id=self.session_id, text=TRUNCATION_MARKER))

        logger.warning("Output truncated",
                       provider=self.provider_id,
                       session_id=self.session_id,
                       limit=self.output_limit)
        return events

    def stop(self) -> List[CanonicalEvent]:
        """One-shot content-stop"""
        if self._stopped or not self._opened:
            return []
        self._stopped = True
        return [ContentStop(session_id=self.session_id)]

    def complete(self, content: Optional[str] = None) -> List[CanonicalEvent]:
        """Successful terminal events, or nothing if the turn was aborted"""
        events = self.ensure_open()
        if self.provider.registry.remove(self.session_id) is None:
            return []

        events.extend(self.stop())
        events.append(TurnComplete(
            session_id=self.session_id,
            provider=self.provider_id,
            result=TurnResult(
                content=self.content if content is None else content,
                model=self.model,
                provider=self.provider_id,
                truncated=self.truncated,
            ),
        ))
        logger.info("Turn completed",
                    provider=self.provider_id,
                    session_id=self.session_id,
                    truncated=self.truncated)
        return events

    def fail(self, error: ProviderError) -> List[CanonicalEvent]:
        """Failure terminal events, or nothing if the turn was aborted"""
        if self._opened:
            if self.provider.registry.remove(self.session_id) is None:
                return []
            session_id = self.session_id
        else:
            # nothing registered; never claim an id another turn may own
            session_id = generate_session_id(self.provider_id)

        logger.error("Turn failed",
                     provider=self.provider_id,
                     session_id=session_id,
                     category=ErrorCategory(error.category).value,
                     error=error.message)

        return [
            TurnError(session_id=session_id, error=error.message, category=error.category),
            TurnComplete(session_id=session_id, provider=self.provider_id, error=error.message),
        ]

    def close(self) -> None:
        """Drop the registry entry if the turn is leaving without a terminal event"""
        if self._opened:
            self.provider.registry.remove(self.session_id)


class BaseProvider(ABC):
    """Abstract base class for AI providers

    One instance per catalog entry. Each instance owns its own session
    registry, so ids never collide across providers.
    """

    transport: TransportType

    def __init__(self, descriptor: ProviderDescriptor, settings: Optional[Settings] = None):
        self.descriptor = descriptor
        self.provider_id = descriptor.id
        self.settings = settings or get_settings()
        self.registry = SessionRegistry(descriptor.id)

    @property
    def requires_credential(self) -> bool:
        return self.descriptor.credential_kind is not None

    @property
    @abstractmethod
    def output_limit(self) -> int:
        """Maximum characters of text accumulated per turn"""

    @abstractmethod
    def start_or_resume_turn(
        self,
        prompt: str,
        options: TurnOptions,
        token: CancellationToken,
        credential: Optional[ResolvedCredential] = None,
    ) -> AsyncIterator[CanonicalEvent]:
        """Run one turn, yielding canonical events in production order"""

    def new_turn(self, options: TurnOptions, token: CancellationToken) -> Turn:
        return Turn(self, options, token, self.output_limit)

    def abort(self, session_id: str) -> bool:
        """Cancel a live session; True only when a cancellation was signaled"""
        handle = self.registry.remove(session_id)
        if handle is None:
            logger.debug("Abort for unknown session", provider=self.provider_id, session_id=session_id)
            return False

        signaled = handle.token.cancel()
        logger.info("Session aborted",
                    provider=self.provider_id,
                    session_id=session_id,
                    signaled=signaled)
        return signaled

    def is_active(self, session_id: str) -> bool:
        return session_id in self.registry

    def list_active_sessions(self) -> List[str]:
        return [handle.session_id for handle in self.registry.list_all()]

    async def health_check(self) -> Dict[str, Any]:
        """Check provider health"""
        return {
            "provider": self.provider_id,
            "transport": self.transport.value,
            "status": "healthy",
            "active_sessions": len(self.registry),
        }

    async def shutdown(self) -> None:
        """Cancel every live session"""
        for session_id in self.list_active_sessions():
            self.abort(session_id)


__all__ = [
    "AuthenticationError",
    "BaseProvider",
    "CapacityError",
    "ConfigurationError",
    "InvalidRequestError",
    "ProviderError",
    "ResolvedCredential",
    "ResumeError",
    "SessionAlreadyActiveError",
    "TRUNCATION_MARKER",
    "TransportError",
    "Turn",
    "UpstreamError",
    "generate_session_id",
]
