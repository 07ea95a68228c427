"""Command dispatcher

Decodes client commands, routes them to the right adapter, and runs each
turn in its own task that forwards events to every connection of the owning
user. Whatever goes wrong inside a turn, the client sees exactly one terminal
event for it.
"""

import asyncio
from collections import defaultdict
from contextlib import aclosing
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import structlog
from pydantic import ValidationError

from polymux import metrics
from polymux.api.websocket_manager import ConnectionManager
from polymux.config import Settings, get_settings
from polymux.models.commands import (
    AbortSessionCommand,
    CheckSessionStatusCommand,
    GetActiveSessionsCommand,
    StartTurnCommand,
    ToolApprovalResponseCommand,
    TurnOptions,
    parse_command,
)
from polymux.models.events import (
    ActiveSessions,
    CanonicalEvent,
    ErrorCategory,
    SessionAborted,
    SessionStatus,
    TurnComplete,
    TurnError,
    is_terminal,
)
from polymux.models.session import CancellationToken
from polymux.providers.base import (
    BaseProvider,
    CapacityError,
    ConfigurationError,
    ProviderError,
    ResolvedCredential,
    generate_session_id,
)
from polymux.providers.catalog import ProviderCatalog
from polymux.providers.factory import ProviderFactory
from polymux.services.approvals import ApprovalDecision, ApprovalTable
from polymux.services.credentials import CredentialResolver


logger = structlog.get_logger(__name__)

Handler = Callable[[Any, str, Optional[Any]], Awaitable[Any]]


class Dispatcher:
    """Routes inbound commands to provider adapters"""

    def __init__(
        self,
        catalog: ProviderCatalog,
        factory: ProviderFactory,
        resolver: CredentialResolver,
        connections: ConnectionManager,
        approvals: ApprovalTable,
        settings: Optional[Settings] = None,
    ):
        self.catalog = catalog
        self.factory = factory
        self.resolver = resolver
        self.connections = connections
        self.approvals = approvals
        self.settings = settings or get_settings()
        self._tasks: Set[asyncio.Task] = set()
        self._user_turns: Dict[str, int] = defaultdict(int)

        self._handlers: Dict[str, Handler] = {
            "start-turn": self._handle_start_turn,
            "abort-session": self._handle_abort_session,
            "check-session-status": self._handle_check_session_status,
            "get-active-sessions": self._handle_get_active_sessions,
            "tool-approval-response": self._handle_tool_approval_response,
        }

    @property
    def running_turns(self) -> int:
        return len(self._tasks)

    def turns_for_user(self, user_id: str) -> int:
        return self._user_turns.get(user_id, 0)

    async def handle_message(self, raw: Any, user_id: str, connection: Optional[Any] = None) -> Any:
        """Decode one client message and run its handler"""
        if not isinstance(raw, dict):
            await self._reply(user_id, connection, self._invalid_request("Message must be a JSON object"))
            return None

        try:
            command = parse_command(raw)
        except ValidationError as e:
            logger.warning("Invalid command", user_id=user_id, message_type=raw.get("type"), error=str(e))
            await self._reply(
                user_id,
                connection,
                self._invalid_request(f"Invalid command {raw.get('type')!r}: {e.errors()[0]['msg']}"),
            )
            return None

        handler = self._handlers[command.type]
        return await handler(command, user_id, connection)

    @staticmethod
    def _invalid_request(message: str) -> TurnError:
        return TurnError(
            session_id=generate_session_id("gateway"),
            error=message,
            category=ErrorCategory.INVALID_REQUEST,
        )

    async def _reply(self, user_id: str, connection: Optional[Any], event: CanonicalEvent) -> None:
        """Answer only the connection that asked, or the user when there is none"""
        if connection is not None:
            await self.connections.send_to_connection(user_id, connection, event)
        else:
            await self.connections.send_to_user(user_id, event)

    async def _reject(self, user_id: str, provider_id: str, error: ProviderError) -> None:
        session_id = generate_session_id(provider_id or "gateway")
        logger.warning("Turn rejected",
                       provider=provider_id,
                       user_id=user_id,
                       category=error.category.value,
                       error=error.message)
        metrics.TURN_OUTCOMES.labels(provider=provider_id, outcome="rejected").inc()
        await self.connections.send_to_user(
            user_id,
            TurnError(session_id=session_id, error=error.message, category=error.category),
        )
        await self.connections.send_to_user(
            user_id,
            TurnComplete(session_id=session_id, provider=provider_id, error=error.message),
        )

    async def _handle_start_turn(
        self,
        command: StartTurnCommand,
        user_id: str,
        connection: Optional[Any],
    ) -> Optional[asyncio.Task]:
        provider_id = command.provider
        descriptor = self.catalog.get_descriptor(provider_id)
        provider = self.factory.get_provider(provider_id) if descriptor else None
        if provider is None:
            await self._reject(user_id, provider_id, ConfigurationError(
                f"Unknown provider: {provider_id}", provider=provider_id,
            ))
            return None

        if self._user_turns[user_id] >= self.settings.max_turns_per_user:
            await self._reject(user_id, provider_id, CapacityError(
                f"Too many concurrent turns (limit {self.settings.max_turns_per_user})",
                provider=provider_id,
            ))
            return None
        # reserve the slot before the credential lookup suspends
        self._user_turns[user_id] += 1

        credential: Optional[ResolvedCredential] = None
        if provider.requires_credential:
            credential = await self.resolver.resolve(user_id, descriptor)
            if credential is None:
                self._release(user_id)
                label = descriptor.label or provider_id
                await self._reject(user_id, provider_id, ConfigurationError(
                    f"No API key configured for {label}. Please add your API key in Settings → AI Providers.",
                    provider=provider_id,
                ))
                return None

        options: TurnOptions = command.options.model_copy(update={"user_id": user_id})
        token = CancellationToken()
        task = asyncio.create_task(
            self._run_turn(provider, command.prompt, options, token, credential, user_id)
        )
        token.bind(task)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        metrics.TURNS_STARTED.labels(provider=provider_id).inc()
        logger.info("Turn started",
                    provider=provider_id,
                    user_id=user_id,
                    resume=options.resume_session_id)
        return task

    def _release(self, user_id: str) -> None:
        self._user_turns[user_id] -= 1
        if self._user_turns[user_id] <= 0:
            del self._user_turns[user_id]

    async def _run_turn(
        self,
        provider: BaseProvider,
        prompt: str,
        options: TurnOptions,
        token: CancellationToken,
        credential: Optional[ResolvedCredential],
        user_id: str,
    ) -> str:
        """Drive one adapter stream to its end; returns the outcome label"""
        provider_id = provider.provider_id
        session_id: Optional[str] = None
        terminal_sent = False
        outcome = "error"
        metrics.ACTIVE_TURNS.labels(provider=provider_id).inc()

        try:
            stream = provider.start_or_resume_turn(prompt, options, token, credential)
            async with aclosing(stream) as events:
                async for event in events:
                    if token.cancelled:
                        break
                    if event.type == "session-created":
                        session_id = event.session_id
                    if is_terminal(event):
                        terminal_sent = True
                        outcome = "success" if getattr(event, "result", None) is not None else "error"
                    await self.connections.send_to_user(user_id, event)

            if token.cancelled:
                outcome = "aborted"

        except asyncio.CancelledError:
            if not token.cancelled:
                raise
            outcome = "aborted"

        except Exception as e:
            logger.exception("Unhandled error in turn",
                             provider=provider_id,
                             session_id=session_id,
                             user_id=user_id,
                             error=str(e))
            if session_id:
                provider.registry.remove(session_id)
            if not terminal_sent and not token.cancelled:
                sid = session_id or generate_session_id(provider_id)
                message = f"Internal error: {e}"
                await self.connections.send_to_user(
                    user_id,
                    TurnError(session_id=sid, error=message, category=ErrorCategory.INTERNAL),
                )
                await self.connections.send_to_user(
                    user_id,
                    TurnComplete(session_id=sid, provider=provider_id, error=message),
                )

        finally:
            self._release(user_id)
            metrics.ACTIVE_TURNS.labels(provider=provider_id).dec()
            metrics.TURN_OUTCOMES.labels(provider=provider_id, outcome=outcome).inc()
            logger.info("Turn finished",
                        provider=provider_id,
                        session_id=session_id,
                        user_id=user_id,
                        outcome=outcome)

        return outcome

    async def _handle_abort_session(
        self,
        command: AbortSessionCommand,
        user_id: str,
        connection: Optional[Any],
    ) -> bool:
        provider = self.factory.get_provider(command.provider)
        success = False
        if provider is not None:
            handle = provider.registry.lookup(command.session_id)
            # another user's session is reported as unknown
            if handle is not None and handle.user_id in (None, user_id):
                success = provider.abort(command.session_id)

        event = SessionAborted(
            session_id=command.session_id,
            provider=command.provider,
            success=success,
        )
        if success:
            await self.connections.send_to_user(user_id, event)
        else:
            await self._reply(user_id, connection, event)
        return success

    async def _handle_check_session_status(
        self,
        command: CheckSessionStatusCommand,
        user_id: str,
        connection: Optional[Any],
    ) -> bool:
        provider = self.factory.get_provider(command.provider)
        is_processing = provider.is_active(command.session_id) if provider else False
        await self._reply(user_id, connection, SessionStatus(
            session_id=command.session_id,
            provider=command.provider,
            is_processing=is_processing,
        ))
        return is_processing

    async def _handle_get_active_sessions(
        self,
        command: GetActiveSessionsCommand,
        user_id: str,
        connection: Optional[Any],
    ) -> ActiveSessions:
        snapshot = ActiveSessions(sessions={
            descriptor.id: self.factory.get_provider(descriptor.id).list_active_sessions()
            for descriptor in self.catalog
        })
        await self._reply(user_id, connection, snapshot)
        return snapshot

    async def _handle_tool_approval_response(
        self,
        command: ToolApprovalResponseCommand,
        user_id: str,
        connection: Optional[Any],
    ) -> bool:
        return self.approvals.resolve(command.request_id, ApprovalDecision(
            allow=command.allow,
            updated_input=command.updated_input,
            message=command.message,
        ))

    async def shutdown(self) -> None:
        """Cancel every running turn and wait for them to unwind"""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Dispatcher shut down", cancelled_turns=len(tasks))
