"""Single-shot turn processing

Non-streaming entry point for callers that want one reply string per prompt:
chat-platform bots and upload flows. Bot conversations keep using the same
backend session until it goes idle for longer than the conversation TTL.
HTTP backends keep no session state, so their conversations carry the
exchanged messages and replay them as history on the next turn.
"""

import asyncio
from contextlib import aclosing
from typing import Any, Dict, List, Mapping, Optional, Union

import structlog

from polymux.config import Settings, get_settings
from polymux.models.commands import TurnOptions
from polymux.models.events import ErrorCategory, TurnResult
from polymux.models.session import CancellationToken
from polymux.providers.base import (
    BaseProvider,
    ConfigurationError,
    ProviderError,
    ResolvedCredential,
    TRUNCATION_MARKER,
)
from polymux.providers.catalog import ProviderCatalog, TransportType
from polymux.providers.factory import ProviderFactory
from polymux.services.credentials import CredentialResolver
from polymux.storage.conversation_registry import ConversationEntry, ConversationRegistry


logger = structlog.get_logger(__name__)

NO_RESPONSE = "No response generated."
BOT_PERMISSION_MODE = "bypassPermissions"

# backends that remember a session between turns; the rest get history replayed
STATEFUL_TRANSPORTS = (TransportType.NATIVE_SDK, TransportType.SUBPROCESS_CLI)


class _TurnOutcome:
    __slots__ = ("session_id", "texts", "result", "error", "category")

    def __init__(self):
        self.session_id: Optional[str] = None
        self.texts: List[str] = []
        self.result: Optional[TurnResult] = None
        self.error: Optional[str] = None
        self.category: Optional[str] = None


class TurnProcessor:
    """Run a turn to completion and return its text"""

    def __init__(
        self,
        catalog: ProviderCatalog,
        factory: ProviderFactory,
        resolver: CredentialResolver,
        conversations: ConversationRegistry,
        settings: Optional[Settings] = None,
    ):
        self.catalog = catalog
        self.factory = factory
        self.resolver = resolver
        self.conversations = conversations
        self.settings = settings or get_settings()

    def max_chars_for(self, platform: Optional[str]) -> int:
        if platform == "dingtalk":
            return self.settings.dingtalk_max_chars
        if platform == "wechat_work":
            return self.settings.wechat_work_max_chars
        return self.settings.bot_default_max_chars

    def truncate(self, text: str, platform: Optional[str]) -> str:
        max_chars = self.max_chars_for(platform)
        if len(text) > max_chars:
            return text[:max_chars] + TRUNCATION_MARKER
        return text

    async def process_turn(
        self,
        provider: str,
        prompt: str,
        options: Optional[Union[TurnOptions, Mapping[str, Any]]] = None,
        platform: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> str:
        """Run one turn and return the reply text; failures come back as ``Error: ...``"""
        if options is None:
            options = TurnOptions()
        elif not isinstance(options, TurnOptions):
            options = TurnOptions.model_validate(dict(options))
        user_id = options.user_id

        logger.info("Processing turn",
                    provider=provider,
                    platform=platform,
                    conversation_id=conversation_id,
                    user_id=user_id,
                    prompt_preview=prompt[:100])

        try:
            adapter = self.factory.get_provider(provider)
            if adapter is None:
                raise ConfigurationError(f"Unknown provider: {provider}", provider=provider)
            stateless = adapter.transport not in STATEFUL_TRANSPORTS

            updates: Dict[str, Any] = {}
            if platform is not None:
                entry = self.conversations.get(platform, conversation_id, user_id)
                if entry is not None and entry.provider_id == provider and not options.is_resume:
                    if not stateless:
                        updates["resume_session_id"] = entry.session_id
                    elif entry.history:
                        updates["resume_session_id"] = entry.session_id
                        updates["history"] = list(entry.history) + list(options.history or [])
                if options.permission_mode is None:
                    updates["permission_mode"] = BOT_PERMISSION_MODE
            if updates:
                options = options.model_copy(update=updates)

            credential: Optional[ResolvedCredential] = None
            if adapter.requires_credential:
                credential = await self.resolver.resolve(user_id, adapter.descriptor)
                if credential is None:
                    label = adapter.descriptor.label or provider
                    raise ConfigurationError(f"No API key configured for {label}", provider=provider)

            outcome = await self._run(adapter, prompt, options, credential)

        except ProviderError as e:
            logger.error("Turn processing failed", provider=provider, platform=platform, error=e.message)
            return f"Error: {e.message}"

        if outcome.error is not None:
            if platform is not None and outcome.category == ErrorCategory.RESUME.value:
                # the backend forgot the session; the next message starts fresh
                self.conversations.clear(platform, conversation_id, user_id)
            return f"Error: {outcome.error}"

        text = outcome.result.content if outcome.result is not None else "".join(outcome.texts)

        if platform is not None and outcome.session_id:
            history: List[Dict[str, Any]] = []
            if stateless:
                history = list(options.history or [])
                history.append({"role": "user", "content": prompt})
                history.append({"role": "assistant", "content": text})
                history = history[-self.settings.conversation_history_messages:]
            self.conversations.record(
                platform,
                outcome.session_id,
                provider,
                conversation_id=conversation_id,
                user_id=user_id,
                history=history,
            )

        if platform is not None:
            text = self.truncate(text, platform)
        return text or NO_RESPONSE

    async def _run(
        self,
        adapter: BaseProvider,
        prompt: str,
        options: TurnOptions,
        credential: Optional[ResolvedCredential],
    ) -> _TurnOutcome:
        token = CancellationToken()
        task = asyncio.create_task(self._collect(adapter, prompt, options, token, credential))
        token.bind(task)
        try:
            return await task
        except asyncio.CancelledError:
            if not token.cancelled:
                raise
            outcome = _TurnOutcome()
            outcome.error = "Session aborted"
            return outcome

    @staticmethod
    async def _collect(
        adapter: BaseProvider,
        prompt: str,
        options: TurnOptions,
        token: CancellationToken,
        credential: Optional[ResolvedCredential],
    ) -> _TurnOutcome:
        outcome = _TurnOutcome()
        stream = adapter.start_or_resume_turn(prompt, options, token, credential)
        async with aclosing(stream) as events:
            async for event in events:
                if event.type == "session-created":
                    outcome.session_id = event.session_id
                elif event.type == "content-delta" and event.text:
                    outcome.texts.append(event.text)
                elif event.type == "turn-error":
                    outcome.category = event.category
                elif event.type == "turn-complete":
                    outcome.result = event.result
                    outcome.error = event.error
        return outcome

    def clear_conversation(
        self,
        platform: str,
        conversation_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> bool:
        cleared = self.conversations.clear(platform, conversation_id, user_id)
        logger.info("Conversation cleared",
                    platform=platform,
                    conversation_id=conversation_id,
                    user_id=user_id,
                    cleared=cleared)
        return cleared

    def list_conversations(self) -> List[ConversationEntry]:
        return self.conversations.list()
