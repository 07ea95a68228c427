"""
OpenAI-compatible Provider

Streams Chat Completions over SSE for every backend that speaks the OpenAI
wire format (Kimi, Qwen, DeepSeek, GLM, Doubao). The APIs are stateless, so
resuming a session means replaying the client's ``history``.
"""

from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
import structlog

from polymux.config import Settings
from polymux.models.commands import TurnOptions
from polymux.models.events import CanonicalEvent, Usage
from polymux.models.session import CancellationToken

from .base import (
    BaseProvider,
    ConfigurationError,
    ProviderError,
    ResolvedCredential,
    ResumeError,
    TransportError,
    Turn,
    generate_session_id,
)
from .catalog import ProviderDescriptor, TransportType
from .sse import decode_frame, error_message_from_body, iter_sse_data


logger = structlog.get_logger(__name__)


def build_http_client(settings: Settings) -> httpx.AsyncClient:
    """Shared client for the HTTP streaming adapters"""
    timeout = httpx.Timeout(
        settings.http_read_timeout_seconds,
        connect=settings.http_connect_timeout_seconds,
    )
    return httpx.AsyncClient(timeout=timeout)


class HTTPStreamingProvider(BaseProvider):
    """Common plumbing for adapters that stream from an HTTP API"""

    def __init__(
        self,
        descriptor: ProviderDescriptor,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(descriptor, settings)
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = build_http_client(self.settings)
        return self._client

    @property
    def output_limit(self) -> int:
        return self.settings.http_output_limit

    @property
    def label(self) -> str:
        return self.descriptor.label or self.provider_id

    def open_turn(self, turn: Turn) -> CanonicalEvent:
        """Session id comes before any network I/O"""
        options = turn.options
        if options.is_resume:
            event = turn.open(options.resume_session_id)
            if not options.history:
                raise ResumeError(
                    f"{self.label} cannot resume session {options.resume_session_id} without history",
                    provider=self.provider_id,
                    session_id=options.resume_session_id,
                )
            return event
        return turn.open(generate_session_id(self.provider_id))

    def build_messages(self, prompt: str, options: TurnOptions) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        if options.system_prompt:
            messages.append({"role": "system", "content": options.system_prompt})
        if options.history:
            messages.extend(options.history)
        messages.append({"role": "user", "content": prompt})
        return messages

    async def raise_for_status(self, response: httpx.Response, session_id: Optional[str]) -> None:
        if response.status_code < 400:
            return
        body = await response.aread()
        message = error_message_from_body(body)
        raise TransportError(
            f"{self.label} API error ({response.status_code}): {message}",
            provider=self.provider_id,
            session_id=session_id,
        )

    def usage_event(self, turn: Turn, usage: Dict[str, Any]) -> Usage:
        return Usage(
            session_id=turn.session_id,
            input_units=usage.get("prompt_tokens") or 0,
            output_units=usage.get("completion_tokens") or 0,
            total_units=usage.get("total_tokens") or 0,
        )

    async def close(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def health_check(self) -> Dict[str, Any]:
        health = await super().health_check()
        health["endpoint"] = self.descriptor.base_endpoint
        return health


class OpenAICompatibleProvider(HTTPStreamingProvider):
    """Adapter for ``POST {base}/chat/completions`` with ``stream: true``"""

    transport = TransportType.HTTP_OPENAI_COMPATIBLE

    def build_request_body(self, prompt: str, options: TurnOptions, model: str) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": model,
            "messages": self.build_messages(prompt, options),
            "stream": True,
            "temperature": (
                options.temperature
                if options.temperature is not None
                else self.settings.default_temperature
            ),
            "max_tokens": options.max_tokens or self.settings.default_max_tokens,
        }
        if options.top_p is not None:
            body["top_p"] = options.top_p
        return body

    def translate_frame(self, turn: Turn, frame: Dict[str, Any]) -> List[CanonicalEvent]:
        events: List[CanonicalEvent] = []
        choices = frame.get("choices") or []
        choice = choices[0] if choices and isinstance(choices[0], dict) else {}
        delta = choice.get("delta") or {}

        if delta.get("reasoning_content"):
            events.extend(turn.delta(thinking=delta["reasoning_content"]))
        if delta.get("content"):
            events.extend(turn.delta(text=delta["content"]))
        if choice.get("finish_reason"):
            events.extend(turn.stop())
        if isinstance(frame.get("usage"), dict):
            events.append(self.usage_event(turn, frame["usage"]))
        return events

    async def start_or_resume_turn(
        self,
        prompt: str,
        options: TurnOptions,
        token: CancellationToken,
        credential: Optional[ResolvedCredential] = None,
    ) -> AsyncIterator[CanonicalEvent]:
        turn = self.new_turn(options, token)
        try:
            if credential is None:
                raise ConfigurationError(
                    f"No API key configured for {self.label}",
                    provider=self.provider_id,
                )

            yield self.open_turn(turn)

            url = f"{self.descriptor.base_endpoint}/chat/completions"
            body = self.build_request_body(prompt, options, turn.model)
            headers = {
                "Authorization": f"Bearer {credential.api_key}",
                "Content-Type": "application/json",
            }

            logger.info("Streaming chat completion",
                        provider=self.provider_id,
                        session_id=turn.session_id,
                        model=turn.model)

            async with self.client.stream("POST", url, json=body, headers=headers) as response:
                await self.raise_for_status(response, turn.session_id)
                async for payload in iter_sse_data(response):
                    frame = decode_frame(payload, self.provider_id, turn.session_id)
                    if frame is None:
                        continue
                    for event in self.translate_frame(turn, frame):
                        yield event

            for event in turn.complete():
                yield event

        except ProviderError as e:
            for event in turn.fail(e):
                yield event
        except httpx.HTTPError as e:
            error = TransportError(
                f"{self.label} request failed: {e}",
                provider=self.provider_id,
                session_id=turn.session_id,
            )
            for event in turn.fail(error):
                yield event
        finally:
            turn.close()
