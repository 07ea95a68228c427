"""
Wenxin (Baidu ERNIE) Provider

Non-standard HTTP streaming API: an API key and secret are exchanged for an
OAuth access token, each model has its own endpoint, and stream frames carry
``result`` / ``is_end`` / ``error_code`` instead of OpenAI deltas.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import httpx
import structlog

from polymux.models.commands import TurnOptions
from polymux.models.events import CanonicalEvent
from polymux.models.session import CancellationToken

from .base import (
    AuthenticationError,
    ConfigurationError,
    ProviderError,
    ResolvedCredential,
    TransportError,
    Turn,
    UpstreamError,
)
from .catalog import TransportType
from .openai_compatible import HTTPStreamingProvider
from .sse import decode_frame, error_message_from_body, iter_sse_data


logger = structlog.get_logger(__name__)

DEFAULT_TOKEN_LIFETIME_SECONDS = 2592000
INVALID_TOKEN_ERROR_CODES = frozenset({110, 111})


@dataclass(frozen=True)
class CachedToken:
    access_token: str
    expires_at: float


class TokenCache:
    """Access tokens keyed by API key

    A token is reused until it is within ``refresh_margin`` seconds of expiry.
    Callers arriving while an exchange for the same key is in flight await
    that exchange instead of starting another.
    """

    def __init__(
        self,
        token_endpoint: str,
        refresh_margin: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.token_endpoint = token_endpoint
        self.refresh_margin = refresh_margin
        self._clock = clock
        self._tokens: Dict[str, CachedToken] = {}
        self._pending: Dict[str, asyncio.Task] = {}

    def peek(self, api_key: str) -> Optional[CachedToken]:
        return self._tokens.get(api_key)

    def invalidate(self, api_key: str) -> None:
        if self._tokens.pop(api_key, None) is not None:
            logger.info("Access token evicted", token_endpoint=self.token_endpoint)

    async def get_token(self, client: httpx.AsyncClient, api_key: str, secret_key: str) -> str:
        cached = self._tokens.get(api_key)
        if cached is not None and self._clock() < cached.expires_at - self.refresh_margin:
            return cached.access_token

        task = self._pending.get(api_key)
        if task is None:
            task = asyncio.ensure_future(self._exchange(client, api_key, secret_key))
            self._pending[api_key] = task

            def _forget(done: asyncio.Task, key: str = api_key) -> None:
                if self._pending.get(key) is done:
                    del self._pending[key]
                # retrieved here too, in case every waiter was cancelled first
                if not done.cancelled():
                    done.exception()

            task.add_done_callback(_forget)

        # one caller giving up must not cancel the exchange for the others
        return await asyncio.shield(task)

    async def _exchange(self, client: httpx.AsyncClient, api_key: str, secret_key: str) -> str:
        params = {
            "grant_type": "client_credentials",
            "client_id": api_key,
            "client_secret": secret_key,
        }
        try:
            response = await client.post(self.token_endpoint, params=params)
        except httpx.HTTPError as e:
            raise AuthenticationError(f"Wenxin OAuth request failed: {e}", provider="wenxin") from e

        if response.status_code >= 400:
            raise AuthenticationError(
                f"Wenxin OAuth failed: {response.status_code} {error_message_from_body(response.content)}",
                provider="wenxin",
            )

        try:
            data = response.json()
        except ValueError as e:
            raise AuthenticationError("Wenxin OAuth returned a non-JSON body", provider="wenxin") from e

        access_token = data.get("access_token") if isinstance(data, dict) else None
        if not access_token:
            detail = data.get("error_description") or data.get("error") if isinstance(data, dict) else None
            raise AuthenticationError(
                f"Wenxin OAuth failed: {detail or 'no access_token in response'}",
                provider="wenxin",
            )

        lifetime = data.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS
        self._tokens[api_key] = CachedToken(
            access_token=access_token,
            expires_at=self._clock() + float(lifetime),
        )
        logger.info("Access token exchanged", token_endpoint=self.token_endpoint, expires_in=lifetime)
        return access_token


class WenxinProvider(HTTPStreamingProvider):
    """Adapter for the custom OAuth streaming transport"""

    transport = TransportType.HTTP_CUSTOM_OAUTH

    def __init__(self, descriptor, settings=None, client=None, token_cache: Optional[TokenCache] = None):
        super().__init__(descriptor, settings, client)
        self.token_cache = token_cache or TokenCache(
            descriptor.token_endpoint or "https://aip.baidubce.com/oauth/2.0/token",
            refresh_margin=self.settings.oauth_refresh_margin_seconds,
        )

    def endpoint_for(self, model: str) -> str:
        """Per-model endpoint; unknown models use the default model's endpoint"""
        endpoints = self.descriptor.model_endpoints
        endpoint = endpoints.get(model) or endpoints.get(self.descriptor.default_model)
        if not endpoint:
            raise ConfigurationError(f"No endpoint configured for model {model}", provider=self.provider_id)
        return endpoint

    def build_messages(self, prompt: str, options: TurnOptions) -> List[Dict[str, Any]]:
        # the system prompt travels in its own field
        messages: List[Dict[str, Any]] = list(options.history or [])
        messages.append({"role": "user", "content": prompt})
        return messages

    def build_request_body(self, prompt: str, options: TurnOptions) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "messages": self.build_messages(prompt, options),
            "stream": True,
            "temperature": (
                options.temperature
                if options.temperature is not None
                else self.settings.default_temperature
            ),
        }
        if options.top_p is not None:
            body["top_p"] = options.top_p
        if options.system_prompt:
            body["system"] = options.system_prompt
        return body

    def translate_frame(self, turn: Turn, frame: Dict[str, Any], api_key: str) -> List[CanonicalEvent]:
        if frame.get("error_code"):
            code = frame["error_code"]
            if code in INVALID_TOKEN_ERROR_CODES:
                self.token_cache.invalidate(api_key)
            raise UpstreamError(
                f"Wenxin error {code}: {frame.get('error_msg', '')}",
                provider=self.provider_id,
                session_id=turn.session_id,
            )

        events: List[CanonicalEvent] = []
        if frame.get("result"):
            events.extend(turn.delta(text=frame["result"]))
        if frame.get("is_end"):
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
            if credential is None or not credential.secret_key:
                raise ConfigurationError(
                    "Wenxin API requires both API Key and Secret Key",
                    provider=self.provider_id,
                )

            yield self.open_turn(turn)

            access_token = await self.token_cache.get_token(
                self.client, credential.api_key, credential.secret_key
            )
            endpoint = self.endpoint_for(turn.model)
            body = self.build_request_body(prompt, options)

            logger.info("Streaming Wenxin completion",
                        provider=self.provider_id,
                        session_id=turn.session_id,
                        model=turn.model)

            async with self.client.stream(
                "POST",
                endpoint,
                params={"access_token": access_token},
                json=body,
                headers={"Content-Type": "application/json"},
            ) as response:
                await self.raise_for_status(response, turn.session_id)
                async for payload in iter_sse_data(response, bare_json=True):
                    frame = decode_frame(payload, self.provider_id, turn.session_id)
                    if frame is None:
                        continue
                    for event in self.translate_frame(turn, frame, credential.api_key):
                        yield event

            for event in turn.complete():
                yield event

        except ProviderError as e:
            for event in turn.fail(e):
                yield event
        except httpx.HTTPError as e:
            error = TransportError(
                f"Wenxin request failed: {e}",
                provider=self.provider_id,
                session_id=turn.session_id,
            )
            for event in turn.fail(error):
                yield event
        finally:
            turn.close()
