"""
Shared fixtures for the Polymux test suite
"""
import asyncio
from typing import Any, Dict, List, Optional

import pytest
import structlog

from polymux.api.websocket_manager import ConnectionManager
from polymux.config import Settings
from polymux.models.commands import TurnOptions
from polymux.models.session import CancellationToken
from polymux.providers.base import (
    BaseProvider,
    ProviderError,
    ResolvedCredential,
    generate_session_id,
)
from polymux.providers.catalog import ProviderCatalog, ProviderDescriptor, TransportType
from polymux.providers.factory import ProviderFactory
from polymux.services.approvals import ApprovalTable
from polymux.services.credentials import CredentialResolver, EnvironmentSecrets, InMemoryCredentialStore
from polymux.services.dispatcher import Dispatcher


class RecordingConnection:
    """Stand-in for a WebSocket: records every JSON message written to it"""

    def __init__(self, fail: bool = False):
        self.messages: List[Dict[str, Any]] = []
        self.fail = fail

    async def send_json(self, message: Dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.messages.append(message)

    def types(self) -> List[str]:
        return [m["type"] for m in self.messages]

    def of_type(self, message_type: str) -> List[Dict[str, Any]]:
        return [m for m in self.messages if m["type"] == message_type]


class ScriptedProvider(BaseProvider):
    """In-process adapter whose behaviour is set per test

    Opens the session, emits ``chunks`` as text deltas, optionally blocks on
    ``gate``, then completes or fails with ``error``.
    """

    transport = TransportType.NATIVE_SDK

    def __init__(self, descriptor: ProviderDescriptor, settings: Optional[Settings] = None):
        super().__init__(descriptor, settings)
        self.chunks: List[str] = ["Hello", " world"]
        self.session_id: Optional[str] = None
        self.gate: Optional[asyncio.Event] = None
        self.error: Optional[BaseException] = None
        self.result: Optional[str] = None
        self.calls: List[Dict[str, Any]] = []

    @property
    def output_limit(self) -> int:
        return self.settings.sdk_output_limit

    async def start_or_resume_turn(
        self,
        prompt: str,
        options: TurnOptions,
        token: CancellationToken,
        credential: Optional[ResolvedCredential] = None,
    ):
        self.calls.append({"prompt": prompt, "options": options, "credential": credential})
        turn = self.new_turn(options, token)
        try:
            session_id = options.resume_session_id or self.session_id or generate_session_id(self.provider_id)
            yield turn.open(session_id)
            for chunk in self.chunks:
                for event in turn.delta(text=chunk):
                    yield event
            if self.gate is not None:
                await self.gate.wait()
            if self.error is not None:
                raise self.error
            for event in turn.complete(self.result):
                yield event
        except ProviderError as e:
            for event in turn.fail(e):
                yield event
        finally:
            turn.close()


@pytest.fixture(autouse=True)
def _reset_structlog():
    """Undo any logging setup a test performed, so later tests don't log to a closed stream"""
    yield
    structlog.reset_defaults()


async def wait_until(predicate, timeout: float = 1.0) -> None:
    """Spin the loop until ``predicate()`` holds"""
    async def spin():
        while not predicate():
            await asyncio.sleep(0)
    await asyncio.wait_for(spin(), timeout)


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        max_turns_per_user=2,
        tool_approval_timeout_seconds=1.0,
        cli_terminate_timeout_seconds=0.1,
        http_output_limit=1000,
        sdk_output_limit=1000,
        cli_output_limit=1000,
    )


@pytest.fixture
def fake_descriptor():
    return ProviderDescriptor(
        id="fake",
        transport_type=TransportType.NATIVE_SDK,
        default_model="fake-1",
        label="Fake",
    )


@pytest.fixture
def keyed_descriptor():
    return ProviderDescriptor(
        id="keyed",
        transport_type=TransportType.HTTP_OPENAI_COMPATIBLE,
        base_endpoint="https://keyed.example/v1",
        credential_kind="keyed_api_key",
        env_key="KEYED_API_KEY",
        default_model="keyed-chat",
        label="Keyed",
    )


@pytest.fixture
def catalog(fake_descriptor, keyed_descriptor):
    return ProviderCatalog([fake_descriptor, keyed_descriptor])


@pytest.fixture
def connection():
    return RecordingConnection()


@pytest.fixture
def approvals(settings):
    return ApprovalTable(settings.tool_approval_timeout_seconds)


@pytest.fixture
def factory(catalog, settings, approvals):
    """Factory whose adapters are all ScriptedProvider"""
    factory = ProviderFactory(catalog, settings, approvals=approvals)
    for transport in TransportType:
        factory.register_provider_class(transport, ScriptedProvider)
    factory.create_all()
    return factory


@pytest.fixture
def store():
    return InMemoryCredentialStore()


@pytest.fixture
def resolver(store):
    return CredentialResolver(store, EnvironmentSecrets({}))


@pytest.fixture
def connections():
    return ConnectionManager()


@pytest.fixture
def dispatcher(catalog, factory, resolver, connections, approvals, settings):
    return Dispatcher(catalog, factory, resolver, connections, approvals, settings)
