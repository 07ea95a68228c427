"""Process-scoped wiring for Polymux

Everything that lives for the whole process (catalog, adapters, registries,
pending approvals, connections) is built once here and handed to the web app
and the CLI.
"""

import asyncio
from typing import Any, Dict, Optional

import httpx
import structlog

from polymux.api.websocket_manager import ConnectionManager
from polymux.config import Settings, get_settings
from polymux.providers.catalog import ProviderCatalog, load_catalog
from polymux.providers.factory import ProviderFactory
from polymux.services.approvals import ApprovalTable
from polymux.services.credentials import (
    CredentialResolver,
    CredentialStore,
    EnvironmentSecrets,
    InMemoryCredentialStore,
)
from polymux.services.dispatcher import Dispatcher
from polymux.services.turns import TurnProcessor
from polymux.storage.conversation_registry import ConversationRegistry


logger = structlog.get_logger(__name__)


class Gateway:
    """Container for the long-lived gateway components"""

    def __init__(
        self,
        settings: Settings,
        catalog: ProviderCatalog,
        factory: ProviderFactory,
        approvals: ApprovalTable,
        resolver: CredentialResolver,
        connections: ConnectionManager,
        dispatcher: Dispatcher,
        conversations: ConversationRegistry,
        turns: TurnProcessor,
    ):
        self.settings = settings
        self.catalog = catalog
        self.factory = factory
        self.approvals = approvals
        self.resolver = resolver
        self.connections = connections
        self.dispatcher = dispatcher
        self.conversations = conversations
        self.turns = turns
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        await self.conversations.start()
        self._started = True
        logger.info("Gateway started",
                    providers=len(self.catalog),
                    conversation_ttl_seconds=self.conversations.ttl_seconds)

    async def stop(self) -> None:
        """Cancel running turns, then release adapters and background tasks"""
        if not self._started:
            await self.factory.shutdown_all_providers()
            return
        self._started = False

        results = await asyncio.gather(
            self.dispatcher.shutdown(),
            self.conversations.stop(),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.error("Error during gateway shutdown", error=str(result))

        await self.factory.shutdown_all_providers()
        logger.info("Gateway stopped")

    def stats(self) -> Dict[str, Any]:
        return {
            "providers": len(self.catalog),
            "running_turns": self.dispatcher.running_turns,
            "pending_approvals": len(self.approvals),
            "conversations": len(self.conversations.list()),
            "connections": self.connections.get_stats(),
        }


def build_gateway(
    settings: Optional[Settings] = None,
    store: Optional[CredentialStore] = None,
    env: Optional[EnvironmentSecrets] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    catalog: Optional[ProviderCatalog] = None,
) -> Gateway:
    """Build a gateway from settings; collaborators may be injected"""
    settings = settings or get_settings()
    catalog = catalog or load_catalog(settings.provider_catalog_file)

    approvals = ApprovalTable(settings.tool_approval_timeout_seconds)
    factory = ProviderFactory(catalog, settings, approvals=approvals, http_client=http_client)
    factory.create_all()

    resolver = CredentialResolver(store or InMemoryCredentialStore(), env)
    connections = ConnectionManager()
    dispatcher = Dispatcher(catalog, factory, resolver, connections, approvals, settings)
    conversations = ConversationRegistry(
        ttl_seconds=settings.conversation_ttl_seconds,
        sweep_interval_seconds=settings.sweep_interval,
    )
    turns = TurnProcessor(catalog, factory, resolver, conversations, settings)

    return Gateway(
        settings=settings,
        catalog=catalog,
        factory=factory,
        approvals=approvals,
        resolver=resolver,
        connections=connections,
        dispatcher=dispatcher,
        conversations=conversations,
        turns=turns,
    )
