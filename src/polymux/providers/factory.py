"""
Provider Factory

Builds one adapter instance per catalog provider. Selection is a lookup from
the descriptor's transport type to the adapter class for that transport.
"""

from typing import Any, Dict, List, Optional, Type

import httpx
import structlog

from polymux.config import Settings, get_settings
from polymux.services.approvals import ApprovalTable

from .base import BaseProvider, ConfigurationError
from .catalog import ProviderCatalog, ProviderDescriptor, TransportType
from .claude import ClaudeProvider
from .cli import SubprocessProvider
from .openai_compatible import HTTPStreamingProvider, OpenAICompatibleProvider, build_http_client
from .wenxin import WenxinProvider


logger = structlog.get_logger(__name__)


class ProviderFactory:
    """Creates and owns the adapter instances for a catalog"""

    def __init__(
        self,
        catalog: ProviderCatalog,
        settings: Optional[Settings] = None,
        approvals: Optional[ApprovalTable] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.catalog = catalog
        self.settings = settings or get_settings()
        self.approvals = approvals or ApprovalTable(self.settings.tool_approval_timeout_seconds)
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._providers: Dict[str, BaseProvider] = {}

        self._provider_classes: Dict[TransportType, Type[BaseProvider]] = {
            TransportType.NATIVE_SDK: ClaudeProvider,
            TransportType.SUBPROCESS_CLI: SubprocessProvider,
            TransportType.HTTP_OPENAI_COMPATIBLE: OpenAICompatibleProvider,
            TransportType.HTTP_CUSTOM_OAUTH: WenxinProvider,
        }

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = build_http_client(self.settings)
        return self._http_client

    def register_provider_class(self, transport: TransportType, provider_class: Type[BaseProvider]) -> None:
        """Swap the adapter class used for a transport"""
        self._provider_classes[transport] = provider_class
        logger.info("Registered provider class", transport=transport.value, cls=provider_class.__name__)

    def create_provider(self, descriptor: ProviderDescriptor) -> BaseProvider:
        provider_class = self._provider_classes.get(descriptor.transport_type)
        if provider_class is None:
            raise ConfigurationError(
                f"No adapter for transport {descriptor.transport_type.value}",
                provider=descriptor.id,
            )

        kwargs: Dict[str, Any] = {"settings": self.settings}
        if issubclass(provider_class, ClaudeProvider):
            kwargs["approvals"] = self.approvals
        if issubclass(provider_class, HTTPStreamingProvider):
            kwargs["client"] = self.http_client

        provider = provider_class(descriptor, **kwargs)
        self._providers[descriptor.id] = provider
        logger.info("Created provider",
                    provider=descriptor.id,
                    transport=descriptor.transport_type.value)
        return provider

    def create_all(self) -> Dict[str, BaseProvider]:
        for descriptor in self.catalog:
            if descriptor.id not in self._providers:
                self.create_provider(descriptor)
        return dict(self._providers)

    def get_provider(self, provider_id: str) -> Optional[BaseProvider]:
        provider = self._providers.get(provider_id)
        if provider is None:
            descriptor = self.catalog.get_descriptor(provider_id)
            if descriptor is not None:
                provider = self.create_provider(descriptor)
        return provider

    def providers(self) -> List[BaseProvider]:
        return list(self._providers.values())

    async def health_check_all(self) -> Dict[str, Dict[str, Any]]:
        results = {}
        for name, provider in self._providers.items():
            try:
                results[name] = await provider.health_check()
            except Exception as e:
                results[name] = {
                    "status": "error",
                    "error": str(e),
                }
        return results

    async def shutdown_all_providers(self) -> None:
        """Abort every live session and release shared clients"""
        for provider in self._providers.values():
            await provider.shutdown()
        if self._owns_http_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
        logger.info("All providers shut down")
