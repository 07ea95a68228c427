"""
Polymux Provider System

One adapter class per transport type; one adapter instance per catalog
provider.
"""

from .base import (
    BaseProvider,
    ProviderError,
    ResolvedCredential,
    TRUNCATION_MARKER,
    Turn,
    generate_session_id,
)
from .catalog import (
    BUILTIN_PROVIDERS,
    CatalogError,
    CliFlavor,
    ProviderCatalog,
    ProviderDescriptor,
    TransportType,
    load_catalog,
)
from .claude import ClaudeProvider
from .cli import SubprocessProvider
from .openai_compatible import OpenAICompatibleProvider
from .wenxin import TokenCache, WenxinProvider
from .factory import ProviderFactory

__all__ = [
    "BaseProvider",
    "ProviderError",
    "ResolvedCredential",
    "TRUNCATION_MARKER",
    "Turn",
    "generate_session_id",
    "BUILTIN_PROVIDERS",
    "CatalogError",
    "CliFlavor",
    "ProviderCatalog",
    "ProviderDescriptor",
    "TransportType",
    "load_catalog",
    "ClaudeProvider",
    "SubprocessProvider",
    "OpenAICompatibleProvider",
    "TokenCache",
    "WenxinProvider",
    "ProviderFactory",
]
