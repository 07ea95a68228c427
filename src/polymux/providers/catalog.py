"""
Provider Catalog

Static descriptors for every backend the gateway can route to. The built-in
table can be overlaid by a JSON file; the result is immutable once loaded.
"""

import json
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

if TYPE_CHECKING:
    from polymux.services.credentials import CredentialResolver


logger = structlog.get_logger(__name__)


class TransportType(str, Enum):
    """How the gateway talks to a backend; one adapter class per value"""
    NATIVE_SDK = "native-sdk"
    SUBPROCESS_CLI = "subprocess-cli"
    HTTP_OPENAI_COMPATIBLE = "http-openai-compatible"
    HTTP_CUSTOM_OAUTH = "http-custom-oauth"


class CliFlavor(str, Enum):
    CURSOR = "cursor"
    CODEX = "codex"


class ModelOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: str
    label: str


class ProviderDescriptor(BaseModel):
    """Static description of one backend"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(min_length=1)
    transport_type: TransportType
    default_model: str
    base_endpoint: Optional[str] = None
    # None means the backend manages its own authentication
    credential_kind: Optional[str] = None
    env_key: Optional[str] = None
    secret_credential_kind: Optional[str] = None
    env_secret_key: Optional[str] = None
    token_endpoint: Optional[str] = None
    model_endpoints: Dict[str, str] = Field(default_factory=dict)
    cli_binary: Optional[str] = None
    cli_flavor: Optional[CliFlavor] = None
    label: str = ""
    label_zh: str = ""
    category: str = "international"
    models: List[ModelOption] = Field(default_factory=list)

    @property
    def manages_own_auth(self) -> bool:
        return self.credential_kind is None

    def to_public_dict(self) -> Dict[str, Any]:
        """Fields safe to show to clients"""
        return {
            "id": self.id,
            "label": self.label or self.id,
            "labelZh": self.label_zh or self.label or self.id,
            "category": self.category,
            "transportType": self.transport_type.value,
            "defaultModel": self.default_model,
            "requiresCredential": not self.manages_own_auth,
        }


def _models(*pairs) -> List[ModelOption]:
    return [ModelOption(value=value, label=label) for value, label in pairs]


_WENXIN_CHAT = "https://aip.baidubce.com/rpc/2.0/ai_custom/v1/wenxinworkshop/chat"

BUILTIN_PROVIDERS: List[ProviderDescriptor] = [
    ProviderDescriptor(
        id="claude",
        transport_type=TransportType.NATIVE_SDK,
        default_model="sonnet",
        label="Claude Code",
        label_zh="Claude Code",
        category="international",
        models=_models(
            ("sonnet", "Sonnet"),
            ("opus", "Opus"),
            ("haiku", "Haiku"),
            ("opusplan", "Opus Plan"),
            ("sonnet[1m]", "Sonnet [1M]"),
        ),
    ),
    ProviderDescriptor(
        id="cursor",
        transport_type=TransportType.SUBPROCESS_CLI,
        default_model="gpt-5",
        cli_flavor=CliFlavor.CURSOR,
        label="Cursor",
        label_zh="Cursor",
        category="international",
        models=_models(
            ("gpt-5.2", "GPT-5.2"),
            ("gpt-5.2-high", "GPT-5.2 High"),
            ("gemini-3-pro", "Gemini 3 Pro"),
            ("opus-4.5-thinking", "Claude 4.5 Opus (Thinking)"),
            ("sonnet-4.5", "Claude 4.5 Sonnet"),
            ("sonnet-4.5-thinking", "Claude 4.5 Sonnet (Thinking)"),
            ("gpt-5.1-codex", "GPT-5.1 Codex"),
            ("composer-1", "Composer 1"),
            ("auto", "Auto"),
            ("grok", "Grok"),
        ),
    ),
    ProviderDescriptor(
        id="codex",
        transport_type=TransportType.SUBPROCESS_CLI,
        default_model="gpt-5.2",
        cli_flavor=CliFlavor.CODEX,
        label="Codex",
        label_zh="Codex",
        category="international",
        models=_models(
            ("gpt-5.2", "GPT-5.2"),
            ("gpt-5.1-codex-max", "GPT-5.1 Codex Max"),
            ("o3", "O3"),
            ("o4-mini", "O4-mini"),
        ),
    ),
    ProviderDescriptor(
        id="kimi",
        transport_type=TransportType.HTTP_OPENAI_COMPATIBLE,
        base_endpoint="https://api.moonshot.cn/v1",
        credential_kind="moonshot_api_key",
        env_key="MOONSHOT_API_KEY",
        default_model="moonshot-v1-32k",
        label="Kimi",
        label_zh="Kimi (月之暗面)",
        category="chinese",
        models=_models(
            ("moonshot-v1-8k", "Moonshot V1 8K"),
            ("moonshot-v1-32k", "Moonshot V1 32K"),
            ("moonshot-v1-128k", "Moonshot V1 128K"),
        ),
    ),
    ProviderDescriptor(
        id="qwen",
        transport_type=TransportType.HTTP_OPENAI_COMPATIBLE,
        base_endpoint="https://dashscope.aliyuncs.com/compatible-mode/v1",
        credential_kind="dashscope_api_key",
        env_key="DASHSCOPE_API_KEY",
        default_model="qwen-plus",
        label="Qwen",
        label_zh="通义千问",
        category="chinese",
        models=_models(
            ("qwen-max", "Qwen Max"),
            ("qwen-plus", "Qwen Plus"),
            ("qwen-turbo", "Qwen Turbo"),
            ("qwen-long", "Qwen Long"),
            ("qwen2.5-72b-instruct", "Qwen 2.5 72B"),
            ("qwen2.5-coder-32b-instruct", "Qwen 2.5 Coder 32B"),
        ),
    ),
    ProviderDescriptor(
        id="deepseek",
        transport_type=TransportType.HTTP_OPENAI_COMPATIBLE,
        base_endpoint="https://api.deepseek.com/v1",
        credential_kind="deepseek_api_key",
        env_key="DEEPSEEK_API_KEY",
        default_model="deepseek-chat",
        label="DeepSeek",
        label_zh="DeepSeek (深度求索)",
        category="chinese",
        models=_models(
            ("deepseek-chat", "DeepSeek Chat (V3)"),
            ("deepseek-reasoner", "DeepSeek Reasoner (R1)"),
        ),
    ),
    ProviderDescriptor(
        id="glm",
        transport_type=TransportType.HTTP_OPENAI_COMPATIBLE,
        base_endpoint="https://open.bigmodel.cn/api/paas/v4",
        credential_kind="zhipu_api_key",
        env_key="ZHIPU_API_KEY",
        default_model="glm-4-flash",
        label="GLM",
        label_zh="智谱 ChatGLM",
        category="chinese",
        models=_models(
            ("glm-4-plus", "GLM-4 Plus"),
            ("glm-4-0520", "GLM-4 0520"),
            ("glm-4-flash", "GLM-4 Flash"),
            ("glm-4-long", "GLM-4 Long"),
            ("glm-4-airx", "GLM-4 AirX"),
        ),
    ),
    ProviderDescriptor(
        id="doubao",
        transport_type=TransportType.HTTP_OPENAI_COMPATIBLE,
        base_endpoint="https://ark.cn-beijing.volces.com/api/v3",
        credential_kind="volcengine_api_key",
        env_key="VOLCENGINE_API_KEY",
        default_model="doubao-pro-32k",
        label="Doubao",
        label_zh="豆包",
        category="chinese",
        models=_models(
            ("doubao-pro-256k", "Doubao Pro 256K"),
            ("doubao-pro-128k", "Doubao Pro 128K"),
            ("doubao-pro-32k", "Doubao Pro 32K"),
            ("doubao-lite-128k", "Doubao Lite 128K"),
            ("doubao-lite-32k", "Doubao Lite 32K"),
        ),
    ),
    ProviderDescriptor(
        id="wenxin",
        transport_type=TransportType.HTTP_CUSTOM_OAUTH,
        credential_kind="baidu_api_key",
        env_key="BAIDU_API_KEY",
        secret_credential_kind="baidu_secret_key",
        env_secret_key="BAIDU_SECRET_KEY",
        token_endpoint="https://aip.baidubce.com/oauth/2.0/token",
        default_model="ernie-4.0-8k",
        model_endpoints={
            "ernie-4.0-8k": f"{_WENXIN_CHAT}/completions_pro",
            "ernie-4.0-turbo-8k": f"{_WENXIN_CHAT}/ernie-4.0-turbo-8k",
            "ernie-3.5-8k": f"{_WENXIN_CHAT}/completions",
            "ernie-3.5-128k": f"{_WENXIN_CHAT}/ernie-3.5-128k",
            "ernie-speed-8k": f"{_WENXIN_CHAT}/ernie_speed",
            "ernie-speed-128k": f"{_WENXIN_CHAT}/ernie-speed-128k",
            "ernie-lite-8k": f"{_WENXIN_CHAT}/ernie-lite-8k",
            "ernie-tiny-8k": f"{_WENXIN_CHAT}/ernie-tiny-8k",
        },
        label="Wenxin",
        label_zh="文心一言",
        category="chinese",
        models=_models(
            ("ernie-4.0-8k", "ERNIE 4.0 8K"),
            ("ernie-4.0-turbo-8k", "ERNIE 4.0 Turbo"),
            ("ernie-3.5-8k", "ERNIE 3.5 8K"),
            ("ernie-3.5-128k", "ERNIE 3.5 128K"),
            ("ernie-speed-8k", "ERNIE Speed 8K"),
            ("ernie-speed-128k", "ERNIE Speed 128K"),
            ("ernie-lite-8k", "ERNIE Lite 8K"),
            ("ernie-tiny-8k", "ERNIE Tiny 8K"),
        ),
    ),
]


class CatalogError(ValueError):
    """Raised when a catalog definition is invalid"""


class ProviderCatalog:
    """Read-only lookup over provider descriptors"""

    def __init__(self, descriptors: Iterable[ProviderDescriptor]):
        self._descriptors: Dict[str, ProviderDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.id in self._descriptors:
                raise CatalogError(f"Duplicate provider id: {descriptor.id}")
            self._descriptors[descriptor.id] = descriptor

    def __contains__(self, provider_id: str) -> bool:
        return provider_id in self._descriptors

    def __iter__(self):
        return iter(self._descriptors.values())

    def __len__(self) -> int:
        return len(self._descriptors)

    def get_descriptor(self, provider_id: str) -> Optional[ProviderDescriptor]:
        return self._descriptors.get(provider_id)

    def is_valid_provider(self, provider_id: str) -> bool:
        return provider_id in self._descriptors

    def list_all(self) -> List[ProviderDescriptor]:
        return list(self._descriptors.values())

    def list_by_category(self, category: str) -> List[ProviderDescriptor]:
        return [d for d in self._descriptors.values() if d.category == category]

    def list_by_transport(self, transport: Union[TransportType, str]) -> List[ProviderDescriptor]:
        transport = TransportType(transport)
        return [d for d in self._descriptors.values() if d.transport_type == transport]

    def models_for(self, provider_id: str) -> Optional[Dict[str, Any]]:
        """Model options and default for a provider, or None if unknown"""
        descriptor = self._descriptors.get(provider_id)
        if descriptor is None:
            return None
        return {
            "options": [m.model_dump() for m in descriptor.models],
            "default": descriptor.default_model,
        }

    async def is_available(
        self,
        provider_id: str,
        user_id: Optional[str],
        resolver: "CredentialResolver",
    ) -> bool:
        """Usable by this user: backend manages its own auth or a credential resolves"""
        descriptor = self._descriptors.get(provider_id)
        if descriptor is None:
            return False
        if descriptor.manages_own_auth:
            return True
        return await resolver.resolve(user_id, descriptor) is not None


def _parse_overlay(data: Any) -> List[Dict[str, Any]]:
    if isinstance(data, dict) and "providers" in data:
        data = data["providers"]
    if isinstance(data, dict):
        return [{"id": key, **value} for key, value in data.items()]
    if isinstance(data, list):
        return data
    raise CatalogError("Catalog file must contain a list or mapping of providers")


def load_catalog(path: Optional[Union[str, Path]] = None) -> ProviderCatalog:
    """Build the catalog from the built-in table and an optional JSON overlay

    Overlay entries replace built-in providers with the same id, or add new
    ones. Duplicate ids inside the overlay and unknown transport types are
    rejected.
    """
    descriptors: Dict[str, ProviderDescriptor] = {d.id: d for d in BUILTIN_PROVIDERS}

    if path is not None:
        path = Path(path)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise CatalogError(f"Cannot read provider catalog {path}: {e}") from e

        seen = set()
        for entry in _parse_overlay(raw):
            try:
                descriptor = ProviderDescriptor.model_validate(entry)
            except ValidationError as e:
                raise CatalogError(f"Invalid provider entry in {path}: {e}") from e
            if descriptor.id in seen:
                raise CatalogError(f"Duplicate provider id in {path}: {descriptor.id}")
            seen.add(descriptor.id)
            descriptors[descriptor.id] = descriptor

        logger.info("Provider catalog overlay loaded", path=str(path), providers=sorted(seen))

    return ProviderCatalog(descriptors.values())
