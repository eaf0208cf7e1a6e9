import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import AppSettings
from .errors import ConfigurationError
from .llm import ChatClient, ModelHandle, with_reasoning_extraction
from .schemas import ModelCapabilities, ModelDescriptor
from .settings_store import SettingsStore

DEFAULT_MODELS_PATH = Path(__file__).parent / "default_models.json"

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True)
class ProviderInfo:
    provider_id: str
    label: str
    base_url: Optional[str] = None
    key_field: Optional[str] = None
    base_url_field: Optional[str] = None
    auth_header: str = "bearer"


PROVIDERS: Dict[str, ProviderInfo] = {
    info.provider_id: info
    for info in (
        ProviderInfo("openai", "OpenAI", "https://api.openai.com/v1", "openai_api_key", "openai_base_url"),
        ProviderInfo("anthropic", "Anthropic", "https://api.anthropic.com/v1", "anthropic_api_key"),
        ProviderInfo(
            "google", "Google Generative AI", "https://generativelanguage.googleapis.com/v1beta/openai", "google_api_key"
        ),
        ProviderInfo("groq", "Groq", "https://api.groq.com/openai/v1", "groq_api_key"),
        ProviderInfo("ollama", "Ollama", None, None, "ollama_base_url"),
        ProviderInfo("azure", "Azure", None, "azure_api_key", auth_header="api-key"),
        ProviderInfo("deepseek", "DeepSeek", "https://api.deepseek.com/v1", "deepseek_api_key"),
        ProviderInfo("fireworks", "Fireworks", "https://api.fireworks.ai/inference/v1", "fireworks_api_key"),
        ProviderInfo("xai", "xAI", "https://api.x.ai/v1", "xai_api_key"),
        ProviderInfo(
            "openai-compatible",
            "OpenAI Compatible",
            None,
            "openai_compatible_api_key",
            "openai_compatible_base_url",
        ),
    )
}

# (providers, model-name marker, tag) for providers that inline chain-of-thought in text.
REASONING_TAG_RULES: List[Tuple[Tuple[str, ...], str, str]] = [
    (("ollama", "groq", "fireworks"), "deepseek-r1", "think"),
]
REASONING_MODEL_MARKERS = ("deepseek-r1", "deepseek-reasoner", "o3-mini")
NO_NATIVE_TOOL_PROVIDERS = {"ollama", "google"}


def split_model_id(model_id: str) -> Tuple[str, str]:
    provider, sep, name = (model_id or "").partition(":")
    if not sep or not provider.strip() or not name.strip():
        raise ConfigurationError(
            "Invalid model configuration",
            "Model name cannot be empty. Model identifiers must look like 'provider:model-name'.",
            status_code=400,
            provider_id=provider or None,
        )
    return provider.strip(), name.strip()


def is_placeholder_name(name: str) -> bool:
    return name.startswith("<") and name.endswith(">")


def is_reasoning_model(model_id: str) -> bool:
    return any(marker in model_id for marker in REASONING_MODEL_MARKERS)


def is_tool_call_supported(provider_id: str, model_name: str) -> bool:
    if provider_id in NO_NATIVE_TOOL_PROVIDERS:
        return False
    return "deepseek" not in model_name


@lru_cache(maxsize=None)
def _resolve_capabilities(provider_id: str, model_name: str, native: bool) -> ModelCapabilities:
    tag_name: Optional[str] = None
    for providers, marker, tag in REASONING_TAG_RULES:
        if provider_id in providers and marker in model_name:
            tag_name = tag
            break
    return ModelCapabilities(
        supports_native_tools=native,
        reasoning_tag_name=tag_name,
        is_reasoning_model=is_reasoning_model(model_name),
    )


def capabilities_for(
    provider_id: str, model_name: str, descriptor: Optional[ModelDescriptor] = None
) -> ModelCapabilities:
    """Capabilities are frozen and computed once per (provider, model, tool-call type)."""
    if descriptor is not None:
        native = descriptor.tool_call_type == "native"
    else:
        native = is_tool_call_supported(provider_id, model_name)
    return _resolve_capabilities(provider_id, model_name, native)


def tool_call_model_id(descriptor: ModelDescriptor) -> str:
    if descriptor.tool_call_model:
        return f"{descriptor.provider_id}:{descriptor.tool_call_model}"
    return descriptor.model_id


class ClientCache:
    """Provider clients keyed by connection identity; entries are never evicted."""

    def __init__(self, timeout: float = 60.0, factory: Optional[Callable[..., ChatClient]] = None):
        self.timeout = timeout
        self.factory = factory or ChatClient
        self._clients: Dict[Tuple[str, str], ChatClient] = {}

    def get_or_create(self, base_url: str, api_key: Optional[str], auth_header: str = "bearer") -> ChatClient:
        key = (base_url.rstrip("/"), api_key or "")
        client = self._clients.get(key)
        if client is None:
            client = self._clients.setdefault(
                key, self.factory(base_url, api_key=api_key, auth_header=auth_header, timeout=self.timeout)
            )
        return client

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, key: Tuple[str, str]) -> bool:
        return key in self._clients

    async def close(self) -> None:
        for client in list(self._clients.values()):
            await client.close()


class ModelResolver:
    def __init__(
        self,
        settings: AppSettings,
        client_cache: ClientCache,
        settings_store: Optional[SettingsStore] = None,
    ):
        self.settings = settings
        self.client_cache = client_cache
        self.settings_store = settings_store

    def credentials(
        self, provider_id: str, descriptor: Optional[ModelDescriptor] = None
    ) -> Optional[Tuple[str, Optional[str]]]:
        """Return (base_url, api_key), preferring user-level over process-level config."""
        info = PROVIDERS.get(provider_id)
        if info is None:
            return None
        if provider_id == "openai-compatible":
            user_cfg = descriptor.compatible_config if descriptor is not None else None
            if user_cfg is not None and user_cfg.enabled and user_cfg.api_key and user_cfg.base_url:
                return user_cfg.base_url, user_cfg.api_key
            if self.settings_store is not None:
                stored = self.settings_store.get_openai_compatible_settings()
                if stored.usable:
                    return stored.base_url, stored.api_key
        if provider_id == "ollama":
            base = self.settings.ollama_base_url
            return (f"{base.rstrip('/')}/v1", None) if base else None
        if provider_id == "azure":
            resource = self.settings.azure_resource_name
            api_key = self.settings.azure_api_key
            if not resource or not api_key:
                return None
            return f"https://{resource}.openai.azure.com/openai/v1", api_key
        api_key = getattr(self.settings, info.key_field) if info.key_field else None
        base_url = getattr(self.settings, info.base_url_field) if info.base_url_field else None
        base_url = base_url or info.base_url
        if not api_key or not base_url:
            return None
        return base_url, api_key

    def is_provider_enabled(self, provider_id: str, descriptor: Optional[ModelDescriptor] = None) -> bool:
        return self.credentials(provider_id, descriptor) is not None

    def resolve(self, model_id: str, descriptor: Optional[ModelDescriptor] = None) -> ModelHandle:
        provider_id, model_name = split_model_id(model_id)
        provider_label = descriptor.provider if descriptor is not None else provider_id
        if is_placeholder_name(model_name):
            raise ConfigurationError(
                "Invalid model configuration",
                "Template model placeholder detected. Please configure your OpenAI-compatible endpoint "
                "with a valid model name in Settings.",
                status_code=400,
                provider=provider_label,
                provider_id=provider_id,
            )
        info = PROVIDERS.get(provider_id)
        if info is None:
            raise ConfigurationError(
                "Invalid model configuration",
                f'Unknown provider "{provider_id}".',
                status_code=400,
                provider=provider_label,
                provider_id=provider_id,
            )
        creds = self.credentials(provider_id, descriptor)
        if creds is None or (descriptor is not None and not descriptor.enabled):
            if provider_id == "openai-compatible":
                details = (
                    "OpenAI Compatible provider is not configured. Please check your API key and base URL in settings."
                )
            else:
                details = (
                    f'Provider "{provider_label}" ({provider_id}) is not configured or enabled. '
                    "Please configure the required API keys or select a different model."
                )
            raise ConfigurationError(
                "Selected provider not available",
                details,
                status_code=503,
                provider=provider_label,
                provider_id=provider_id,
            )
        base_url, api_key = creds
        client = self.client_cache.get_or_create(base_url, api_key, info.auth_header)
        capabilities = capabilities_for(provider_id, model_name, descriptor)
        handle = ModelHandle(client, provider_id, model_name, capabilities)
        if capabilities.reasoning_tag_name:
            handle = with_reasoning_extraction(handle, capabilities.reasoning_tag_name)
        return handle


def load_default_models(path: Optional[Path] = None) -> List[ModelDescriptor]:
    target = path or DEFAULT_MODELS_PATH
    try:
        data = json.loads(target.read_text())
    except Exception as exc:
        logger.warning("Failed to load models from %s: %s", target, exc)
        return []
    models: List[ModelDescriptor] = []
    for raw in data.get("models") or []:
        try:
            models.append(ModelDescriptor.model_validate(raw))
        except ValueError as exc:
            logger.warning("Skipping invalid model entry %s: %s", raw, exc)
    return models


async def available_models(resolver: ModelResolver, path: Optional[Path] = None) -> List[Dict[str, Any]]:
    """Enabled configured models plus the models served by the user's compatible endpoint."""
    models = [
        m for m in load_default_models(path) if m.enabled and resolver.is_provider_enabled(m.provider_id, m)
    ]
    if resolver.settings_store is not None:
        stored = resolver.settings_store.get_openai_compatible_settings()
        if stored.usable:
            client = resolver.client_cache.get_or_create(stored.base_url, stored.api_key)
            try:
                data = await client.list_models()
                for entry in data.get("data", []):
                    if not entry.get("id"):
                        continue
                    models.append(
                        ModelDescriptor(
                            id=entry["id"],
                            name=entry["id"],
                            provider="OpenAI Compatible",
                            providerId="openai-compatible",
                            enabled=True,
                            toolCallType="native",
                        )
                    )
            except Exception as exc:
                logger.warning("Failed to fetch models from custom endpoint: %s", exc)
    return [m.to_public() for m in models]
