from typing import Dict, List, Optional, Tuple, Type

import httpx

from chatrelay.core.config import settings
from chatrelay.errors import ModelMissingError, ProviderUnsupportedError
from chatrelay.providers import (
    AnthropicProvider,
    AzureOpenAIProvider,
    GeminiProvider,
    MistralProvider,
    OpenAIProvider,
    OpenRouterProvider,
    StraicoProvider,
)
from chatrelay.providers.base import ProviderAdapter

# provider id -> (adapter class, default model). Adding a provider is one entry here.
PROVIDERS: Dict[str, Tuple[Type[ProviderAdapter], str]] = {
    "OpenAI": (OpenAIProvider, "gpt-4o-mini"),
    "Anthropic": (AnthropicProvider, "claude-3-5-haiku-20241022"),
    "Google Gemini": (GeminiProvider, "gemini-1.5-flash"),
    "Mistral": (MistralProvider, "mistral-small-latest"),
    "OpenRouter": (OpenRouterProvider, "anthropic/claude-3.5-sonnet"),
    "Straico": (StraicoProvider, "openai/gpt-4o-mini"),
    "Azure OpenAI": (AzureOpenAIProvider, "gpt-4o-mini"),
}


def build_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            settings.PROVIDER_TIMEOUT_SECONDS,
            connect=settings.PROVIDER_CONNECT_TIMEOUT_SECONDS,
        )
    )


class ProviderRegistry:
    """Provider id -> adapter instance and default model."""

    def __init__(self) -> None:
        self._adapters: Dict[str, ProviderAdapter] = {}
        self._default_models: Dict[str, str] = {}

    def register(self, provider: str, adapter: ProviderAdapter, default_model: str) -> None:
        self._adapters[provider] = adapter
        self._default_models[provider] = default_model

    def get(self, provider: str) -> ProviderAdapter:
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise ProviderUnsupportedError(provider)
        return adapter

    def default_model(self, provider: str) -> Optional[str]:
        self.get(provider)
        return self._default_models.get(provider) or None

    def providers(self) -> List[str]:
        return list(self._adapters)

    def resolve(self, provider: str, model: Optional[str] = None) -> Tuple[ProviderAdapter, str]:
        """
        Resolve the adapter and the model to use for ``provider``.
        Falls back to the provider's default model when none is requested.
        """
        adapter = self.get(provider)
        resolved = model or self.default_model(provider)
        if not resolved:
            raise ModelMissingError(provider)
        return adapter, resolved


def build_registry(client: httpx.AsyncClient) -> ProviderRegistry:
    registry = ProviderRegistry()
    for provider, (adapter_cls, default_model) in PROVIDERS.items():
        registry.register(provider, adapter_cls(client), default_model)
    return registry
