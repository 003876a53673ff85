from chatrelay.providers.anthropic_provider import AnthropicProvider
from chatrelay.providers.base import (
    ChatMessage,
    NormalizedChatRequest,
    NormalizedChatResponse,
    ProviderAdapter,
    ProviderCredential,
)
from chatrelay.providers.gemini_provider import GeminiProvider
from chatrelay.providers.openai_provider import (
    AzureOpenAIProvider,
    MistralProvider,
    OpenAIProvider,
    OpenRouterProvider,
    StraicoProvider,
)
from chatrelay.streaming.events import DeltaEvent, Usage

__all__ = [
    "AnthropicProvider",
    "AzureOpenAIProvider",
    "ChatMessage",
    "DeltaEvent",
    "GeminiProvider",
    "MistralProvider",
    "NormalizedChatRequest",
    "NormalizedChatResponse",
    "OpenAIProvider",
    "OpenRouterProvider",
    "ProviderAdapter",
    "ProviderCredential",
    "StraicoProvider",
    "Usage",
]
