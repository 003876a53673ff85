from typing import Any, Dict, List

from chatrelay.core.config import settings
from chatrelay.errors import ConfigurationError
from chatrelay.providers.base import (
    NormalizedChatRequest,
    NormalizedChatResponse,
    ProviderAdapter,
)
from chatrelay.streaming.events import Usage
from chatrelay.streaming.normalizer import OpenAIDialect, as_dict, as_text


class OpenAIProvider(ProviderAdapter):
    """Chat Completions API. Also the base for every OpenAI-compatible upstream."""

    provider_id = "OpenAI"
    endpoint = "https://api.openai.com/v1/chat/completions"

    def __init__(self, client) -> None:
        super().__init__(client)
        self.dialect = OpenAIDialect(self.provider_id)

    def _to_openai_messages(self, req: NormalizedChatRequest) -> List[Dict[str, str]]:
        # Pass through roles/content
        return [{"role": m.role, "content": m.content} for m in req.messages]

    def _headers(self, req: NormalizedChatRequest) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key(req)}",
            "Content-Type": "application/json",
        }

    def _url(self, req: NormalizedChatRequest) -> str:
        return self.endpoint

    def _body(self, req: NormalizedChatRequest, stream: bool) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": req.model,
            "messages": self._to_openai_messages(req),
            "temperature": req.temperature,
            "max_tokens": req.max_tokens,
            "stream": stream,
        }
        if stream:
            body["stream_options"] = {"include_usage": True}
        return body

    def _fallback_model(self, req: NormalizedChatRequest) -> str:
        return req.model or ""

    def build_request(self, req: NormalizedChatRequest, stream: bool):
        return self._url(req), self._headers(req), self._body(req, stream)

    async def send(self, req: NormalizedChatRequest) -> NormalizedChatResponse:
        data = await self._post_json(req)
        try:
            content = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError):
            raise self._malformed(data)
        if not isinstance(content, str):
            raise self._malformed(data)
        usage = as_dict(data.get("usage"))
        return NormalizedChatResponse(
            content=content,
            usage=Usage.of(
                usage.get("prompt_tokens"),
                usage.get("completion_tokens"),
                usage.get("total_tokens"),
            ),
            model=as_text(data.get("model")) or self._fallback_model(req),
            provider=self.provider_id,
        )


class MistralProvider(OpenAIProvider):
    provider_id = "Mistral"
    endpoint = "https://api.mistral.ai/v1/chat/completions"

    def _body(self, req: NormalizedChatRequest, stream: bool) -> Dict[str, Any]:
        body = super()._body(req, stream)
        # Mistral reports usage on the last chunk without being asked
        body.pop("stream_options", None)
        return body


class OpenRouterProvider(OpenAIProvider):
    provider_id = "OpenRouter"
    endpoint = "https://openrouter.ai/api/v1/chat/completions"

    def _headers(self, req: NormalizedChatRequest) -> Dict[str, str]:
        headers = super()._headers(req)
        headers["HTTP-Referer"] = settings.OPENROUTER_REFERER
        headers["X-Title"] = settings.OPENROUTER_TITLE
        return headers


class StraicoProvider(OpenAIProvider):
    provider_id = "Straico"
    endpoint = "https://api.straico.com/v1/chat/completions"

    def _body(self, req: NormalizedChatRequest, stream: bool) -> Dict[str, Any]:
        body = super()._body(req, stream)
        body.pop("stream_options", None)
        return body


class AzureOpenAIProvider(OpenAIProvider):
    """
    Customer-hosted Azure OpenAI deployment.

    The deployment lives in the URL, so ``endpoint_url`` and ``deployment_id``
    must come with the credential.
    """

    provider_id = "Azure OpenAI"
    api_version = "2025-01-01-preview"

    def _deployment(self, req: NormalizedChatRequest) -> tuple[str, str]:
        params = req.credential.params if req.credential else {}
        endpoint_url = params.get("endpoint_url")
        deployment_id = params.get("deployment_id")
        if not endpoint_url or not deployment_id:
            raise ConfigurationError(
                "Azure OpenAI endpoint URL or deployment ID is not configured for this API key."
            )
        return endpoint_url.rstrip("/"), deployment_id

    def validate(self, req: NormalizedChatRequest) -> None:
        self._deployment(req)

    def _url(self, req: NormalizedChatRequest) -> str:
        endpoint_url, deployment_id = self._deployment(req)
        return (
            f"{endpoint_url}/openai/deployments/{deployment_id}/chat/completions"
            f"?api-version={self.api_version}"
        )

    def _headers(self, req: NormalizedChatRequest) -> Dict[str, str]:
        return {"api-key": self._api_key(req), "Content-Type": "application/json"}

    def _body(self, req: NormalizedChatRequest, stream: bool) -> Dict[str, Any]:
        body = super()._body(req, stream)
        # The deployment id in the URL selects the model
        body.pop("model", None)
        return body

    def _fallback_model(self, req: NormalizedChatRequest) -> str:
        return self._deployment(req)[1]
