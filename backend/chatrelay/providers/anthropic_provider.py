from typing import Any, Dict, List

from chatrelay.providers.base import (
    NormalizedChatRequest,
    NormalizedChatResponse,
    ProviderAdapter,
)
from chatrelay.streaming.events import Usage
from chatrelay.streaming.normalizer import AnthropicDialect, as_dict, as_text


class AnthropicProvider(ProviderAdapter):
    provider_id = "Anthropic"
    endpoint = "https://api.anthropic.com/v1/messages"
    api_version = "2023-06-01"

    def __init__(self, client) -> None:
        super().__init__(client)
        self.dialect = AnthropicDialect(self.provider_id)

    def _split_system(self, req: NormalizedChatRequest) -> tuple[str, List[Dict[str, str]]]:
        # System prompts go in a dedicated field, not in the message list
        system = "\n\n".join(m.content for m in req.messages if m.role == "system")
        messages = [
            {"role": m.role, "content": m.content}
            for m in req.messages
            if m.role != "system"
        ]
        return system, messages

    def build_request(self, req: NormalizedChatRequest, stream: bool):
        system, messages = self._split_system(req)
        body: Dict[str, Any] = {
            "model": req.model,
            "messages": messages,
            "max_tokens": req.max_tokens,
            "temperature": req.temperature,
            "stream": stream,
        }
        if system:
            body["system"] = system
        headers = {
            "x-api-key": self._api_key(req),
            "anthropic-version": self.api_version,
            "content-type": "application/json",
        }
        return self.endpoint, headers, body

    async def send(self, req: NormalizedChatRequest) -> NormalizedChatResponse:
        data = await self._post_json(req)
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise self._malformed(data)
        content = "".join(
            as_text(b.get("text")) for b in blocks if isinstance(b, dict) and b.get("type") == "text"
        )
        usage = as_dict(data.get("usage"))
        return NormalizedChatResponse(
            content=content,
            usage=Usage.of(usage.get("input_tokens"), usage.get("output_tokens")),
            model=as_text(data.get("model")) or req.model,
            provider=self.provider_id,
        )
