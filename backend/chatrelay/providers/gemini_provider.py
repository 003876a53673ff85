from typing import Any, Dict

from chatrelay.providers.base import (
    NormalizedChatRequest,
    NormalizedChatResponse,
    ProviderAdapter,
)
from chatrelay.streaming.events import Usage
from chatrelay.streaming.normalizer import GeminiDialect, as_dict, as_list, as_text


class GeminiProvider(ProviderAdapter):
    provider_id = "Google Gemini"
    base_url = "https://generativelanguage.googleapis.com/v1beta/models"

    def __init__(self, client) -> None:
        super().__init__(client)
        self.dialect = GeminiDialect(self.provider_id)

    def build_request(self, req: NormalizedChatRequest, stream: bool):
        contents = [
            {
                "role": "model" if m.role == "assistant" else "user",
                "parts": [{"text": m.content}],
            }
            for m in req.messages
            if m.role != "system"
        ]
        body: Dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": req.temperature,
                "maxOutputTokens": req.max_tokens,
            },
        }
        system = "\n\n".join(m.content for m in req.messages if m.role == "system")
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}
        if stream:
            url = f"{self.base_url}/{req.model}:streamGenerateContent?alt=sse"
        else:
            url = f"{self.base_url}/{req.model}:generateContent"
        headers = {
            "x-goog-api-key": self._api_key(req),
            "Content-Type": "application/json",
        }
        return url, headers, body

    async def send(self, req: NormalizedChatRequest) -> NormalizedChatResponse:
        data = await self._post_json(req)
        candidates = as_list(data.get("candidates"))
        if not candidates or not isinstance(candidates[0], dict):
            raise self._malformed(data)
        parts = as_list(as_dict(candidates[0].get("content")).get("parts"))
        meta = as_dict(data.get("usageMetadata"))
        return NormalizedChatResponse(
            content="".join(as_text(as_dict(p).get("text")) for p in parts),
            usage=Usage.of(
                meta.get("promptTokenCount"),
                meta.get("candidatesTokenCount"),
                meta.get("totalTokenCount"),
            ),
            model=req.model,
            provider=self.provider_id,
        )
