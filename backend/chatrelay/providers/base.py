import json
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Literal, Optional

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, SecretStr

from chatrelay.errors import TransportError, UpstreamError
from chatrelay.streaming.events import DeltaEvent, Usage
from chatrelay.streaming.normalizer import StreamDialect, normalize_stream

logger = structlog.get_logger()

Role = Literal["user", "assistant", "system"]


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str


class ProviderCredential(BaseModel):
    """An API key plus provider specific settings (Azure endpoint, deployment)."""

    model_config = ConfigDict(frozen=True)

    api_key: SecretStr
    params: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def of(cls, api_key: str, **params: str) -> "ProviderCredential":
        return cls(api_key=SecretStr(api_key), params=params)


class NormalizedChatRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: str
    model: Optional[str] = None
    messages: List[ChatMessage]
    temperature: float = 0.7
    max_tokens: int = 1000
    credential: Optional[ProviderCredential] = None
    stream: bool = False


class NormalizedChatResponse(BaseModel):
    content: str
    usage: Usage = Field(default_factory=Usage)
    model: str
    provider: str


class ProviderAdapter(ABC):
    """
    Translates the normalized contract to one provider's wire format and back.

    Adapters do not retry; a second upstream call is always a caller decision.
    """

    provider_id: str = ""
    dialect: StreamDialect

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    @abstractmethod
    async def send(self, req: NormalizedChatRequest) -> NormalizedChatResponse:
        raise NotImplementedError

    async def send_streaming(self, req: NormalizedChatRequest) -> AsyncIterator[DeltaEvent]:
        url, headers, body = self.build_request(req, stream=True)
        try:
            async with self._client.stream("POST", url, headers=headers, json=body) as response:
                if not response.is_success:
                    raw = await response.aread()
                    raise UpstreamError(self.provider_id, response.status_code, raw.decode("utf-8", "replace"))
                async for event in normalize_stream(response.aiter_bytes(), self.dialect, provider=self.provider_id):
                    yield event
        except httpx.TransportError as e:
            raise TransportError(self.provider_id, f"{type(e).__name__}: {e}") from e

    def validate(self, req: NormalizedChatRequest) -> None:
        """Raise ConfigurationError if the request cannot be sent to this provider."""

    @abstractmethod
    def build_request(self, req: NormalizedChatRequest, stream: bool) -> tuple[str, Dict[str, str], Dict[str, Any]]:
        """Return (url, headers, json body) for this provider."""
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Helpers shared by adapters
    # ------------------------------------------------------------------

    async def _post_json(self, req: NormalizedChatRequest) -> Dict[str, Any]:
        url, headers, body = self.build_request(req, stream=False)
        try:
            resp = await self._client.post(url, headers=headers, json=body)
        except httpx.TransportError as e:
            raise TransportError(self.provider_id, f"{type(e).__name__}: {e}") from e
        if not resp.is_success:
            logger.warning("provider_error_status", provider=self.provider_id, status=resp.status_code)
            raise UpstreamError(self.provider_id, resp.status_code, resp.text)
        try:
            data = resp.json()
        except json.JSONDecodeError:
            raise UpstreamError(self.provider_id, resp.status_code, f"malformed response: {resp.text[:200]}")
        if not isinstance(data, dict):
            raise self._malformed(data)
        return data

    def _malformed(self, data: Any) -> UpstreamError:
        return UpstreamError(self.provider_id, 200, f"malformed response: {json.dumps(data)[:200]}")

    @staticmethod
    def _api_key(req: NormalizedChatRequest) -> str:
        if req.credential is None:
            raise ValueError("request reached an adapter without a credential")
        return req.credential.api_key.get_secret_value()
