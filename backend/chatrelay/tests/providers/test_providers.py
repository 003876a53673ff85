import asyncio
import json

import httpx
import pytest

from chatrelay.errors import ConfigurationError, TransportError, UpstreamError
from chatrelay.providers import (
    AnthropicProvider,
    AzureOpenAIProvider,
    ChatMessage,
    GeminiProvider,
    MistralProvider,
    NormalizedChatRequest,
    OpenAIProvider,
    OpenRouterProvider,
    ProviderCredential,
)
from chatrelay.tests.utils.upstream import FakeUpstream, openai_stream


def make_request(provider="OpenAI", model="gpt-4o-mini", stream=False, **params) -> NormalizedChatRequest:
    return NormalizedChatRequest(
        provider=provider,
        model=model,
        messages=[
            ChatMessage(role="system", content="Be brief."),
            ChatMessage(role="user", content="Hi"),
            ChatMessage(role="assistant", content="Hello!"),
            ChatMessage(role="user", content="How are you?"),
        ],
        credential=ProviderCredential.of("sk-test", **params),
        stream=stream,
    )


def stream_all(adapter, req):
    async def run():
        return [e async for e in adapter.send_streaming(req)]

    return asyncio.run(run())


def test_openai_send_parses_content_and_usage():
    upstream = FakeUpstream(json_body={
        "model": "gpt-4o-mini-2024",
        "choices": [{"message": {"role": "assistant", "content": "Fine."}}],
        "usage": {"prompt_tokens": 12, "completion_tokens": 2, "total_tokens": 14},
    })
    adapter = OpenAIProvider(upstream.client())

    res = asyncio.run(adapter.send(make_request()))

    assert res.content == "Fine."
    assert res.usage.total_tokens == 14
    assert res.model == "gpt-4o-mini-2024"
    req = upstream.requests[0]
    assert str(req.url) == "https://api.openai.com/v1/chat/completions"
    assert req.headers["Authorization"] == "Bearer sk-test"
    body = upstream.last_json()
    assert [m["role"] for m in body["messages"]] == ["system", "user", "assistant", "user"]
    assert body["stream"] is False


def test_openai_streaming_requests_usage_and_normalizes():
    upstream = FakeUpstream(openai_stream("Hel", "lo", usage=(5, 2)))
    adapter = OpenAIProvider(upstream.client())

    events = stream_all(adapter, make_request(stream=True))

    assert "".join(e.text for e in events) == "Hello"
    assert events[-1].kind == "done"
    assert events[-1].usage.input_tokens == 5
    assert upstream.last_json()["stream_options"] == {"include_usage": True}


def test_mistral_does_not_send_stream_options():
    upstream = FakeUpstream(openai_stream("ok"))
    adapter = MistralProvider(upstream.client())

    stream_all(adapter, make_request("Mistral", "mistral-small-latest", stream=True))

    assert str(upstream.requests[0].url) == "https://api.mistral.ai/v1/chat/completions"
    assert "stream_options" not in upstream.last_json()


def test_openrouter_sends_attribution_headers():
    upstream = FakeUpstream(json_body={"choices": [{"message": {"content": "ok"}}]})
    adapter = OpenRouterProvider(upstream.client())

    asyncio.run(adapter.send(make_request("OpenRouter", "anthropic/claude-3.5-sonnet")))

    headers = upstream.requests[0].headers
    assert "HTTP-Referer" in headers
    assert "X-Title" in headers


def test_non_success_status_is_upstream_error_with_raw_body():
    upstream = FakeUpstream(status=401)
    adapter = OpenAIProvider(upstream.client())

    with pytest.raises(UpstreamError) as exc:
        asyncio.run(adapter.send(make_request()))

    assert exc.value.status == 401
    assert exc.value.upstream_message == "upstream exploded"
    assert exc.value.retryable is False


def test_streaming_non_success_status_is_upstream_error():
    upstream = FakeUpstream(status=503)
    adapter = OpenAIProvider(upstream.client())

    with pytest.raises(UpstreamError) as exc:
        stream_all(adapter, make_request(stream=True))

    assert exc.value.status == 503
    assert exc.value.retryable is True


def test_success_body_without_expected_fields_is_malformed():
    upstream = FakeUpstream(json_body={"id": "x"})
    adapter = OpenAIProvider(upstream.client())

    with pytest.raises(UpstreamError) as exc:
        asyncio.run(adapter.send(make_request()))

    assert "malformed" in exc.value.upstream_message


def test_connection_failure_is_transport_error():
    upstream = FakeUpstream(error=httpx.ConnectError("connection refused"))
    adapter = OpenAIProvider(upstream.client())

    with pytest.raises(TransportError):
        asyncio.run(adapter.send(make_request()))


def test_anthropic_moves_system_prompt_and_renames_usage():
    upstream = FakeUpstream(json_body={
        "model": "claude-3-5-haiku-20241022",
        "content": [{"type": "text", "text": "Doing "}, {"type": "text", "text": "well."}],
        "usage": {"input_tokens": 20, "output_tokens": 3},
    })
    adapter = AnthropicProvider(upstream.client())

    res = asyncio.run(adapter.send(make_request("Anthropic", "claude-3-5-haiku-20241022")))

    assert res.content == "Doing well."
    assert res.usage.model_dump() == {"input_tokens": 20, "output_tokens": 3, "total_tokens": 23}
    body = upstream.last_json()
    assert body["system"] == "Be brief."
    assert all(m["role"] != "system" for m in body["messages"])
    headers = upstream.requests[0].headers
    assert headers["x-api-key"] == "sk-test"
    assert headers["anthropic-version"] == "2023-06-01"


def test_gemini_maps_roles_and_uses_sse_endpoint():
    chunk = {
        "candidates": [{"content": {"parts": [{"text": "Good"}]}, "finishReason": "STOP"}],
        "usageMetadata": {"promptTokenCount": 7, "candidatesTokenCount": 1, "totalTokenCount": 8},
    }
    upstream = FakeUpstream([f"data: {json.dumps(chunk)}\r\n\r\n".encode()])
    adapter = GeminiProvider(upstream.client())

    events = stream_all(adapter, make_request("Google Gemini", "gemini-1.5-flash", stream=True))

    assert [e.kind for e in events] == ["delta", "done"]
    url = str(upstream.requests[0].url)
    assert url.endswith("/gemini-1.5-flash:streamGenerateContent?alt=sse")
    body = upstream.last_json()
    assert [c["role"] for c in body["contents"]] == ["user", "model", "user"]
    assert body["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
    assert upstream.requests[0].headers["x-goog-api-key"] == "sk-test"


def test_azure_builds_deployment_url():
    upstream = FakeUpstream(json_body={"choices": [{"message": {"content": "ok"}}]})
    adapter = AzureOpenAIProvider(upstream.client())
    req = make_request(
        "Azure OpenAI", "gpt-4o-mini", endpoint_url="https://acme.openai.azure.com/", deployment_id="chat-prod"
    )

    res = asyncio.run(adapter.send(req))

    assert str(upstream.requests[0].url) == (
        "https://acme.openai.azure.com/openai/deployments/chat-prod/chat/completions"
        "?api-version=2025-01-01-preview"
    )
    assert upstream.requests[0].headers["api-key"] == "sk-test"
    assert "model" not in upstream.last_json()
    assert res.model == "chat-prod"


def test_azure_without_deployment_params_is_configuration_error():
    adapter = AzureOpenAIProvider(FakeUpstream().client())

    with pytest.raises(ConfigurationError):
        adapter.validate(make_request("Azure OpenAI", "gpt-4o-mini"))


@pytest.mark.parametrize("adapter_cls, provider, model", [
    (OpenAIProvider, "OpenAI", "gpt-4o-mini"),
    (AnthropicProvider, "Anthropic", "claude-3-5-haiku-20241022"),
    (GeminiProvider, "Google Gemini", "gemini-1.5-flash"),
])
def test_success_body_that_is_not_an_object_is_malformed(adapter_cls, provider, model):
    upstream = FakeUpstream(json_body=["not", "an", "object"])
    adapter = adapter_cls(upstream.client())

    with pytest.raises(UpstreamError) as exc:
        asyncio.run(adapter.send(make_request(provider, model)))

    assert "malformed" in exc.value.upstream_message


def test_nested_fields_of_unexpected_shape():
    anthropic = FakeUpstream(json_body={"content": ["x", {"type": "text", "text": "ok"}], "usage": "x"})
    gemini = FakeUpstream(json_body={"candidates": ["x"]})

    res = asyncio.run(AnthropicProvider(anthropic.client()).send(make_request("Anthropic", "claude-3-5-haiku-20241022")))
    with pytest.raises(UpstreamError) as exc:
        asyncio.run(GeminiProvider(gemini.client()).send(make_request("Google Gemini", "gemini-1.5-flash")))

    assert res.content == "ok"
    assert res.usage.total_tokens == 0
    assert "malformed" in exc.value.upstream_message


def test_redirect_status_is_upstream_error():
    upstream = FakeUpstream(status=302, json_body={"moved": True})
    adapter = OpenAIProvider(upstream.client())

    with pytest.raises(UpstreamError) as sent:
        asyncio.run(adapter.send(make_request()))
    with pytest.raises(UpstreamError) as streamed:
        stream_all(adapter, make_request(stream=True))

    assert sent.value.status == 302
    assert streamed.value.status == 302
