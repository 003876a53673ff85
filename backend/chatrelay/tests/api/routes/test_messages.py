import json

from chatrelay.core.config import settings
from chatrelay.tests.utils.services import AUTH_HEADERS, api_client, wire
from chatrelay.tests.utils.upstream import FakeUpstream, openai_stream
from chatrelay.tests.utils.utils import random_lower_string

URL = f"{settings.API_V1_STR}/messages/"
COMPLETION = {
    "model": "gpt-4o-mini",
    "choices": [{"message": {"role": "assistant", "content": "Hi there"}}],
    "usage": {"prompt_tokens": 4, "completion_tokens": 2, "total_tokens": 6},
}


def payload(stream: bool = False, **extra) -> dict:
    return {"provider": "OpenAI", "messages": [{"role": "user", "content": "Hi"}], "stream": stream, **extra}


def sse_events(text: str) -> list:
    lines = [line[len("data: "):] for line in text.split("\n") if line.startswith("data: ")]
    return [line if line == "[DONE]" else json.loads(line) for line in lines]


def test_send_returns_normalized_response():
    upstream = FakeUpstream(json_body=COMPLETION)
    with api_client(wire(upstream)) as client:
        r = client.post(URL, json=payload(), headers=AUTH_HEADERS)

    assert r.status_code == 200
    assert r.json() == {
        "content": "Hi there",
        "usage": {"input_tokens": 4, "output_tokens": 2, "total_tokens": 6},
        "model": "gpt-4o-mini",
        "provider": "OpenAI",
    }


def test_streaming_send_emits_deltas_then_done():
    upstream = FakeUpstream(openai_stream("Hel", "lo", usage=(3, 2)))
    with api_client(wire(upstream)) as client:
        r = client.post(URL, json=payload(stream=True), headers=AUTH_HEADERS)

    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")
    assert sse_events(r.text) == [
        {"delta": "Hel"},
        {"delta": "lo"},
        {"done": True, "usage": {"input_tokens": 3, "output_tokens": 2, "total_tokens": 5}},
        "[DONE]",
    ]


def test_truncated_stream_ends_with_error_event():
    upstream = FakeUpstream(openai_stream("Hel", usage=None, done=False))
    with api_client(wire(upstream)) as client:
        r = client.post(URL, json=payload(stream=True), headers=AUTH_HEADERS)

    events = sse_events(r.text)
    assert events[0] == {"delta": "Hel"}
    assert events[1]["error"]["code"] == "stream_terminated"
    assert events[-1] == "[DONE]"


def test_missing_credential_is_401_and_nothing_is_sent():
    upstream = FakeUpstream(json_body=COMPLETION)
    with api_client(wire(upstream)) as client:
        r = client.post(URL, json=payload())

    assert r.status_code == 401
    assert r.json()["error"]["code"] == "authentication_required"
    assert upstream.calls == 0


def test_guest_credential_is_used_without_api_key():
    upstream = FakeUpstream(json_body=COMPLETION)
    with api_client(wire(upstream)) as client:
        r = client.post(URL, json=payload(guest={"api_key": "sk-guest"}))

    assert r.status_code == 200
    assert upstream.requests[0].headers["Authorization"] == "Bearer sk-guest"


def test_unknown_provider_is_400():
    with api_client(wire(FakeUpstream())) as client:
        r = client.post(URL, json={**payload(), "provider": "Nope"}, headers=AUTH_HEADERS)

    assert r.status_code == 400
    assert r.json()["error"]["category"] == "configuration"


def test_upstream_failure_is_502_with_provider_details():
    upstream = FakeUpstream(status=500)
    with api_client(wire(upstream)) as client:
        r = client.post(URL, json=payload(), headers=AUTH_HEADERS)

    assert r.status_code == 502
    error = r.json()["error"]
    assert error["status"] == 500
    assert error["upstream_message"] == "upstream exploded"


def test_idempotency_key_replays_cached_response():
    upstream = FakeUpstream(json_body=COMPLETION)
    headers = {**AUTH_HEADERS, "Idempotency-Key": random_lower_string()}
    with api_client(wire(upstream)) as client:
        first = client.post(URL, json=payload(), headers=headers)
        second = client.post(URL, json=payload(), headers=headers)

    assert first.json() == second.json()
    assert upstream.calls == 1


def test_request_id_is_echoed():
    with api_client(wire(FakeUpstream(json_body=COMPLETION))) as client:
        r = client.post(URL, json=payload(), headers={**AUTH_HEADERS, "X-Request-ID": "req-42"})
        generated = client.post(URL, json=payload(), headers=AUTH_HEADERS)

    assert r.headers["X-Request-ID"] == "req-42"
    assert generated.headers["X-Request-ID"]


def test_state_of_unknown_message_is_404():
    with api_client(wire(FakeUpstream())) as client:
        r = client.get(f"{URL}missing/state")

    assert r.status_code == 404


def test_retry_of_unknown_message_is_404():
    with api_client(wire(FakeUpstream())) as client:
        r = client.post(f"{URL}missing/retry", json={}, headers=AUTH_HEADERS)

    assert r.status_code == 404
    assert r.json()["error"]["code"] == "message_not_found"
