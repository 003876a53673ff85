"""Normalizes provider streaming bodies into ``DeltaEvent`` sequences."""
import codecs
import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Optional

import structlog

from chatrelay.errors import StreamTerminatedError, UpstreamError
from chatrelay.streaming.events import DeltaEvent, Usage

logger = structlog.get_logger()


def as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def as_text(value: Any) -> str:
    return value if isinstance(value, str) else ""


@dataclass(frozen=True)
class ParsedLine:
    text: str = ""
    # Partial usage counters, merged across the stream (providers report them piecemeal)
    usage: Dict[str, int] = field(default_factory=dict)
    terminal: bool = False


class StreamDialect:
    """
    One provider family's streaming format.

    A dialect pulls text and usage out of one ``data:`` payload and spots the
    terminal marker. Payloads it does not understand, including JSON of an
    unexpected shape, come back as ``None`` and are skipped as noise.
    """

    prefix = "data:"

    def __init__(self, provider: str = "") -> None:
        self.provider = provider

    def parse_line(self, line: str) -> Optional[ParsedLine]:
        if not line.startswith(self.prefix):
            return None
        payload = line[len(self.prefix):].strip()
        if not payload:
            return None
        return self.parse_payload(payload)

    def parse_payload(self, payload: str) -> Optional[ParsedLine]:
        raise NotImplementedError

    @staticmethod
    def _json(payload: str) -> Optional[Any]:
        try:
            return json.loads(payload)
        except json.JSONDecodeError:
            return None

    def _failure(self, err: Any, status: Any = None) -> UpstreamError:
        body = as_dict(err)
        message = as_text(body.get("message")) or as_text(body.get("type")) or as_text(err) or "stream error"
        return UpstreamError(self.provider, status if isinstance(status, int) else None, message)


class OpenAIDialect(StreamDialect):
    """``data: {...chat.completion.chunk...}`` lines closed by ``data: [DONE]``."""

    terminal_marker = "[DONE]"

    def parse_payload(self, payload: str) -> Optional[ParsedLine]:
        if payload == self.terminal_marker:
            return ParsedLine(terminal=True)
        data = self._json(payload)
        if not isinstance(data, dict):
            return None
        if data.get("error"):
            raise self._failure(data["error"])
        usage: Dict[str, int] = {}
        u = data.get("usage")
        if isinstance(u, dict):
            usage = {
                "input_tokens": u.get("prompt_tokens"),
                "output_tokens": u.get("completion_tokens"),
                "total_tokens": u.get("total_tokens"),
            }
        choices = as_list(data.get("choices"))
        delta = as_dict(as_dict(choices[0]).get("delta")) if choices else {}
        return ParsedLine(text=as_text(delta.get("content")), usage=usage)


class AnthropicDialect(StreamDialect):
    """Messages API events; ``message_stop`` is the terminal marker."""

    def parse_payload(self, payload: str) -> Optional[ParsedLine]:
        data = self._json(payload)
        if not isinstance(data, dict):
            return None
        kind = data.get("type")
        if kind == "content_block_delta":
            delta = as_dict(data.get("delta"))
            if delta.get("type") == "text_delta":
                return ParsedLine(text=as_text(delta.get("text")))
            return None
        if kind == "message_start":
            u = as_dict(as_dict(data.get("message")).get("usage"))
            return ParsedLine(usage={"input_tokens": u.get("input_tokens")})
        if kind == "message_delta":
            u = as_dict(data.get("usage"))
            return ParsedLine(usage={"output_tokens": u.get("output_tokens")})
        if kind == "message_stop":
            return ParsedLine(terminal=True)
        if kind == "error":
            raise self._failure(data.get("error"))
        return None


class GeminiDialect(StreamDialect):
    """``streamGenerateContent?alt=sse``; the chunk carrying ``finishReason`` is terminal."""

    def parse_payload(self, payload: str) -> Optional[ParsedLine]:
        data = self._json(payload)
        if not isinstance(data, dict):
            return None
        if data.get("error"):
            raise self._failure(data["error"], as_dict(data["error"]).get("code"))
        usage: Dict[str, int] = {}
        meta = data.get("usageMetadata")
        if isinstance(meta, dict):
            usage = {
                "input_tokens": meta.get("promptTokenCount"),
                "output_tokens": meta.get("candidatesTokenCount"),
                "total_tokens": meta.get("totalTokenCount"),
            }
        candidates = as_list(data.get("candidates"))
        if not candidates:
            return ParsedLine(usage=usage)
        candidate = as_dict(candidates[0])
        parts = as_list(as_dict(candidate.get("content")).get("parts"))
        text = "".join(as_text(as_dict(p).get("text")) for p in parts)
        return ParsedLine(text=text, usage=usage, terminal=bool(candidate.get("finishReason")))


def _usage(fields: Dict[str, Any]) -> Optional[Usage]:
    if not fields:
        return None
    return Usage.of(fields.get("input_tokens"), fields.get("output_tokens"), fields.get("total_tokens") or None)


async def normalize_stream(
    chunks: AsyncIterable[bytes],
    dialect: StreamDialect,
    *,
    provider: str,
) -> AsyncIterator[DeltaEvent]:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    usage: Dict[str, int] = {}
    skipped = 0

    def _handle(line: str) -> Optional[ParsedLine]:
        nonlocal skipped
        parsed = dialect.parse_line(line.rstrip("\r"))
        if parsed is None:
            if line.strip():
                skipped += 1
            return None
        usage.update(parsed.usage)
        return parsed

    async for chunk in chunks:
        buffer += decoder.decode(chunk)
        lines = buffer.split("\n")
        # Last element is an incomplete line (or "") until the next chunk arrives
        buffer = lines.pop()
        for line in lines:
            parsed = _handle(line)
            if parsed is None:
                continue
            if parsed.text:
                yield DeltaEvent.fragment(parsed.text)
            if parsed.terminal:
                if skipped:
                    logger.debug("stream_noise_skipped", provider=provider, lines=skipped)
                yield DeltaEvent.terminal(_usage(usage))
                return

    # Transport closed: a terminal marker without a trailing newline still counts
    buffer += decoder.decode(b"", final=True)
    if buffer:
        parsed = _handle(buffer)
        if parsed is not None:
            if parsed.text:
                yield DeltaEvent.fragment(parsed.text)
            if parsed.terminal:
                yield DeltaEvent.terminal(_usage(usage))
                return

    logger.warning("stream_missing_terminal", provider=provider)
    raise StreamTerminatedError(provider)
