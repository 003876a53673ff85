import time
from typing import AsyncIterator, List, Optional

import structlog
from fastapi import APIRouter, Header, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse

from chatrelay import crud
from chatrelay.api.deps import (
    IdentityDep,
    RequestIdDep,
    ServicesDep,
    SessionDep,
    credential_context,
)
from chatrelay.api.sse import DONE_LINE, SSE_HEADERS, sse_format
from chatrelay.core.config import settings
from chatrelay.models import MessageVariationPublic
from chatrelay.providers.base import NormalizedChatRequest
from chatrelay.schemas import (
    GenerationAccepted,
    MessageStatePublic,
    MessagesRequest,
    MessagesResponse,
    RegenerateRequest,
)
from chatrelay.services.state_machine import Error
from chatrelay.streaming.events import DeltaEvent
from chatrelay.utils.idempotency import get_cached_response, set_cached_response
from chatrelay.utils.usage_callback import send_usage, usage_payload

router = APIRouter(prefix="/messages", tags=["messages"])
logger = structlog.get_logger()


def _normalized(payload: MessagesRequest) -> NormalizedChatRequest:
    return NormalizedChatRequest(
        provider=payload.provider,
        model=payload.model,
        messages=payload.messages,
        temperature=payload.temperature if payload.temperature is not None else settings.DEFAULT_TEMPERATURE,
        max_tokens=payload.max_tokens or settings.DEFAULT_MAX_TOKENS,
        stream=payload.stream,
    )


async def _event_lines(events: AsyncIterator[DeltaEvent], request_id: Optional[str]) -> AsyncIterator[str]:
    async for event in events:
        if event.kind == "delta":
            yield sse_format({"delta": event.text})
        elif event.kind == "done":
            yield sse_format({"done": True, "usage": event.usage.model_dump() if event.usage else None})
        else:
            error = event.error
            logger.error("stream_error", error=str(error), request_id=request_id)
            body = error.to_dict() if hasattr(error, "to_dict") else {"message": str(error)}
            yield sse_format({"error": body})
    yield DONE_LINE


@router.post("/")
async def create_message(
    payload: MessagesRequest,
    services: ServicesDep,
    identity: IdentityDep,
    request_id: RequestIdDep,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    """
    Canonical gateway call: one provider, one normalized request.
    Streams server-sent events when ``stream`` is set.
    """
    ctx = credential_context(identity, payload.guest)
    req = _normalized(payload)

    # Idempotency only for non-streamed requests
    if idempotency_key and not req.stream:
        cached = await get_cached_response(idempotency_key, identity)
        if cached:
            return JSONResponse(content=cached)

    start = time.time()
    res = await services.gateway.handle(req, ctx)
    if req.stream:
        return StreamingResponse(
            _event_lines(res, request_id),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    body = MessagesResponse(
        content=res.content,
        usage=res.usage,
        model=res.model,
        provider=res.provider,
    ).model_dump()
    if idempotency_key:
        await set_cached_response(idempotency_key, body, identity)
    await send_usage(
        usage_payload(
            message_id=request_id or "",
            conversation_id="",
            provider=res.provider,
            model=res.model,
            usage=res.usage,
            elapsed_ms=int((time.time() - start) * 1000),
            identity=identity,
            request_id=request_id,
            stream=False,
        ),
        services.http_client,
    )
    return JSONResponse(content=body)


@router.get("/{message_id}/state", response_model=MessageStatePublic)
async def get_message_state(message_id: str, services: ServicesDep):
    record = services.machine.get_message(message_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Message not found")
    state = record.state
    return MessageStatePublic(
        message_id=record.id,
        conversation_id=record.conversation_id,
        state=state.name,
        content=record.content,
        error=state.message if isinstance(state, Error) else None,
        retryable=state.retryable if isinstance(state, Error) else None,
        usage=record.usage,
    )


@router.post("/{message_id}/retry", response_model=GenerationAccepted, status_code=202)
async def retry_message(
    message_id: str,
    payload: RegenerateRequest,
    services: ServicesDep,
    identity: IdentityDep,
):
    """Re-run a failed or cancelled assistant message under the same id."""
    ctx = credential_context(identity, payload.guest)
    return await services.chat.retry(message_id, ctx, provider=payload.provider, model=payload.model)


@router.post("/{message_id}/rewrite", response_model=GenerationAccepted, status_code=202)
async def rewrite_message(
    message_id: str,
    payload: RegenerateRequest,
    services: ServicesDep,
    session: SessionDep,
    identity: IdentityDep,
):
    """Generate a new variation of an assistant message from its preceding context."""
    record = services.machine.get_message(message_id)
    conversation_id = record.conversation_id if record is not None else None
    if conversation_id is None:
        row = crud.get_chat_message(session=session, message_id=message_id)
        if row is None:
            raise HTTPException(status_code=404, detail="Message not found")
        conversation_id = row.conversation_id
    ctx = credential_context(identity, payload.guest)
    return await services.rewrites.rewrite(
        conversation_id, message_id, ctx, provider=payload.provider, model=payload.model
    )


@router.get("/{message_id}/variations", response_model=List[MessageVariationPublic])
async def list_variations(message_id: str, session: SessionDep):
    return crud.get_message_variations(session=session, message_id=message_id)
