import asyncio
from typing import AsyncIterator, List

import structlog
from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from sqlmodel import Session

from chatrelay import crud
from chatrelay.api.deps import IdentityDep, ServicesDep, SessionDep, credential_context
from chatrelay.api.sse import KEEP_ALIVE_LINE, SSE_HEADERS, sse_format
from chatrelay.models import ChatHistoryPublic, ChatMessagePublic, Conversation, ConversationPublic
from chatrelay.schemas import GenerationAccepted, MessageStatePublic, RewriteStatusPublic, SubmitRequest
from chatrelay.services.state_machine import Error, MessageStateMachine

router = APIRouter(prefix="/conversations", tags=["conversations"])
logger = structlog.get_logger()

KEEP_ALIVE_SECONDS = 15.0


def _owned(session: Session, conversation_id: str, identity: str | None) -> Conversation:
    conversation = crud.get_conversation(session=session, conversation_id=conversation_id)
    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation not found")
    if conversation.api_key_hash and conversation.api_key_hash != identity:
        raise HTTPException(status_code=403, detail="Access denied to this conversation")
    return conversation


def _public(conversation: Conversation, message_count: int) -> ConversationPublic:
    return ConversationPublic(
        id=conversation.id,
        title=conversation.title,
        api_key_hash=conversation.api_key_hash,
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
        message_count=message_count,
    )


@router.get("/", response_model=List[ConversationPublic])
async def list_conversations(
    session: SessionDep,
    identity: IdentityDep,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=20, ge=1, le=100),
):
    """
    List all conversations for the current API key.
    """
    conversations = crud.get_conversations(
        session=session,
        api_key_hash=identity,
        skip=skip,
        limit=limit
    )
    return [
        _public(conv, crud.count_messages_in_conversation(session=session, conversation_id=conv.id))
        for conv in conversations
    ]


@router.get("/{conversation_id}", response_model=ChatHistoryPublic)
async def get_conversation_history(
    conversation_id: str,
    session: SessionDep,
    identity: IdentityDep,
):
    """
    Get a specific conversation with all its messages.
    """
    conversation = _owned(session, conversation_id, identity)
    messages = crud.get_chat_messages(session=session, conversation_id=conversation_id)
    return ChatHistoryPublic(
        conversation=_public(conversation, len(messages)),
        messages=[ChatMessagePublic.model_validate(msg, from_attributes=True) for msg in messages],
    )


@router.patch("/{conversation_id}")
async def update_conversation_title(
    conversation_id: str,
    title: str,
    session: SessionDep,
    identity: IdentityDep,
):
    """
    Update a conversation's title.
    """
    _owned(session, conversation_id, identity)
    updated = crud.update_conversation(session=session, conversation_id=conversation_id, title=title)
    if not updated:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"message": "Conversation updated successfully", "conversation_id": conversation_id}


@router.delete("/{conversation_id}")
async def delete_conversation_endpoint(
    conversation_id: str,
    session: SessionDep,
    services: ServicesDep,
    identity: IdentityDep,
):
    """
    Delete a conversation and all its messages.
    """
    _owned(session, conversation_id, identity)
    await services.chat.cancel(conversation_id)
    if not crud.delete_conversation(session=session, conversation_id=conversation_id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"message": "Conversation deleted successfully"}


@router.post("/{conversation_id}/messages", status_code=202)
async def submit_message(
    conversation_id: str,
    payload: SubmitRequest,
    session: SessionDep,
    services: ServicesDep,
    identity: IdentityDep,
):
    """
    Send a user message and start the assistant reply.

    Returns right away with the new message ids; follow progress on
    ``/events``. With ``stream`` off the call waits and returns the final state.
    """
    conversation = crud.get_conversation(session=session, conversation_id=conversation_id)
    if conversation is None:
        crud.create_conversation(
            session=session,
            conversation_id=conversation_id,
            title=payload.content[:100] + "..." if len(payload.content) > 100 else payload.content,
            api_key_hash=identity,
        )
    else:
        _owned(session, conversation_id, identity)

    ctx = credential_context(identity, payload.guest)
    accepted = await services.chat.submit(
        conversation_id,
        payload.content,
        ctx,
        provider=payload.provider,
        model=payload.model,
        temperature=payload.temperature,
        max_tokens=payload.max_tokens,
    )
    if payload.stream:
        return accepted

    await services.chat.wait(conversation_id)
    return _state_of(services.machine, accepted)


def _state_of(machine: MessageStateMachine, accepted: GenerationAccepted) -> MessageStatePublic:
    record = machine.get_message(accepted.message_id)
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


@router.post("/{conversation_id}/cancel")
async def cancel_generation(conversation_id: str, services: ServicesDep):
    """Cancel the running generation or rewrite; partial content is kept."""
    message_id = await services.chat.cancel(conversation_id)
    return {"cancelled": message_id is not None, "message_id": message_id}


@router.get("/{conversation_id}/rewrite", response_model=RewriteStatusPublic)
async def rewrite_status(conversation_id: str, services: ServicesDep):
    return services.rewrites.status(conversation_id)


@router.get("/{conversation_id}/events")
async def conversation_events(conversation_id: str, request: Request, services: ServicesDep):
    """Server-sent lifecycle events (deltas, state changes, slow rewrites) for one conversation."""
    machine = services.machine
    queue = machine.subscribe(conversation_id)

    async def event_gen() -> AsyncIterator[str]:
        try:
            while not await request.is_disconnected():
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=KEEP_ALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield KEEP_ALIVE_LINE
                    continue
                yield sse_format(event.to_dict())
        finally:
            machine.unsubscribe(queue)
            logger.info("event_stream_closed", conversation_id=conversation_id)

    return StreamingResponse(event_gen(), media_type="text/event-stream", headers=SSE_HEADERS)
