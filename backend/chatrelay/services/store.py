import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

from sqlalchemy.engine import Engine
from sqlmodel import Session
from starlette.concurrency import run_in_threadpool

from chatrelay import crud
from chatrelay.models import ChatMessage
from chatrelay.schemas import StoredMessage
from chatrelay.streaming.events import Usage


class ConversationStore(Protocol):
    async def create_message(self, message: StoredMessage) -> None: ...

    async def update_message(
        self,
        message_id: str,
        *,
        content: Optional[str] = None,
        state: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None: ...

    async def list_messages(self, conversation_id: str) -> List[StoredMessage]: ...

    async def create_variation(self, parent_id: str, variation: StoredMessage) -> None: ...


def _aware(value: datetime) -> datetime:
    # SQLite hands datetimes back without tzinfo
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def to_stored(row: ChatMessage) -> StoredMessage:
    usage = None
    if row.total_tokens is not None:
        usage = Usage(
            input_tokens=row.input_tokens or 0,
            output_tokens=row.output_tokens or 0,
            total_tokens=row.total_tokens,
        )
    return StoredMessage(
        id=row.id,
        conversation_id=row.conversation_id,
        role=row.role,
        content=row.content,
        created_at=_aware(row.created_at),
        provider=row.provider,
        model=row.model,
        state=row.state,
        error=row.error,
        usage=usage,
        elapsed_ms=row.elapsed_ms,
    )


class SqlConversationStore:
    """SQLModel-backed store; sync sessions run in the threadpool."""

    def __init__(self, engine: Engine, api_key_hash: Optional[str] = None) -> None:
        self._engine = engine
        self._api_key_hash = api_key_hash

    def _create(self, message: StoredMessage) -> None:
        with Session(self._engine) as session:
            crud.upsert_chat_message(session=session, message=message, api_key_hash=self._api_key_hash)

    def _update(self, message_id: str, **fields) -> None:
        with Session(self._engine) as session:
            crud.update_chat_message(session=session, message_id=message_id, **fields)

    def _list(self, conversation_id: str) -> List[StoredMessage]:
        with Session(self._engine) as session:
            rows = crud.get_chat_messages(session=session, conversation_id=conversation_id)
            return [to_stored(row) for row in rows]

    def _variation(self, parent_id: str, variation: StoredMessage) -> None:
        with Session(self._engine) as session:
            crud.create_message_variation(
                session=session,
                variation_id=variation.id,
                message_id=parent_id,
                content=variation.content,
                provider=variation.provider,
                model=variation.model,
            )

    async def create_message(self, message: StoredMessage) -> None:
        await run_in_threadpool(self._create, message)

    async def update_message(self, message_id, *, content=None, state=None, error=None) -> None:
        await run_in_threadpool(self._update, message_id, content=content, state=state, error=error)

    async def list_messages(self, conversation_id: str) -> List[StoredMessage]:
        return await run_in_threadpool(self._list, conversation_id)

    async def create_variation(self, parent_id: str, variation: StoredMessage) -> None:
        await run_in_threadpool(self._variation, parent_id, variation)


class InMemoryConversationStore:
    """Per-process store, used for guest sessions and tests."""

    def __init__(self) -> None:
        self._messages: Dict[str, StoredMessage] = {}
        self._variations: Dict[str, List[StoredMessage]] = {}
        self._lock = asyncio.Lock()

    async def create_message(self, message: StoredMessage) -> None:
        async with self._lock:
            existing = self._messages.get(message.id)
            if existing is not None:
                # Keep the original creation time so ordering stays stable
                message = message.model_copy(update={"created_at": existing.created_at})
            self._messages[message.id] = message

    async def update_message(self, message_id, *, content=None, state=None, error=None) -> None:
        async with self._lock:
            existing = self._messages.get(message_id)
            if existing is None:
                return
            update = {k: v for k, v in {"content": content, "state": state, "error": error}.items() if v is not None}
            self._messages[message_id] = existing.model_copy(update=update)

    async def list_messages(self, conversation_id: str) -> List[StoredMessage]:
        rows = [m for m in self._messages.values() if m.conversation_id == conversation_id]
        return sorted(rows, key=lambda m: m.created_at)

    async def create_variation(self, parent_id: str, variation: StoredMessage) -> None:
        async with self._lock:
            variations = self._variations.setdefault(parent_id, [])
            if any(v.id == variation.id for v in variations):
                return
            variations.append(variation.model_copy(update={"parent_id": parent_id}))

    def variations(self, parent_id: str) -> List[StoredMessage]:
        return list(self._variations.get(parent_id, []))

    def count(self) -> int:
        return len(self._messages)
