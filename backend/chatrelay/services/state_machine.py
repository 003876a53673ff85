"""Message lifecycle states and the transitions allowed between them."""
import asyncio
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional, Union

import structlog
from cachetools import TTLCache

from chatrelay.core.config import settings
from chatrelay.models import utcnow
from chatrelay.schemas import StoredMessage
from chatrelay.streaming.events import Usage

logger = structlog.get_logger()


@dataclass(frozen=True)
class Idle:
    name = "idle"


@dataclass(frozen=True)
class Streaming:
    content: str = ""
    name = "streaming"


@dataclass(frozen=True)
class Completed:
    usage: Optional[Usage] = None
    name = "completed"


@dataclass(frozen=True)
class Error:
    message: str
    retryable: bool = True
    name = "error"


@dataclass(frozen=True)
class Cancelled:
    partial_content: str = ""
    name = "cancelled"


MessageState = Union[Idle, Streaming, Completed, Error, Cancelled]

TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "idle": frozenset({"streaming"}),
    "streaming": frozenset({"completed", "error", "cancelled"}),
    "error": frozenset({"streaming"}),
    "cancelled": frozenset({"streaming"}),
    "completed": frozenset({"error"}),
}


def can_transition(current: MessageState, new: MessageState) -> bool:
    return new.name in TRANSITIONS[current.name]


@dataclass
class MessageRecord:
    id: str
    conversation_id: str
    role: str = "assistant"
    content: str = ""
    created_at: datetime = field(default_factory=utcnow)
    provider: Optional[str] = None
    model: Optional[str] = None
    usage: Optional[Usage] = None
    state: MessageState = field(default_factory=Idle)
    parent_id: Optional[str] = None

    def to_stored(self, elapsed_ms: Optional[int] = None) -> StoredMessage:
        error = self.state.message if isinstance(self.state, Error) else None
        return StoredMessage(
            id=self.id,
            conversation_id=self.conversation_id,
            role=self.role,
            content=self.content,
            created_at=self.created_at,
            provider=self.provider,
            model=self.model,
            state=self.state.name,
            error=error,
            usage=self.usage,
            elapsed_ms=elapsed_ms,
            parent_id=self.parent_id,
        )


@dataclass(frozen=True)
class LifecycleEvent:
    kind: str  # delta, state, slow
    message_id: str
    conversation_id: str
    state: Optional[str] = None
    text: str = ""
    error: Optional[str] = None
    retryable: Optional[bool] = None

    def to_dict(self) -> dict:
        data = {"kind": self.kind, "message_id": self.message_id, "conversation_id": self.conversation_id}
        if self.state is not None:
            data["state"] = self.state
        if self.text:
            data["text"] = self.text
        if self.error is not None:
            data["error"] = self.error
            data["retryable"] = self.retryable
        return data


TERMINAL = (Completed, Error, Cancelled)


class MessageStateMachine:
    """
    Owns every in-flight message record.

    Idle and streaming records live until they finish. Finished records move to
    a bounded TTL cache so they stay readable and retryable for a while without
    growing for the life of the process.
    """

    def __init__(
        self,
        subscriber_buffer: int = 1000,
        *,
        finished_ttl: Optional[float] = None,
        finished_limit: Optional[int] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, MessageRecord] = {}
        self._finished: TTLCache = TTLCache(
            maxsize=finished_limit or settings.FINISHED_GENERATION_LIMIT,
            ttl=finished_ttl or settings.FINISHED_GENERATION_TTL_SECONDS,
        )
        self._subscribers: List[tuple[Optional[str], asyncio.Queue]] = []
        self._subscriber_buffer = subscriber_buffer

    # -- records ---------------------------------------------------------

    def _lookup(self, message_id: str) -> Optional[MessageRecord]:
        # Caller holds the lock
        record = self._records.get(message_id)
        return record if record is not None else self._finished.get(message_id)

    def create_message(
        self,
        message_id: str,
        conversation_id: str,
        *,
        role: str = "assistant",
        provider: Optional[str] = None,
        model: Optional[str] = None,
        parent_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> MessageRecord:
        with self._lock:
            existing = self._lookup(message_id)
            if existing is not None:
                return existing
            record = MessageRecord(
                id=message_id,
                conversation_id=conversation_id,
                role=role,
                provider=provider,
                model=model,
                parent_id=parent_id,
                created_at=created_at or utcnow(),
            )
            self._records[message_id] = record
        logger.debug("message_created", message_id=message_id, conversation_id=conversation_id)
        return record

    def get_message(self, message_id: str) -> Optional[MessageRecord]:
        with self._lock:
            record = self._lookup(message_id)
            return replace(record) if record is not None else None

    def get_state(self, message_id: str) -> Optional[MessageState]:
        with self._lock:
            record = self._lookup(message_id)
            return record.state if record is not None else None

    def remove(self, message_id: str) -> None:
        with self._lock:
            self._records.pop(message_id, None)
            self._finished.pop(message_id, None)

    def update_target(self, message_id: str, *, provider: Optional[str], model: Optional[str]) -> None:
        with self._lock:
            record = self._lookup(message_id)
            if record is not None:
                record.provider = provider
                record.model = model

    def list_active_streaming(self, conversation_id: Optional[str] = None) -> List[MessageRecord]:
        with self._lock:
            return [
                replace(r)
                for r in self._records.values()
                if isinstance(r.state, Streaming)
                and (conversation_id is None or r.conversation_id == conversation_id)
            ]

    # -- transitions -----------------------------------------------------

    def set_state(self, message_id: str, new_state: MessageState) -> bool:
        with self._lock:
            record = self._lookup(message_id)
            if record is None:
                logger.warning("state_change_unknown_message", message_id=message_id, to=new_state.name)
                return False
            if not can_transition(record.state, new_state):
                logger.warning(
                    "illegal_state_transition",
                    message_id=message_id,
                    from_state=record.state.name,
                    to=new_state.name,
                )
                return False
            if isinstance(new_state, Streaming):
                busy = [
                    r.id
                    for r in self._records.values()
                    if r.conversation_id == record.conversation_id
                    and r.id != message_id
                    and isinstance(r.state, Streaming)
                ]
                if busy:
                    logger.warning(
                        "conversation_already_streaming",
                        message_id=message_id,
                        conversation_id=record.conversation_id,
                        streaming=busy,
                    )
                    return False
                record.content = new_state.content
            elif isinstance(new_state, Completed):
                record.usage = new_state.usage
            elif isinstance(new_state, Cancelled):
                record.content = new_state.partial_content
            previous = record.state
            record.state = new_state
            conversation_id = record.conversation_id
            if isinstance(new_state, TERMINAL):
                self._records.pop(message_id, None)
                self._finished[message_id] = record
            else:
                self._finished.pop(message_id, None)
                self._records[message_id] = record

        logger.info("message_state_changed", message_id=message_id, from_state=previous.name, to=new_state.name)
        self._publish(
            LifecycleEvent(
                kind="state",
                message_id=message_id,
                conversation_id=conversation_id,
                state=new_state.name,
                error=new_state.message if isinstance(new_state, Error) else None,
                retryable=new_state.retryable if isinstance(new_state, Error) else None,
            )
        )
        return True

    def append_delta(self, message_id: str, text: str) -> bool:
        with self._lock:
            record = self._records.get(message_id)
            if record is None or not isinstance(record.state, Streaming):
                return False
            record.content += text
            record.state = Streaming(content=record.content)
            conversation_id = record.conversation_id
        self._publish(LifecycleEvent(kind="delta", message_id=message_id, conversation_id=conversation_id, text=text))
        return True

    # -- subscribers -----------------------------------------------------

    def subscribe(self, conversation_id: Optional[str] = None) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._subscriber_buffer)
        with self._lock:
            self._subscribers.append((conversation_id, queue))
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        with self._lock:
            self._subscribers = [(c, q) for c, q in self._subscribers if q is not queue]

    def notify(self, event: LifecycleEvent) -> None:
        self._publish(event)

    def _publish(self, event: LifecycleEvent) -> None:
        with self._lock:
            targets = [q for c, q in self._subscribers if c is None or c == event.conversation_id]
        for queue in targets:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("subscriber_queue_full", conversation_id=event.conversation_id, kind=event.kind)
