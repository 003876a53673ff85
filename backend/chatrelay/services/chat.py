"""Drives a generation from user message to stored assistant reply."""
import asyncio
import time
from contextlib import aclosing, suppress
from datetime import timedelta
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set, Tuple

import structlog
from cachetools import TTLCache

from chatrelay.core.config import settings
from chatrelay.errors import (
    ConcurrencyViolationError,
    ConfigurationError,
    DeliveryDroppedError,
    InvalidRequestError,
    MessageNotFoundError,
    PersistenceError,
)
from chatrelay.models import new_id, utcnow
from chatrelay.providers.base import ChatMessage, NormalizedChatRequest
from chatrelay.schemas import GenerationAccepted, StoredMessage
from chatrelay.services.credentials import CredentialContext
from chatrelay.services.delivery_queue import DeadLetter, DeliveryQueue
from chatrelay.services.gateway import ChatGateway
from chatrelay.services.state_machine import (
    Cancelled,
    Completed,
    Error,
    MessageRecord,
    MessageStateMachine,
    Streaming,
)
from chatrelay.services.store import ConversationStore
from chatrelay.streaming.events import DeltaEvent
from chatrelay.utils.usage_callback import send_usage, usage_payload

logger = structlog.get_logger()

OnComplete = Callable[[MessageRecord], Awaitable[None]]
UsageReporter = Callable[[dict], Awaitable[None]]


def history_from(messages: List[StoredMessage]) -> List[ChatMessage]:
    """Messages worth sending upstream: user turns and finished assistant turns."""
    history = []
    for m in messages:
        if m.role not in ("user", "assistant", "system") or not m.content:
            continue
        if m.role == "assistant" and m.state != "completed":
            continue
        history.append(ChatMessage(role=m.role, content=m.content))
    return history


class ChatService:
    def __init__(
        self,
        gateway: ChatGateway,
        machine: MessageStateMachine,
        store: ConversationStore,
        queue: Optional[DeliveryQueue] = None,
        *,
        usage_reporter: Optional[UsageReporter] = None,
    ) -> None:
        self._gateway = gateway
        self._machine = machine
        self._store = store
        self._queue = queue
        self._usage_reporter = usage_reporter or send_usage
        # conversation id -> (message id, task)
        self._active: Dict[str, Tuple[str, asyncio.Task]] = {}
        # Kept for retries of failed or cancelled generations
        self._requests: TTLCache = TTLCache(
            maxsize=settings.FINISHED_GENERATION_LIMIT, ttl=settings.FINISHED_GENERATION_TTL_SECONDS
        )
        # Only the caller identity outlives the stream, for usage reporting
        self._identities: Dict[str, Optional[str]] = {}
        self._writes: Set[asyncio.Task] = set()
        if queue is not None:
            queue.bind(self.write, self.on_delivery_dropped)

    @property
    def machine(self) -> MessageStateMachine:
        return self._machine

    @property
    def store(self) -> ConversationStore:
        return self._store

    @property
    def gateway(self) -> ChatGateway:
        return self._gateway

    # -- queries ---------------------------------------------------------

    def is_busy(self, conversation_id: str) -> bool:
        active = self._active.get(conversation_id)
        if active is not None and not active[1].done():
            return True
        return bool(self._machine.list_active_streaming(conversation_id))

    async def wait(self, conversation_id: str) -> None:
        """Block until the conversation's active generation has finished."""
        active = self._active.get(conversation_id)
        if active is not None:
            with suppress(asyncio.CancelledError):
                await asyncio.shield(active[1])

    # -- operations ------------------------------------------------------

    async def submit(
        self,
        conversation_id: str,
        text: str,
        ctx: CredentialContext,
        *,
        provider: str,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        message_id: Optional[str] = None,
        user_message_id: Optional[str] = None,
    ) -> GenerationAccepted:
        if not text or not text.strip():
            raise InvalidRequestError("Message content must not be empty")
        if self.is_busy(conversation_id):
            raise ConcurrencyViolationError(f"Conversation {conversation_id} already has an active generation")

        history = history_from(await self._store.list_messages(conversation_id))

        _, resolved_model = self._gateway.registry.resolve(provider, model)
        request = NormalizedChatRequest(
            provider=provider,
            model=resolved_model,
            messages=history + [ChatMessage(role="user", content=text)],
            temperature=temperature if temperature is not None else settings.DEFAULT_TEMPERATURE,
            max_tokens=max_tokens or settings.DEFAULT_MAX_TOKENS,
            stream=True,
        )
        # Configuration errors surface here, before anything is stored
        await self._gateway.prepare(request, ctx)

        user = StoredMessage(
            id=user_message_id or new_id(),
            conversation_id=conversation_id,
            role="user",
            content=text,
            created_at=utcnow(),
        )
        await self.persist(user)

        record = self._machine.create_message(
            message_id or new_id(),
            conversation_id,
            provider=provider,
            model=resolved_model,
            created_at=user.created_at + timedelta(microseconds=1),
        )
        logger.info(
            "chat_submit",
            conversation_id=conversation_id,
            message_id=record.id,
            provider=provider,
            model=resolved_model,
            history=len(history),
            length=len(text),
        )
        try:
            await self.start(record.id, request, ctx)
        except (ConfigurationError, ConcurrencyViolationError):
            self._machine.remove(record.id)
            raise
        return GenerationAccepted(
            conversation_id=conversation_id,
            message_id=record.id,
            user_message_id=user.id,
            state="streaming",
        )

    async def retry(
        self,
        message_id: str,
        ctx: CredentialContext,
        *,
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ) -> GenerationAccepted:
        """Re-run a failed or cancelled generation under the same message id."""
        record = self._machine.get_message(message_id)
        if record is None:
            raise MessageNotFoundError(message_id)
        if not isinstance(record.state, (Error, Cancelled)):
            raise ConcurrencyViolationError(
                f"Message {message_id} is {record.state.name}; only failed or cancelled messages can be retried"
            )
        if self.is_busy(record.conversation_id):
            raise ConcurrencyViolationError(
                f"Conversation {record.conversation_id} already has an active generation"
            )

        request = self._requests.get(message_id)
        if request is None:
            request = await self._rebuild_request(record)
        if provider or model:
            target = provider or request.provider
            # A new provider without a model falls back to that provider's default
            _, resolved = self._gateway.registry.resolve(target, model or (None if provider else request.model))
            request = request.model_copy(update={"provider": target, "model": resolved})
            self._machine.update_target(message_id, provider=target, model=resolved)

        logger.info("chat_retry", message_id=message_id, previous_state=record.state.name)
        await self.start(message_id, request, ctx)
        return GenerationAccepted(
            conversation_id=record.conversation_id,
            message_id=message_id,
            parent_id=record.parent_id,
            state="streaming",
        )

    async def _rebuild_request(self, record: MessageRecord) -> NormalizedChatRequest:
        messages = await self._store.list_messages(record.conversation_id)
        earlier = [m for m in messages if m.created_at < record.created_at and m.id != record.id]
        history = history_from(earlier)
        if not history or history[-1].role != "user":
            raise InvalidRequestError(f"No user message precedes message {record.id}")
        return NormalizedChatRequest(
            provider=record.provider or "",
            model=record.model,
            messages=history,
            temperature=settings.DEFAULT_TEMPERATURE,
            max_tokens=settings.DEFAULT_MAX_TOKENS,
            stream=True,
        )

    async def start(
        self,
        message_id: str,
        request: NormalizedChatRequest,
        ctx: CredentialContext,
        *,
        on_complete: Optional[OnComplete] = None,
    ) -> asyncio.Task:
        """Open the gateway stream for an existing record and consume it in the background."""
        record = self._machine.get_message(message_id)
        if record is None:
            raise MessageNotFoundError(message_id)

        events = await self._gateway.open_stream(request, ctx)
        if not self._machine.set_state(message_id, Streaming()):
            await events.aclose()
            raise ConcurrencyViolationError(
                f"Message {message_id} cannot start streaming from {self._machine.get_state(message_id).name}"
            )

        self._requests[message_id] = request
        self._identities[message_id] = ctx.identity
        task = asyncio.create_task(self._consume(message_id, events, on_complete))
        self._active[record.conversation_id] = (message_id, task)
        task.add_done_callback(lambda t, cid=record.conversation_id: self._release(cid, t))
        return task

    def _release(self, conversation_id: str, task: asyncio.Task) -> None:
        active = self._active.get(conversation_id)
        if active is not None and active[1] is task:
            self._active.pop(conversation_id, None)

    async def _consume(
        self,
        message_id: str,
        events: AsyncIterator[DeltaEvent],
        on_complete: Optional[OnComplete],
    ) -> None:
        started = time.perf_counter()
        try:
            async with aclosing(events) as stream:
                async for event in stream:
                    if event.kind == "delta":
                        self._machine.append_delta(message_id, event.text)
                    elif event.kind == "done":
                        record = self._machine.get_message(message_id)
                        if record is not None and not record.content:
                            self._machine.set_state(message_id, Error("Empty response from provider", retryable=True))
                        else:
                            self._machine.set_state(message_id, Completed(usage=event.usage))
                    else:
                        err = event.error
                        self._machine.set_state(
                            message_id,
                            Error(str(err), retryable=bool(getattr(err, "retryable", True))),
                        )
        except asyncio.CancelledError:
            # cancel() has usually moved the record already; shutdown has not
            record = self._machine.get_message(message_id)
            if record is not None and isinstance(record.state, Streaming):
                self._machine.set_state(message_id, Cancelled(partial_content=record.content))
            await self._finalize(message_id, started, None)
            raise
        except Exception as e:
            logger.error(
                "generation_failed",
                message_id=message_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            if isinstance(self._machine.get_state(message_id), Streaming):
                self._machine.set_state(message_id, Error(f"Generation failed: {e}", retryable=True))

        if isinstance(self._machine.get_state(message_id), Streaming):
            self._machine.set_state(message_id, Error("Stream ended without a terminal event", retryable=True))
        await self._finalize(message_id, started, on_complete)

    async def _finalize(self, message_id: str, started: float, on_complete: Optional[OnComplete]) -> None:
        identity = self._identities.pop(message_id, None)
        record = self._machine.get_message(message_id)
        if record is None:
            return
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "generation_finished",
            message_id=message_id,
            conversation_id=record.conversation_id,
            state=record.state.name,
            length=len(record.content),
            elapsed_ms=elapsed_ms,
        )
        # Variations are only kept once they completed
        if record.parent_id is None or isinstance(record.state, Completed):
            # The write outlives a cancel that arrives while it is in flight
            write = asyncio.ensure_future(self.persist(record.to_stored(elapsed_ms=elapsed_ms)))
            self._writes.add(write)
            write.add_done_callback(self._writes.discard)
            await asyncio.shield(write)
        if not isinstance(record.state, Completed):
            return
        if on_complete is not None:
            await on_complete(record)
        await self._usage_reporter(
            usage_payload(
                message_id=message_id,
                conversation_id=record.conversation_id,
                provider=record.provider,
                model=record.model,
                usage=record.usage,
                elapsed_ms=elapsed_ms,
                identity=identity,
            )
        )

    async def cancel(self, conversation_id: str) -> Optional[str]:
        """Cancel the active generation in a conversation. Returns the cancelled message id."""
        cancelled_id = None
        for record in self._machine.list_active_streaming(conversation_id):
            if self._machine.set_state(record.id, Cancelled(partial_content=record.content)):
                cancelled_id = record.id
        if cancelled_id is None:
            # A generation past streaming is left to store its result
            return None

        active = self._active.get(conversation_id)
        if active is not None and not active[1].done():
            task = active[1]
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        logger.info("generation_cancelled", conversation_id=conversation_id, message_id=cancelled_id)
        return cancelled_id

    # -- persistence -----------------------------------------------------

    async def write(self, message: StoredMessage) -> None:
        """Direct store write; also the delivery queue's deliver callback."""
        if message.parent_id:
            await self._store.create_variation(message.parent_id, message)
        else:
            await self._store.create_message(message)

    async def persist(self, message: StoredMessage) -> None:
        try:
            await self.write(message)
        except Exception as e:
            if self._queue is None:
                raise PersistenceError(f"Could not store message {message.id}: {e}") from e
            logger.warning("store_write_failed", message_id=message.id, error=str(e))
            await self._queue.enqueue(message)

    async def on_delivery_dropped(self, letter: DeadLetter) -> None:
        record = self._machine.get_message(letter.message_id)
        if record is None or not isinstance(record.state, Completed):
            return
        error = DeliveryDroppedError(letter.entry_id, letter.message_id, letter.reason)
        self._machine.set_state(letter.message_id, Error(error.message, retryable=False))
