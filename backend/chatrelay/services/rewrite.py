import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

import structlog
from cachetools import TTLCache

from chatrelay.core.config import settings
from chatrelay.errors import ConcurrencyViolationError, InvalidRequestError, MessageNotFoundError
from chatrelay.models import new_id
from chatrelay.observability import REWRITE_SLOW
from chatrelay.providers.base import NormalizedChatRequest
from chatrelay.schemas import GenerationAccepted, RewriteStatusPublic, StoredMessage
from chatrelay.services.chat import ChatService, history_from
from chatrelay.services.credentials import CredentialContext
from chatrelay.services.state_machine import Error, LifecycleEvent, MessageRecord

logger = structlog.get_logger()


@dataclass
class RewriteRequest:
    conversation_id: str
    message_id: str
    generation_id: Optional[str] = None
    started_at: float = 0.0
    deadline: float = 0.0
    task: Optional[asyncio.Task] = None
    watchdog: Optional[asyncio.Task] = None
    timed_out: bool = False

    @property
    def running(self) -> bool:
        return self.task is None or not self.task.done()


class RewriteCoordinator:
    """At most one rewrite per conversation; the target message is never moved back to streaming."""

    def __init__(
        self,
        chat: ChatService,
        *,
        timeout_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._chat = chat
        self._timeout = timeout_seconds or settings.REWRITE_TIMEOUT_SECONDS
        self._sleep = sleep
        self._pending: Dict[str, RewriteRequest] = {}
        self._finished: TTLCache = TTLCache(
            maxsize=settings.FINISHED_GENERATION_LIMIT, ttl=settings.FINISHED_GENERATION_TTL_SECONDS
        )

    def is_rewriting(self, conversation_id: str) -> bool:
        pending = self._pending.get(conversation_id)
        return pending is not None and pending.running

    async def rewrite(
        self,
        conversation_id: str,
        message_id: str,
        ctx: CredentialContext,
        *,
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ) -> GenerationAccepted:
        if self.is_rewriting(conversation_id):
            raise ConcurrencyViolationError(f"A rewrite is already running in conversation {conversation_id}")
        if self._chat.is_busy(conversation_id):
            raise ConcurrencyViolationError(f"Conversation {conversation_id} already has an active generation")

        # Claim the conversation before the first await
        pending = RewriteRequest(conversation_id=conversation_id, message_id=message_id)
        self._pending[conversation_id] = pending
        try:
            target, request = await self._prepare(conversation_id, message_id, ctx, provider, model)
            pending.generation_id = new_id()
            self._chat.machine.create_message(
                pending.generation_id,
                conversation_id,
                provider=request.provider,
                model=request.model,
                parent_id=message_id,
                created_at=target.created_at,
            )
            pending.started_at = time.monotonic()
            pending.deadline = pending.started_at + self._timeout
            pending.task = await self._chat.start(
                pending.generation_id, request, ctx, on_complete=self._replace_content(target)
            )
        except BaseException:
            self._pending.pop(conversation_id, None)
            if pending.generation_id:
                self._chat.machine.remove(pending.generation_id)
            raise

        pending.watchdog = asyncio.create_task(self._watch(pending))
        pending.task.add_done_callback(lambda _t, p=pending: self._done(p))
        logger.info(
            "rewrite_started",
            conversation_id=conversation_id,
            message_id=message_id,
            generation_id=pending.generation_id,
            provider=request.provider,
            model=request.model,
        )
        return GenerationAccepted(
            conversation_id=conversation_id,
            message_id=pending.generation_id,
            parent_id=message_id,
            state="streaming",
        )

    async def _prepare(
        self,
        conversation_id: str,
        message_id: str,
        ctx: CredentialContext,
        provider: Optional[str],
        model: Optional[str],
    ) -> tuple[StoredMessage, NormalizedChatRequest]:
        messages = sorted(await self._chat.store.list_messages(conversation_id), key=lambda m: m.created_at)
        target = next((m for m in messages if m.id == message_id), None)
        if target is None:
            raise MessageNotFoundError(message_id)
        if target.role != "assistant":
            raise InvalidRequestError("Only assistant messages can be rewritten")

        before = [m for m in messages if m.created_at < target.created_at]
        last_user = max(
            (i for i, m in enumerate(before) if m.role == "user"),
            default=None,
        )
        if last_user is None:
            raise InvalidRequestError(f"No user message precedes message {message_id}")

        target_provider = provider or target.provider
        if not target_provider:
            raise InvalidRequestError(f"No provider recorded for message {message_id}")
        requested_model = model or (target.model if target_provider == target.provider else None)
        _, resolved = self._chat.gateway.registry.resolve(target_provider, requested_model)

        request = NormalizedChatRequest(
            provider=target_provider,
            model=resolved,
            messages=history_from(before[: last_user + 1]),
            temperature=settings.DEFAULT_TEMPERATURE,
            max_tokens=settings.DEFAULT_MAX_TOKENS,
            stream=True,
        )
        await self._chat.gateway.prepare(request, ctx)
        return target, request

    def _replace_content(self, target: StoredMessage):
        async def apply(record: MessageRecord) -> None:
            await self._chat.persist(
                target.model_copy(
                    update={
                        "content": record.content,
                        "usage": record.usage,
                        "provider": record.provider,
                        "model": record.model,
                        "state": "completed",
                        "error": None,
                    }
                )
            )
            logger.info("rewrite_applied", message_id=target.id, generation_id=record.id, length=len(record.content))

        return apply

    async def _watch(self, pending: RewriteRequest) -> None:
        await self._sleep(self._timeout)
        if not pending.running:
            return
        pending.timed_out = True
        REWRITE_SLOW.inc()
        logger.warning(
            "rewrite_slow",
            conversation_id=pending.conversation_id,
            generation_id=pending.generation_id,
            timeout_seconds=self._timeout,
        )
        self._chat.machine.notify(
            LifecycleEvent(
                kind="slow",
                message_id=pending.generation_id or pending.message_id,
                conversation_id=pending.conversation_id,
                state="streaming",
            )
        )

    def _done(self, pending: RewriteRequest) -> None:
        if self._pending.get(pending.conversation_id) is pending:
            self._pending.pop(pending.conversation_id, None)
        if pending.watchdog is not None and not pending.watchdog.done():
            pending.watchdog.cancel()
        self._finished[pending.conversation_id] = pending
        state = self._chat.machine.get_state(pending.generation_id) if pending.generation_id else None
        logger.info(
            "rewrite_finished",
            conversation_id=pending.conversation_id,
            generation_id=pending.generation_id,
            state=state.name if state else None,
        )

    async def cancel(self, conversation_id: str) -> Optional[str]:
        pending = self._pending.get(conversation_id)
        if pending is None or not pending.running:
            return None
        await self._chat.cancel(conversation_id)
        return pending.generation_id

    def status(self, conversation_id: str) -> RewriteStatusPublic:
        pending = self._pending.get(conversation_id)
        if pending is not None and pending.running:
            return RewriteStatusPublic(
                conversation_id=conversation_id,
                message_id=pending.message_id,
                generation_id=pending.generation_id,
                is_rewriting=True,
                timed_out=pending.timed_out,
                can_cancel=pending.task is not None,
            )
        last = self._finished.get(conversation_id)
        if last is None:
            return RewriteStatusPublic(conversation_id=conversation_id)
        state = self._chat.machine.get_state(last.generation_id) if last.generation_id else None
        return RewriteStatusPublic(
            conversation_id=conversation_id,
            message_id=last.message_id,
            generation_id=last.generation_id,
            timed_out=last.timed_out,
            error=state.message if isinstance(state, Error) else None,
        )
