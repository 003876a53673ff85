"""Durable FIFO queue for conversation store writes that failed."""
import asyncio
import time
from collections import deque
from contextlib import suppress
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Deque, List, Optional, Protocol

import structlog
from sqlalchemy.engine import Engine
from sqlmodel import Session
from starlette.concurrency import run_in_threadpool

from chatrelay import crud
from chatrelay.core.config import settings
from chatrelay.models import QueuedDeliveryRecord, new_id
from chatrelay.observability import DELIVERY_ATTEMPTS, DELIVERY_DROPS, QUEUE_DEPTH
from chatrelay.schemas import QueueStatusPublic, StoredMessage
from chatrelay.services.retry import RetryPolicy

logger = structlog.get_logger()


@dataclass
class QueuedDelivery:
    id: str
    payload: StoredMessage
    enqueued_at: float
    retry_count: int = 0
    max_retries: int = 3
    revision: int = 0

    @property
    def message_id(self) -> str:
        return self.payload.id


@dataclass(frozen=True)
class DeadLetter:
    entry_id: str
    message_id: str
    reason: str
    retry_count: int
    dropped_at: float
    payload: StoredMessage


class QueueStore(Protocol):
    async def append(self, entry: QueuedDelivery) -> None: ...

    async def peek_head(self) -> Optional[QueuedDelivery]: ...

    async def update(self, entry: QueuedDelivery) -> None: ...

    async def remove(self, entry_id: str) -> None: ...

    async def list_all(self) -> List[QueuedDelivery]: ...

    async def find_by_message(self, message_id: str) -> Optional[QueuedDelivery]: ...

    async def count(self) -> int: ...


class InMemoryQueueStore:
    def __init__(self) -> None:
        self._entries: List[QueuedDelivery] = []

    # Entries are copied in and out so callers never share a mutable entry
    async def append(self, entry: QueuedDelivery) -> None:
        self._entries.append(replace(entry))

    async def peek_head(self) -> Optional[QueuedDelivery]:
        return replace(self._entries[0]) if self._entries else None

    async def update(self, entry: QueuedDelivery) -> None:
        for i, existing in enumerate(self._entries):
            if existing.id == entry.id:
                self._entries[i] = replace(entry)
                return

    async def remove(self, entry_id: str) -> None:
        self._entries = [e for e in self._entries if e.id != entry_id]

    async def list_all(self) -> List[QueuedDelivery]:
        return [replace(e) for e in self._entries]

    async def find_by_message(self, message_id: str) -> Optional[QueuedDelivery]:
        found = next((e for e in self._entries if e.message_id == message_id), None)
        return replace(found) if found is not None else None

    async def count(self) -> int:
        return len(self._entries)


def _to_entry(record: QueuedDeliveryRecord) -> QueuedDelivery:
    return QueuedDelivery(
        id=record.entry_id,
        payload=StoredMessage.model_validate(record.payload),
        enqueued_at=record.enqueued_at,
        retry_count=record.retry_count,
        max_retries=record.max_retries,
        revision=record.revision,
    )


class SqlQueueStore:
    """Queue entries in a local SQLite table so they survive a restart."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def _append(self, entry: QueuedDelivery) -> None:
        with Session(self._engine) as session:
            crud.add_queued_delivery(
                session=session,
                record=QueuedDeliveryRecord(
                    entry_id=entry.id,
                    message_id=entry.message_id,
                    payload=entry.payload.model_dump(mode="json"),
                    enqueued_at=entry.enqueued_at,
                    retry_count=entry.retry_count,
                    max_retries=entry.max_retries,
                    revision=entry.revision,
                ),
            )

    def _peek(self) -> Optional[QueuedDelivery]:
        with Session(self._engine) as session:
            record = crud.get_queue_head(session=session)
            return _to_entry(record) if record else None

    def _update(self, entry: QueuedDelivery) -> None:
        with Session(self._engine) as session:
            record = crud.get_queued_delivery(session=session, entry_id=entry.id)
            if record is None:
                return
            record.payload = entry.payload.model_dump(mode="json")
            record.retry_count = entry.retry_count
            record.max_retries = entry.max_retries
            record.revision = entry.revision
            session.add(record)
            session.commit()

    def _remove(self, entry_id: str) -> None:
        with Session(self._engine) as session:
            crud.delete_queued_delivery(session=session, entry_id=entry_id)

    def _list(self) -> List[QueuedDelivery]:
        with Session(self._engine) as session:
            return [_to_entry(r) for r in crud.list_queued_deliveries(session=session)]

    def _find(self, message_id: str) -> Optional[QueuedDelivery]:
        with Session(self._engine) as session:
            record = crud.find_queued_delivery_by_message(session=session, message_id=message_id)
            return _to_entry(record) if record else None

    def _count(self) -> int:
        with Session(self._engine) as session:
            return crud.count_queued_deliveries(session=session)

    async def append(self, entry: QueuedDelivery) -> None:
        await run_in_threadpool(self._append, entry)

    async def peek_head(self) -> Optional[QueuedDelivery]:
        return await run_in_threadpool(self._peek)

    async def update(self, entry: QueuedDelivery) -> None:
        await run_in_threadpool(self._update, entry)

    async def remove(self, entry_id: str) -> None:
        await run_in_threadpool(self._remove, entry_id)

    async def list_all(self) -> List[QueuedDelivery]:
        return await run_in_threadpool(self._list)

    async def find_by_message(self, message_id: str) -> Optional[QueuedDelivery]:
        return await run_in_threadpool(self._find, message_id)

    async def count(self) -> int:
        return await run_in_threadpool(self._count)


Deliver = Callable[[StoredMessage], Awaitable[None]]
OnDropped = Callable[[DeadLetter], Awaitable[None]]


class DeliveryQueue:
    def __init__(
        self,
        store: QueueStore,
        deliver: Optional[Deliver] = None,
        *,
        policy: Optional[RetryPolicy] = None,
        max_size: Optional[int] = None,
        tick_seconds: Optional[float] = None,
        dead_letter_limit: Optional[int] = None,
        on_dropped: Optional[OnDropped] = None,
        online: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._deliver = deliver
        self._policy = policy or RetryPolicy.from_settings()
        self._max_size = max_size or settings.DELIVERY_MAX_QUEUE_SIZE
        self._tick_seconds = tick_seconds or settings.DELIVERY_TICK_SECONDS
        self._dead_letters: Deque[DeadLetter] = deque(
            maxlen=dead_letter_limit or settings.DELIVERY_DEAD_LETTER_LIMIT
        )
        self._on_dropped = on_dropped
        self._online = online
        self._sleep = sleep
        self._clock = clock
        self._store_lock = asyncio.Lock()
        self._drain_lock = asyncio.Lock()
        self._processing = False
        self._worker: Optional[asyncio.Task] = None
        self._pending: Optional[asyncio.Task] = None

    @property
    def online(self) -> bool:
        return self._online

    @property
    def is_processing(self) -> bool:
        return self._processing

    def bind(self, deliver: Deliver, on_dropped: Optional[OnDropped] = None) -> None:
        """Attach the store write and drop handler after construction."""
        self._deliver = deliver
        if on_dropped is not None:
            self._on_dropped = on_dropped

    async def enqueue(self, payload: StoredMessage) -> str:
        async with self._store_lock:
            existing = await self._store.find_by_message(payload.id)
            if existing is not None:
                await self._store.update(
                    replace(existing, payload=payload, retry_count=0, revision=existing.revision + 1)
                )
                entry_id = existing.id
                logger.info("delivery_replaced", entry_id=entry_id, message_id=payload.id)
            else:
                if await self._store.count() >= self._max_size:
                    oldest = await self._store.peek_head()
                    if oldest is not None:
                        await self._store.remove(oldest.id)
                        await self._drop(oldest, "evicted")
                entry = QueuedDelivery(
                    id=new_id(),
                    payload=payload,
                    enqueued_at=self._clock(),
                    max_retries=self._policy.max_retries,
                )
                await self._store.append(entry)
                entry_id = entry.id
                logger.info("delivery_enqueued", entry_id=entry_id, message_id=payload.id)
            QUEUE_DEPTH.set(await self._store.count())
        if self._online:
            self._kick()
        return entry_id

    def _kick(self) -> None:
        if self._pending is None or self._pending.done():
            self._pending = asyncio.create_task(self.drain())

    async def drain(self) -> int:
        """Deliver from the head until empty or offline. Returns the number delivered."""
        if self._deliver is None or not self._online or self._drain_lock.locked():
            return 0
        delivered = 0
        async with self._drain_lock:
            self._processing = True
            try:
                while self._online:
                    async with self._store_lock:
                        entry = await self._store.peek_head()
                    if entry is None:
                        break
                    try:
                        await self._deliver(entry.payload)
                    except Exception as e:
                        DELIVERY_ATTEMPTS.labels("failed").inc()
                        if await self._record_failure(entry, e):
                            await self._sleep(self._policy.delay_for(entry.retry_count))
                        continue
                    DELIVERY_ATTEMPTS.labels("delivered").inc()
                    delivered += 1
                    async with self._store_lock:
                        superseded = await self._superseded(entry)
                        if not superseded:
                            await self._store.remove(entry.id)
                    logger.info(
                        "delivery_succeeded",
                        entry_id=entry.id,
                        message_id=entry.message_id,
                        superseded=superseded,
                    )
            finally:
                self._processing = False
                QUEUE_DEPTH.set(await self._store.count())
        return delivered

    async def _superseded(self, entry: QueuedDelivery) -> bool:
        # Caller holds the store lock
        current = await self._store.find_by_message(entry.message_id)
        return current is not None and (current.id != entry.id or current.revision != entry.revision)

    async def _record_failure(self, entry: QueuedDelivery, error: Exception) -> bool:
        """Bump the retry count; returns False when the next attempt should not wait."""
        entry.retry_count += 1
        async with self._store_lock:
            if await self._superseded(entry):
                # A newer payload took this entry's place and starts with a fresh budget
                logger.info("delivery_superseded", entry_id=entry.id, message_id=entry.message_id)
                return False
            if self._policy.should_drop(entry.retry_count, entry.max_retries):
                await self._store.remove(entry.id)
                dropped = True
            else:
                await self._store.update(entry)
                dropped = False
        if dropped:
            await self._drop(entry, "max_retries_exceeded")
            return False
        logger.warning(
            "delivery_failed",
            entry_id=entry.id,
            message_id=entry.message_id,
            retry_count=entry.retry_count,
            delay_seconds=self._policy.delay_for(entry.retry_count),
            error=str(error),
        )
        return True

    async def _drop(self, entry: QueuedDelivery, reason: str) -> None:
        letter = DeadLetter(
            entry_id=entry.id,
            message_id=entry.message_id,
            reason=reason,
            retry_count=entry.retry_count,
            dropped_at=self._clock(),
            payload=entry.payload,
        )
        self._dead_letters.append(letter)
        DELIVERY_DROPS.labels(reason).inc()
        logger.error(
            "delivery_dropped",
            entry_id=entry.id,
            message_id=entry.message_id,
            reason=reason,
            retry_count=entry.retry_count,
        )
        if self._on_dropped is not None:
            await self._on_dropped(letter)

    def set_online(self, online: bool) -> None:
        was_online, self._online = self._online, online
        logger.info("connectivity_changed", online=online)
        if online and not was_online:
            self._kick()

    async def status(self) -> QueueStatusPublic:
        entries = await self._store.list_all()
        return QueueStatusPublic(
            size=len(entries),
            is_processing=self._processing,
            online=self._online,
            oldest_enqueued_at=min((e.enqueued_at for e in entries), default=None),
        )

    async def entries(self) -> List[QueuedDelivery]:
        return await self._store.list_all()

    def dead_letters(self) -> List[DeadLetter]:
        return list(self._dead_letters)

    async def clear(self) -> None:
        async with self._store_lock:
            for entry in await self._store.list_all():
                await self._store.remove(entry.id)
        QUEUE_DEPTH.set(0)
        logger.info("delivery_queue_cleared")

    # -- worker ----------------------------------------------------------

    async def _run(self) -> None:
        while True:
            await self.drain()
            await asyncio.sleep(self._tick_seconds)

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())
            logger.info("delivery_worker_started", tick_seconds=self._tick_seconds)

    async def stop(self) -> None:
        for task in (self._worker, self._pending):
            if task is not None and not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        self._worker = None
        self._pending = None
