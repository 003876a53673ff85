import asyncio

from chatrelay.core.db import init_queue_db, make_engine
from chatrelay.services.delivery_queue import DeliveryQueue, InMemoryQueueStore, SqlQueueStore
from chatrelay.services.retry import RetryPolicy
from chatrelay.tests.utils.messages import stored_message
from chatrelay.tests.utils.utils import until


class Recorder:
    """Deliver callback that fails a scripted number of times."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.attempts = []
        self.delivered = []

    async def __call__(self, payload) -> None:
        self.attempts.append(payload.id)
        if len(self.attempts) <= self.failures:
            raise ConnectionError("store unreachable")
        self.delivered.append(payload.id)


class Sleeps:
    def __init__(self) -> None:
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_queue(deliver, *, store=None, sleeps=None, online=False, dropped=None, policy=None, **kwargs):
    async def on_dropped(letter):
        if dropped is not None:
            dropped.append(letter)

    return DeliveryQueue(
        store or InMemoryQueueStore(),
        deliver,
        policy=policy or RetryPolicy(base_delay=0.1, max_delay=30.0, max_retries=2),
        sleep=sleeps or Sleeps(),
        online=online,
        on_dropped=on_dropped,
        **kwargs,
    )


def test_failing_entry_backs_off_then_is_dropped():
    async def run():
        deliver, sleeps, dropped = Recorder(failures=99), Sleeps(), []
        queue = make_queue(deliver, sleeps=sleeps, dropped=dropped)
        await queue.enqueue(stored_message("c1", message_id="m1"))
        queue.set_online(True)
        await until(lambda: bool(dropped))
        return deliver, sleeps, dropped, await queue.status(), queue.dead_letters()

    deliver, sleeps, dropped, status, letters = asyncio.run(run())

    assert deliver.attempts == ["m1", "m1", "m1"]
    assert [round(d, 6) for d in sleeps.delays] == [0.1, 0.2]
    assert status.size == 0
    assert dropped[0].reason == "max_retries_exceeded"
    assert [letter.message_id for letter in letters] == ["m1"]


def test_recovers_after_transient_failure():
    async def run():
        deliver, sleeps = Recorder(failures=1), Sleeps()
        queue = make_queue(deliver, sleeps=sleeps)
        await queue.enqueue(stored_message("c1", message_id="m1"))
        queue.set_online(True)
        await until(lambda: deliver.delivered == ["m1"])
        await until(lambda: not queue.is_processing)
        return deliver, sleeps, await queue.status()

    deliver, sleeps, status = asyncio.run(run())

    assert deliver.attempts == ["m1", "m1"]
    assert [round(d, 6) for d in sleeps.delays] == [0.1]
    assert status.size == 0


def test_succeeds_on_last_allowed_attempt():
    async def run():
        deliver, sleeps = Recorder(failures=2), Sleeps()
        queue = make_queue(deliver, sleeps=sleeps)
        await queue.enqueue(stored_message("c1", message_id="m1"))
        queue.set_online(True)
        await until(lambda: deliver.delivered == ["m1"])
        await until(lambda: not queue.is_processing)
        return deliver, sleeps, await queue.status(), queue.dead_letters()

    deliver, sleeps, status, letters = asyncio.run(run())

    assert deliver.delivered == ["m1"]
    assert len(deliver.attempts) == 3
    assert sum(sleeps.delays) >= 0.3 - 1e-9
    assert status.size == 0
    assert letters == []


def test_offline_queue_makes_no_attempts():
    async def run():
        deliver = Recorder()
        queue = make_queue(deliver)
        await queue.enqueue(stored_message("c1", message_id="m1"))
        delivered = await queue.drain()
        return deliver, delivered, await queue.status()

    deliver, delivered, status = asyncio.run(run())

    assert deliver.attempts == []
    assert delivered == 0
    assert status.size == 1
    assert status.online is False
    assert status.oldest_enqueued_at is not None


def test_fifo_order_on_drain():
    async def run():
        deliver = Recorder()
        queue = make_queue(deliver)
        for i in range(3):
            await queue.enqueue(stored_message("c1", message_id=f"m{i}"))
        queue.set_online(True)
        await until(lambda: len(deliver.delivered) == 3)
        return deliver

    assert asyncio.run(run()).delivered == ["m0", "m1", "m2"]


def test_same_message_replaces_pending_entry():
    async def run():
        deliver = Recorder()
        queue = make_queue(deliver)
        first = await queue.enqueue(stored_message("c1", "assistant", "partial", message_id="m1"))
        second = await queue.enqueue(stored_message("c1", "assistant", "final", message_id="m1"))
        entries = await queue.entries()
        return first, second, entries

    first, second, entries = asyncio.run(run())

    assert first == second
    assert len(entries) == 1
    assert entries[0].payload.content == "final"


def test_full_queue_evicts_oldest_entry():
    async def run():
        dropped = []
        queue = make_queue(Recorder(), max_size=2, dropped=dropped)
        for i in range(3):
            await queue.enqueue(stored_message("c1", message_id=f"m{i}"))
        return [e.message_id for e in await queue.entries()], dropped

    remaining, dropped = asyncio.run(run())

    assert remaining == ["m1", "m2"]
    assert [(d.message_id, d.reason) for d in dropped] == [("m0", "evicted")]


def test_clear_empties_the_queue():
    async def run():
        queue = make_queue(Recorder())
        await queue.enqueue(stored_message("c1"))
        await queue.clear()
        return await queue.status()

    assert asyncio.run(run()).size == 0


def test_entries_survive_restart(queue_db_url):
    payload = stored_message("c1", "assistant", "kept across restarts", message_id="m1")

    async def before_restart():
        engine = make_engine(queue_db_url)
        init_queue_db(engine)
        queue = make_queue(Recorder(), store=SqlQueueStore(engine))
        await queue.enqueue(payload)
        engine.dispose()

    async def after_restart():
        engine = make_engine(queue_db_url)
        init_queue_db(engine)
        deliver = Recorder()
        queue = make_queue(deliver, store=SqlQueueStore(engine), online=True)
        pending = await queue.status()
        delivered = await queue.drain()
        remaining = await queue.status()
        engine.dispose()
        return pending, delivered, remaining, deliver

    asyncio.run(before_restart())
    pending, delivered, remaining, deliver = asyncio.run(after_restart())

    assert pending.size == 1
    assert delivered == 1
    assert deliver.delivered == ["m1"]
    assert remaining.size == 0


def test_sql_backed_queue_retries_until_delivered(queue_engine):
    async def run():
        deliver = Recorder(failures=1)
        store = SqlQueueStore(queue_engine)
        queue = make_queue(deliver, store=store, online=True, policy=RetryPolicy(0.1, 30.0, 5))
        await queue.enqueue(stored_message("c1", message_id="m1"))
        await until(lambda: deliver.delivered == ["m1"])
        return deliver

    assert asyncio.run(run()).attempts == ["m1", "m1"]


class Gate:
    """Deliver callback that blocks the first attempt until released."""

    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.started = asyncio.Event()
        self.delivered = []
        self.fail_first = False

    async def __call__(self, payload) -> None:
        first = not self.started.is_set()
        self.started.set()
        if first:
            await self.release.wait()
            if self.fail_first:
                raise ConnectionError("store unreachable")
        self.delivered.append(payload.content)


def test_replacement_during_delivery_is_delivered_too():
    async def run():
        deliver = Gate()
        queue = make_queue(deliver, online=True)
        await queue.enqueue(stored_message("c1", "assistant", "partial", message_id="m1"))
        await deliver.started.wait()
        await queue.enqueue(stored_message("c1", "assistant", "final answer", message_id="m1"))
        deliver.release.set()
        await until(lambda: deliver.delivered == ["partial", "final answer"])
        await until(lambda: not queue.is_processing)
        return await queue.status()

    assert asyncio.run(run()).size == 0


def test_failed_delivery_does_not_overwrite_a_newer_payload():
    async def run():
        deliver, sleeps = Gate(), Sleeps()
        deliver.fail_first = True
        queue = make_queue(deliver, sleeps=sleeps, online=True)
        await queue.enqueue(stored_message("c1", "assistant", "partial", message_id="m1"))
        await deliver.started.wait()
        await queue.enqueue(stored_message("c1", "assistant", "final answer", message_id="m1"))
        deliver.release.set()
        await until(lambda: deliver.delivered == ["final answer"])
        await until(lambda: not queue.is_processing)
        return sleeps, await queue.status(), queue.dead_letters()

    sleeps, status, letters = asyncio.run(run())

    assert sleeps.delays == []
    assert status.size == 0
    assert letters == []


def test_sql_backed_replacement_during_delivery_is_kept(queue_engine):
    async def run():
        deliver = Gate()
        queue = make_queue(deliver, store=SqlQueueStore(queue_engine), online=True)
        await queue.enqueue(stored_message("c1", "assistant", "partial", message_id="m1"))
        await deliver.started.wait()
        await queue.enqueue(stored_message("c1", "assistant", "final answer", message_id="m1"))
        deliver.release.set()
        await until(lambda: deliver.delivered == ["partial", "final answer"])
        await until(lambda: not queue.is_processing)
        return await queue.status()

    assert asyncio.run(run()).size == 0
