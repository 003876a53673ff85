import asyncio
import random
import string
import time
from typing import Any, Callable


def random_lower_string() -> str:
    return "".join(random.choices(string.ascii_lowercase, k=32))


async def until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until ``predicate`` holds."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.001)


def poll(fetch: Callable[[], Any], done: Callable[[Any], bool], attempts: int = 200) -> Any:
    """Call ``fetch`` from a sync test until ``done`` accepts its result."""
    body = None
    for _ in range(attempts):
        body = fetch()
        if done(body):
            return body
        time.sleep(0.01)
    raise AssertionError(f"condition not reached, last response: {body}")
