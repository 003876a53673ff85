from dataclasses import dataclass

from tenacity import RetryCallState, wait_exponential

from chatrelay.core.config import settings


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff for the delivery queue.

    The n-th retry waits ``base_delay * 2 ** (n - 1)`` seconds, capped at
    ``max_delay``. An entry is dropped once its retry count exceeds
    ``max_retries``, so it gets ``1 + max_retries`` attempts in total.
    """

    base_delay: float = 1.0
    max_delay: float = 30.0
    max_retries: int = 3

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            base_delay=settings.DELIVERY_BASE_DELAY_SECONDS,
            max_delay=settings.DELIVERY_MAX_DELAY_SECONDS,
            max_retries=settings.DELIVERY_MAX_RETRIES,
        )

    def delay_for(self, retry_count: int) -> float:
        if retry_count <= 0:
            return 0.0
        wait = wait_exponential(multiplier=self.base_delay, max=self.max_delay, exp_base=2)
        state = RetryCallState(retry_object=None, fn=None, args=(), kwargs={})
        state.attempt_number = retry_count
        return float(wait(state))

    def should_drop(self, retry_count: int, max_retries: int | None = None) -> bool:
        limit = self.max_retries if max_retries is None else max_retries
        return retry_count > limit
