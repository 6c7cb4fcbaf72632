import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from loguru import logger
from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt, wait_exponential

T = TypeVar("T")


def _log_attempt(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Attempt {} failed: {}. Retrying in {:.1f}s",
        retry_state.attempt_number,
        exc,
        retry_state.next_action.sleep if retry_state.next_action else 0.0,
    )


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 5.0,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> T:
    """Run ``operation`` until it succeeds or ``max_attempts`` is reached.

    Waits ``base_delay * 2**(n - 1)`` seconds after the n-th failure. Every
    exception is retried; the one from the final attempt is re-raised.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay, exp_base=2, min=0, max=base_delay * 2 ** max_attempts),
        before_sleep=_log_attempt,
        sleep=sleep or asyncio.sleep,
        reraise=True,
    )
    try:
        async for attempt in retrying:
            with attempt:
                return await operation()
    except Exception:
        logger.error("All {} attempts failed.", max_attempts)
        raise
