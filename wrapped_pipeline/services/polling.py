import asyncio
import time
from typing import Awaitable, Callable, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config.settings import settings
from ..errors import PollTimeoutError, ProviderError

logger = structlog.get_logger()

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


async def poll_until(
    fetch: Callable[[], Awaitable[T]],
    is_done: Callable[[T], bool],
    interval: float = settings.POLL_INTERVAL,
    max_wait: float = settings.POLL_MAX_WAIT,
    sleep: Sleep = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """Await fetch() every interval seconds until is_done accepts its value.

    Raises PollTimeoutError once max_wait seconds have elapsed without a
    finished value. Exceptions from fetch or is_done propagate unchanged.
    """
    deadline = clock() + max_wait
    while True:
        value = await fetch()
        if is_done(value):
            return value
        if clock() + interval > deadline:
            raise PollTimeoutError(
                f"gave up polling after {max_wait:g}s")
        await sleep(interval)


def retrying(
    attempts: int = settings.RETRY_ATTEMPTS,
    base_delay: float = settings.RETRY_BASE_DELAY,
    max_delay: float = settings.RETRY_MAX_DELAY,
    sleep: Optional[Sleep] = None,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> AsyncRetrying:
    """Shared retry policy for provider calls.

    Waits base_delay, 2*base_delay, 4*base_delay ... capped at max_delay and
    gives up after `attempts` tries, re-raising the last ProviderError.
    """

    def _before_sleep(retry_state):
        error = retry_state.outcome.exception()
        logger.warning("provider_call_retrying",
                       attempt=retry_state.attempt_number,
                       max_attempts=attempts,
                       delay=retry_state.next_action.sleep,
                       error=str(error))
        if on_retry is not None:
            on_retry(retry_state.attempt_number, error)

    kwargs = {}
    if sleep is not None:
        kwargs["sleep"] = sleep
    return AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=base_delay, max=max_delay),
        retry=retry_if_exception_type(ProviderError),
        before_sleep=_before_sleep,
        reraise=True,
        **kwargs,
    )
