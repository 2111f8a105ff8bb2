"""Exponential backoff and a retry driver, built on tenacity.

The driver knows nothing about towers: the wrapped operation signals how it
failed by raising `Transient` or `Permanent`, and a normal return is a
success.
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Optional

import tenacity
from tenacity import AsyncRetrying, retry_if_exception_type, wait_random_exponential
from tenacity.stop import stop_base
from tenacity.wait import wait_base

DEFAULT_INITIAL_INTERVAL = 0.5
DEFAULT_MAX_INTERVAL = 60
DEFAULT_MAX_ELAPSED_TIME = 900


class Transient(Exception):
    """The operation failed but may succeed if tried again."""
    def __init__(self, cause: Any) -> None:
        self.cause = cause
        super().__init__(str(cause))


class Permanent(Exception):
    """The operation failed and must not be tried again."""
    def __init__(self, cause: Any) -> None:
        self.cause = cause
        super().__init__(str(cause))


class RetryError(Exception):
    def __init__(self, cause: Any) -> None:
        self.cause = cause
        super().__init__(str(cause))


class RetryPermanentError(RetryError):
    pass


class RetryExhaustedError(RetryError):
    """The backoff budget ran out. `cause` is the last transient error."""
    pass


class stop_before_elapsed(stop_base):
    """Stops once the time spent so far plus the upcoming wait would go past
    `max_elapsed_time`.

    The clock starts when the instance is created, so build one per retry
    cycle.
    """
    def __init__(self, max_elapsed_time: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.max_elapsed_time = max_elapsed_time
        self.clock = clock
        self.start_time = clock()

    def __call__(self, retry_state: tenacity.RetryCallState) -> bool:
        elapsed = self.clock() - self.start_time
        return elapsed + retry_state.upcoming_sleep > self.max_elapsed_time


def exponential_backoff(initial_interval: float = DEFAULT_INITIAL_INTERVAL,
                        max_interval: float = DEFAULT_MAX_INTERVAL) -> wait_base:
    """Randomized waits that double on every attempt, up to `max_interval`.

    The n-th wait is drawn from `[initial_interval / 2, initial_interval * 2 ** (n - 1)]`.
    """
    if initial_interval <= 0:
        raise ValueError("initial_interval must be positive, {} received".format(initial_interval))
    if max_interval < initial_interval:
        raise ValueError("max_interval must be >= initial_interval")

    return wait_random_exponential(multiplier=initial_interval, min=initial_interval / 2, max=max_interval)


async def retry_notify(operation: Callable[[], Awaitable[Any]],
                       max_elapsed_time: float = DEFAULT_MAX_ELAPSED_TIME,
                       wait: Optional[wait_base] = None,
                       notify: Optional[Callable[[Any, float], None]] = None,
                       sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                       clock: Callable[[], float] = time.monotonic) -> Any:
    """Runs `operation` until it succeeds, fails permanently or the elapsed
    time budget runs out.

    `notify(cause, delay)` is called after every transient failure that
    will be retried. Exceptions other than `Transient` and `Permanent` go
    through untouched.

    Raises:
        :obj:`RetryPermanentError`: if the operation raised `Permanent`.
        :obj:`RetryExhaustedError`: if the budget ran out. Carries the last
        transient cause.
    """
    def before_sleep(retry_state: tenacity.RetryCallState) -> None:
        if notify is not None:
            notify(retry_state.outcome.exception().cause, retry_state.upcoming_sleep)

    retrying = AsyncRetrying(
        retry=retry_if_exception_type(Transient),
        wait=wait if wait is not None else exponential_backoff(),
        stop=stop_before_elapsed(max_elapsed_time, clock),
        before_sleep=before_sleep,
        sleep=sleep,
    )

    try:
        return await retrying(operation)
    except Permanent as e:
        raise RetryPermanentError(e.cause)
    except tenacity.RetryError as e:
        raise RetryExhaustedError(e.last_attempt.exception().cause)
