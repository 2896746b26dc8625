"""Retry-until-expected primitive for asynchronous cloud operations.

Every "create and wait until ready" and "delete and wait until gone" call in
the pipeline goes through ``wait_for_expected``. The evaluation function maps
each ``(response, error)`` pair to one of three outcomes:

  SUCCESS -> return the response
  FAIL    -> raise the observed error immediately, no further attempts
  RETRY   -> sleep per backoff policy, try again up to ``retry_times`` attempts

Request functions are assumed idempotent (create calls carry a client token).
"""

from __future__ import annotations

import asyncio
import enum
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from ..errors import PollFailedError, PollTimeoutError
from ..observability import get_logger

logger = get_logger(__name__)

T = TypeVar('T')

DEFAULT_RETRY_TIMES = 12
SHORT_RETRY_TIMES = 6
DEFAULT_RETRY_INTERVAL = 5.0  # seconds


class EvalResult(enum.Enum):
    SUCCESS = 'success'
    RETRY = 'retry'
    FAIL = 'fail'


@dataclass(frozen=True, slots=True)
class Backoff:
    """Delay policy between poll attempts.

    ``multiplier == 1`` gives a constant interval. ``jitter`` is a fraction
    of the computed delay applied symmetrically.
    """

    interval: float = DEFAULT_RETRY_INTERVAL
    multiplier: float = 1.0
    max_interval: float = 60.0
    jitter: float = 0.0

    def delay(self, attempt: int) -> float:
        """Delay after the given zero-based attempt."""
        base = min(self.interval * (self.multiplier ** attempt), self.max_interval)
        if self.jitter <= 0 or base <= 0:
            return base
        spread = base * self.jitter
        return max(0.0, random.uniform(base - spread, base + spread))


Evaluator = Callable[[Any, BaseException | None], EvalResult]
Sleep = Callable[[float], Awaitable[None]]


async def wait_for_expected(
    request: Callable[[], Awaitable[T]],
    evaluate: Evaluator,
    *,
    retry_times: int = DEFAULT_RETRY_TIMES,
    backoff: Backoff | None = None,
    sleep: Sleep = asyncio.sleep,
    description: str = '',
) -> T:
    """Invoke ``request`` until ``evaluate`` reports success.

    Raises:
        The request's own error when ``evaluate`` returns FAIL for it.
        PollFailedError: ``evaluate`` returned FAIL without an error.
        PollTimeoutError: ``retry_times`` attempts ended in RETRY.
    """
    if retry_times < 1:
        raise ValueError('retry_times must be >= 1')
    backoff = backoff or Backoff()

    last_error: BaseException | None = None
    for attempt in range(retry_times):
        response: Any = None
        error: Exception | None = None
        try:
            response = await request()
        except Exception as exc:
            error = exc

        outcome = evaluate(response, error)
        if outcome is EvalResult.SUCCESS:
            return response
        if outcome is EvalResult.FAIL:
            if error is not None:
                raise error
            raise PollFailedError(
                f'stopped waiting{" for " + description if description else ""}: '
                'unexpected response'
            )

        last_error = error
        if attempt + 1 < retry_times:
            delay = backoff.delay(attempt)
            logger.debug(
                'poll_retry',
                description=description,
                attempt=attempt + 1,
                retry_times=retry_times,
                delay=round(delay, 2),
                error=str(error) if error else None,
            )
            await sleep(delay)

    raise PollTimeoutError(retry_times, description) from last_error
