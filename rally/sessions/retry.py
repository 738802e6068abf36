"""
Retry - Exponential backoff for async operations.

Delay before retry n (n = 1, 2, ...) is base_delay * 2**n, so the defaults
wait 2s, 4s, 8s. The loop runs inside whatever task awaits it: cancelling
that task cancels the pending sleep, which is how feeds stop retrying when
they are closed.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import asyncio

from ..errors import RetryExhausted

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 1.0

    def delay_for(self, retry_number: int) -> float:
        return self.base_delay * 2 ** retry_number


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    on_failure: Callable[[Exception, int], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run `operation` until it succeeds or `policy.attempts` retries fail.

    on_failure(error, failure_number) is called after every failure,
    including the last one.

    Raises:
        RetryExhausted: wrapping the last error
    """
    failures = 0
    while True:
        try:
            return await operation()
        except Exception as e:
            failures += 1
            if on_failure is not None:
                on_failure(e, failures)
            if failures > policy.attempts:
                raise RetryExhausted(failures, e) from e
            await sleep(policy.delay_for(failures))
