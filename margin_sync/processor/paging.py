"""
Page-at-a-time fetching with per-call timeout, bounded retries and
cooperative cancellation.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..shopify import Page, ShopifyTransientError
from .outcome import RunCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class PagingPolicy:
    """Fetch limits applied to every external call of a run."""

    page_size: int = 250
    fetch_timeout: float = 60.0
    max_attempts: int = 5
    backoff_base: float = 1.0  # seconds
    backoff_max: float = 30.0


def _log_retry(state: RetryCallState) -> None:
    error = state.outcome.exception() if state.outcome else None
    logger.warning(
        f"Transient fetch failure, retrying "
        f"(attempt {state.attempt_number}): {error}"
    )


async def fetch_with_retry(
    call: Callable[[], Awaitable[T]],
    policy: PagingPolicy,
) -> T:
    """
    Run one external fetch under the policy's timeout and retry budget.

    Timeouts and ShopifyTransientError are retried with exponential
    backoff; anything else propagates immediately.
    """
    result = None
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential(multiplier=policy.backoff_base, max=policy.backoff_max),
        retry=retry_if_exception_type((ShopifyTransientError, asyncio.TimeoutError)),
        before_sleep=_log_retry,
        reraise=True,
    ):
        with attempt:
            result = await asyncio.wait_for(call(), timeout=policy.fetch_timeout)
    return result


async def iter_pages(
    fetch: Callable[[Optional[str]], Awaitable[Page]],
    policy: PagingPolicy,
    cancel_event: Optional[asyncio.Event] = None,
) -> AsyncIterator[Page]:
    """
    Lazily walk a paginated listing.

    A failed fetch is retried from the same cursor, so pages already
    yielded are never fetched twice.

    Raises:
        RunCancelled: If cancel_event is set before a fetch.
    """
    cursor: Optional[str] = None
    while True:
        if cancel_event is not None and cancel_event.is_set():
            raise RunCancelled("Run cancelled")

        page = await fetch_with_retry(lambda: fetch(cursor), policy)
        yield page

        if not page.next_cursor:
            return
        cursor = page.next_cursor
