"""
Retry engine with category-aware exponential backoff.

Provides:
- ``with_retry``: generic retry loop with explicit options
- ``with_auto_retry``: retry driven by the error taxonomy's per-category policy
- ``with_batch_retry``: per-item auto retry returning partial results
- ``with_parallel_retry``: bounded-concurrency variant with positional results
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Sequence, TypeVar

from core.exceptions import (
    MigrationError,
    MigrationPhase,
    categorize,
    get_retry_policy,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

OnRetry = Callable[[BaseException, int], Any]


@dataclass
class RetryOptions:
    """Options for ``with_retry``. Delays are in seconds."""

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    on_retry: Optional[OnRetry] = None
    should_retry: Optional[Callable[[BaseException], bool]] = None


@dataclass
class BatchRetryResult(Generic[T, R]):
    """Outcome for one item of a batch; exactly one of result/error is meaningful."""

    item: T
    result: Optional[R] = None
    error: Optional[MigrationError] = None

    @property
    def success(self) -> bool:
        return self.error is None


def calculate_delay(
    attempt: int,
    initial_delay: float,
    backoff_multiplier: float = 2.0,
    max_delay: float = 30.0
) -> float:
    """Backoff delay before retry number ``attempt + 1`` (attempt is 0-based)."""
    return min(initial_delay * (backoff_multiplier ** attempt), max_delay)


async def _notify(on_retry: Optional[OnRetry], error: BaseException, attempt_number: int) -> None:
    if on_retry is None:
        return
    outcome = on_retry(error, attempt_number)
    if asyncio.iscoroutine(outcome):
        await outcome


def _default_should_retry(error: BaseException) -> bool:
    if isinstance(error, MigrationError):
        return error.retryable
    return True


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    options: Optional[RetryOptions] = None
) -> T:
    """
    Run ``operation`` until it succeeds or the retry budget is spent.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt
        options: Retry options (defaults: 3 retries, 1s initial, 30s cap, x2)

    Returns:
        The operation's result

    Raises:
        The last exception raised by ``operation``
    """
    options = options or RetryOptions()
    should_retry = options.should_retry or _default_should_retry

    for attempt in range(options.max_retries + 1):
        try:
            return await operation()
        except Exception as e:
            if attempt >= options.max_retries or not should_retry(e):
                raise

            delay = calculate_delay(
                attempt,
                options.initial_delay,
                options.backoff_multiplier,
                options.max_delay
            )
            logger.debug(
                f"Attempt {attempt + 1}/{options.max_retries + 1} failed: {e}. "
                f"Retrying in {delay:.2f}s"
            )
            await _notify(options.on_retry, e, attempt + 1)
            await asyncio.sleep(delay)

    # Unreachable: the loop either returns or raises
    raise RuntimeError("retry loop exited without a result")


async def with_auto_retry(
    operation: Callable[[], Awaitable[T]],
    phase: MigrationPhase,
    metadata: Optional[Dict[str, Any]] = None,
    on_retry: Optional[OnRetry] = None,
    max_delay: float = 30.0,
    backoff_multiplier: float = 2.0,
    max_retries: Optional[int] = None
) -> T:
    """
    Run ``operation`` with the retry policy of whatever category its failure has.

    Failures are classified with ``categorize``. Non-retryable categories are
    raised immediately; retryable ones back off from the category's initial
    delay. Once the budget is exhausted the last classified error is raised,
    tagged with the number of attempts made.

    ``max_retries`` caps the category budget for callers with a tighter one.
    """
    attempt = 0

    while True:
        try:
            return await operation()
        except Exception as e:
            classified = categorize(e, phase, metadata)
            policy = get_retry_policy(classified.category)
            budget = policy.max_retries if max_retries is None else min(max_retries, policy.max_retries)

            if not classified.retryable or budget == 0:
                logger.debug(
                    f"Not retrying {classified.category.value} error in {phase.value}: "
                    f"{classified.message}"
                )
                if classified is e:
                    raise
                raise classified from e

            if attempt >= budget:
                logger.warning(
                    f"Retries exhausted for {classified.category.value} error in "
                    f"{phase.value} after {attempt + 1} attempts: {classified.message}"
                )
                raise classified.with_metadata(attemptNumber=attempt + 1) from e

            delay = calculate_delay(attempt, policy.initial_delay, backoff_multiplier, max_delay)
            logger.info(
                f"{classified.category.value} error in {phase.value} "
                f"(attempt {attempt + 1}/{budget + 1}), retrying in {delay:.2f}s: "
                f"{classified.message}"
            )
            await _notify(on_retry, classified, attempt + 1)
            await asyncio.sleep(delay)
            attempt += 1


async def with_batch_retry(
    items: Sequence[T],
    operation: Callable[[T], Awaitable[R]],
    phase: MigrationPhase,
    metadata_for: Optional[Callable[[T], Dict[str, Any]]] = None,
    on_retry: Optional[OnRetry] = None
) -> List[BatchRetryResult[T, R]]:
    """
    Apply ``with_auto_retry`` to each item sequentially.

    One item's exhausted retries never abort its siblings: failures are
    returned in the result list alongside successes, in input order.
    """
    results: List[BatchRetryResult[T, R]] = []

    for item in items:
        metadata = metadata_for(item) if metadata_for else None
        try:
            value = await with_auto_retry(
                lambda: operation(item),
                phase,
                metadata=metadata,
                on_retry=on_retry
            )
            results.append(BatchRetryResult(item=item, result=value))
        except Exception as e:
            results.append(BatchRetryResult(item=item, error=categorize(e, phase, metadata)))

    return results


async def with_parallel_retry(
    items: Sequence[T],
    operation: Callable[[T], Awaitable[R]],
    phase: MigrationPhase,
    concurrency: int = 5,
    metadata_for: Optional[Callable[[T], Dict[str, Any]]] = None,
    on_retry: Optional[OnRetry] = None
) -> List[BatchRetryResult[T, R]]:
    """
    Like ``with_batch_retry`` but runs up to ``concurrency`` items at once.

    Results are collected positionally, so output order matches input order
    regardless of completion order. Backoff sleeps only suspend the item
    being retried.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be at least 1")

    semaphore = asyncio.Semaphore(concurrency)
    results: List[Optional[BatchRetryResult[T, R]]] = [None] * len(items)

    async def run(index: int, item: T) -> None:
        metadata = metadata_for(item) if metadata_for else None
        async with semaphore:
            try:
                value = await with_auto_retry(
                    lambda: operation(item),
                    phase,
                    metadata=metadata,
                    on_retry=on_retry
                )
                results[index] = BatchRetryResult(item=item, result=value)
            except Exception as e:
                results[index] = BatchRetryResult(item=item, error=categorize(e, phase, metadata))

    await asyncio.gather(*(run(i, item) for i, item in enumerate(items)))
    return [r for r in results if r is not None]
