"""Retry utilities with exponential backoff for Bot API calls."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Literal, TypeVar

import logfire
from aiogram.exceptions import (
    TelegramNetworkError,
    TelegramRetryAfter,
    TelegramServerError,
)

from tgchain.errors import AbortedError

if TYPE_CHECKING:
    from tgchain.config import Settings

T = TypeVar("T")

Strategy = Literal["retry", "rethrow"]


def is_network_error(exception: Exception) -> bool:
    """Check if exception happened below the Bot API (transport layer)."""
    return isinstance(
        exception, (TelegramNetworkError, asyncio.TimeoutError, ConnectionError)
    )


def is_server_error(exception: Exception) -> bool:
    """Check if the Bot API answered with a 5xx error."""
    return isinstance(exception, TelegramServerError)


def is_rate_limit_error(exception: Exception) -> bool:
    """Check if exception is a rate limit (429) error."""
    return isinstance(exception, TelegramRetryAfter)


def is_retryable_error(exception: Exception) -> bool:
    """Check if exception is retryable (rate limit or transient error)."""
    return (
        is_network_error(exception)
        or is_server_error(exception)
        or is_rate_limit_error(exception)
    )


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(self, initial_delay: float = 0.05, max_delay: float = 20 * 60) -> None:
        """Initialize retry configuration.

        Args:
            initial_delay: Delay in seconds the backoff starts from, must be positive
            max_delay: Maximum delay in seconds between retries, at least ``initial_delay``
        """
        if initial_delay <= 0:
            raise ValueError(f"initial_delay must be positive, got {initial_delay}")
        if max_delay < initial_delay:
            raise ValueError(
                f"max_delay ({max_delay}) must not be less than initial_delay ({initial_delay})"
            )
        self.initial_delay = initial_delay
        self.max_delay = max_delay

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryConfig:
        return cls(
            initial_delay=settings.retry_initial_delay,
            max_delay=settings.retry_max_delay,
        )


async def sleep(seconds: float, stop_event: asyncio.Event | None = None) -> None:
    """Sleep for ``seconds``, raising AbortedError as soon as ``stop_event`` is set."""
    if stop_event is None:
        await asyncio.sleep(seconds)
        return
    if stop_event.is_set():
        raise AbortedError("Aborted delay")

    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return
    raise AbortedError("Aborted delay")


async def abortable(aw: Awaitable[T], stop_event: asyncio.Event | None = None) -> T:
    """Await ``aw`` unless ``stop_event`` gets set first, then cancel it."""
    if stop_event is None:
        return await aw

    task = asyncio.ensure_future(aw)
    waiter = asyncio.ensure_future(stop_event.wait())
    try:
        done, _ = await asyncio.wait(
            {task, waiter}, return_when=asyncio.FIRST_COMPLETED
        )
        if task in done:
            return task.result()
        raise AbortedError("Aborted request")
    finally:
        waiter.cancel()
        task.cancel()


async def with_retries(
    task: Callable[[], Awaitable[T]],
    stop_event: asyncio.Event | None = None,
    config: RetryConfig | None = None,
) -> T:
    """Run ``task`` until it succeeds or fails with a non-retryable error.

    Network and server errors are retried with exponential backoff: the first
    retry happens immediately, later ones wait for the current delay, which
    doubles up to ``config.max_delay``. Rate limit errors wait exactly the
    time the server asked for and reset the backoff.

    Args:
        task: Zero-argument coroutine function to run
        stop_event: Aborts any pending sleep when set
        config: Retry configuration, uses defaults if None

    Returns:
        Whatever ``task`` returned on its first successful attempt

    Example:
        me = await with_retries(bot.get_me)
    """
    if config is None:
        config = RetryConfig()

    last_delay = config.initial_delay
    first_retry = True

    async def handle_error(error: Exception) -> Strategy:
        nonlocal last_delay, first_retry

        delay = False
        strategy: Strategy = "rethrow"
        if is_network_error(error) or is_server_error(error):
            delay = True
            strategy = "retry"
        elif is_rate_limit_error(error):
            retry_after = error.retry_after
            if isinstance(retry_after, (int, float)):
                logfire.warning("rate_limited_retry", retry_after=retry_after)
                await sleep(retry_after, stop_event)
                last_delay = config.initial_delay
                first_retry = True
            else:
                delay = True
            strategy = "retry"

        if delay:
            # Do not sleep for the first retry
            if not first_retry:
                await sleep(last_delay, stop_event)
            first_retry = False
            last_delay = min(config.max_delay, 2 * last_delay)

        return strategy

    while True:
        try:
            return await task()
        except Exception as e:
            strategy = await handle_error(e)
            if strategy == "rethrow":
                logfire.warning(
                    "non_retryable_error",
                    task=getattr(task, "__name__", repr(task)),
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise
            logfire.info(
                "retrying_after_error",
                task=getattr(task, "__name__", repr(task)),
                error_type=type(e).__name__,
                next_delay_seconds=last_delay,
            )
