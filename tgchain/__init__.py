"""Middleware composition and long-polling dispatch for Telegram bots."""

from tgchain.common.retry import RetryConfig, with_retries
from tgchain.composer import (
    Composer,
    Middleware,
    MiddlewareFn,
    MiddlewareObj,
    NextFunction,
    run,
)
from tgchain.context import Context
from tgchain.dispatcher import DEFAULT_UPDATE_TYPES, Dispatcher, PollingOptions
from tgchain.errors import (
    AbortedError,
    BotError,
    FilterQueryError,
    ListenerRegistrationError,
    NextCalledTwiceError,
)

__all__ = [
    "DEFAULT_UPDATE_TYPES",
    "AbortedError",
    "BotError",
    "Composer",
    "Context",
    "Dispatcher",
    "FilterQueryError",
    "ListenerRegistrationError",
    "Middleware",
    "MiddlewareFn",
    "MiddlewareObj",
    "NextCalledTwiceError",
    "NextFunction",
    "PollingOptions",
    "RetryConfig",
    "run",
    "with_retries",
]
