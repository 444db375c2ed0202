"""Exceptions raised by the dispatch core."""

from __future__ import annotations

from numbers import Number
from typing import Any


class BotError(Exception):
    """Wraps whatever a middleware raised together with the context in play.

    Instances are created once per failing update and never mutated; the
    original value is available as ``error`` and the context as ``ctx``.
    """

    def __init__(self, error: object, ctx: Any) -> None:
        super().__init__(bot_error_message(error))
        self._error = error
        self._ctx = ctx

    @property
    def error(self) -> object:
        return self._error

    @property
    def ctx(self) -> Any:
        return self._ctx


def bot_error_message(error: object) -> str:
    if isinstance(error, BaseException):
        return f"{type(error).__name__} in middleware: {error}"

    msg = f"Non-error value of type {type(error).__name__} thrown in middleware"
    if isinstance(error, Number):
        return f"{msg}: {error}"
    if isinstance(error, str):
        return f"{msg}: {error[:50]}"
    return f"{msg}!"


class NextCalledTwiceError(RuntimeError):
    """A middleware invoked its ``next`` continuation more than once."""


class ListenerRegistrationError(RuntimeError):
    """Middleware was registered on a dispatcher that is already polling."""


class FilterQueryError(ValueError):
    """A filter query could not be parsed or refers to unknown fields."""


class AbortedError(Exception):
    """A sleep or an in-flight request was aborted by a stop request."""
