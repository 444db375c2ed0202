"""Middleware composition engine.

A middleware is either a plain callable ``(ctx, next_)`` or an object exposing
``middleware()`` that returns such a callable. Both variants are normalized by
:func:`flatten` when they are registered, and a :class:`Composer` left-folds
them into a single handler with :func:`concat`.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any, Generic, Protocol, TypeVar, Union, runtime_checkable

from tgchain.context import Context, MaybeArray, Trigger
from tgchain.errors import BotError, NextCalledTwiceError

C = TypeVar("C")
T = TypeVar("T")

NextFunction = Callable[[], Awaitable[None]]
MiddlewareFn = Callable[[C, NextFunction], Any]
Predicate = Callable[[C], Union[bool, Awaitable[bool]]]


@runtime_checkable
class MiddlewareObj(Protocol):
    """Anything that can hand out a middleware function on demand."""

    def middleware(self) -> MiddlewareFn[Any]: ...


Middleware = Union[MiddlewareFn[C], MiddlewareObj]
MiddlewareFactory = Callable[[C], Any]


async def maybe_await(value: T | Awaitable[T]) -> T:
    if inspect.isawaitable(value):
        return await value
    return value


def flatten(mw: Middleware[C]) -> MiddlewareFn[C]:
    """Resolve a middleware unit into an async ``(ctx, next_)`` function."""
    if callable(mw):
        if inspect.iscoroutinefunction(mw):
            return mw
        fn = mw
    elif isinstance(mw, MiddlewareObj):
        # Late bound so that a composer extended after registration is seen.
        def fn(ctx: C, next_: NextFunction) -> Any:
            return mw.middleware()(ctx, next_)
    else:
        raise TypeError(f"Not a middleware: {mw!r}")

    async def handler(ctx: C, next_: NextFunction) -> None:
        await maybe_await(fn(ctx, next_))

    return handler


def concat(first: MiddlewareFn[C], and_then: MiddlewareFn[C]) -> MiddlewareFn[C]:
    """Chain two middleware functions, allowing ``first`` to call next once."""

    async def composed(ctx: C, next_: NextFunction) -> None:
        next_called = False

        async def downstream() -> None:
            nonlocal next_called
            if next_called:
                raise NextCalledTwiceError("`next` already called before!")
            next_called = True
            await and_then(ctx, next_)

        await first(ctx, downstream)

    return composed


def pass_through(ctx: Any, next_: NextFunction) -> Awaitable[None]:
    return next_()


async def leaf() -> None:
    return None


async def run(middleware: MiddlewareFn[C], ctx: C) -> None:
    """Run a composed chain for one context down to the terminal no-op.

    Errors are not handled here; they propagate to the caller.
    """
    await maybe_await(middleware(ctx, leaf))


class Composer(Generic[C]):
    """Ordered aggregator of middleware with derivation operators.

    ``use`` and every operator built on it return the sub-composer holding the
    newly registered middleware. The sub-composer stays extendable and later
    additions take effect through the reference already installed here.
    """

    def __init__(self, *middleware: Middleware[C]) -> None:
        handlers = [flatten(mw) for mw in middleware]
        if not handlers:
            self._handler: MiddlewareFn[C] = pass_through
            return

        handler = handlers[0]
        for nxt in handlers[1:]:
            handler = concat(handler, nxt)
        self._handler = handler

    def middleware(self) -> MiddlewareFn[C]:
        return self._handler

    def use(self, *middleware: Middleware[C]) -> Composer[C]:
        composer: Composer[C] = Composer(*middleware)
        self._handler = concat(self._handler, flatten(composer))
        return composer

    # === Filtering shortcuts

    def on(self, filter_query: str | Sequence[str], *middleware: Middleware[C]) -> Composer[C]:
        return self.filter(Context.has.filter_query(filter_query), *middleware)

    def hears(self, trigger: MaybeArray[Trigger], *middleware: Middleware[C]) -> Composer[C]:
        return self.filter(Context.has.text(trigger), *middleware)

    def command(self, command: MaybeArray[str], *middleware: Middleware[C]) -> Composer[C]:
        return self.filter(Context.has.command(command), *middleware)

    def reaction(self, reaction: MaybeArray[str], *middleware: Middleware[C]) -> Composer[C]:
        return self.filter(Context.has.reaction(reaction), *middleware)

    def chat_type(self, chat_type: MaybeArray[str], *middleware: Middleware[C]) -> Composer[C]:
        return self.filter(Context.has.chat_type(chat_type), *middleware)

    def callback_query(
        self, trigger: MaybeArray[Trigger], *middleware: Middleware[C]
    ) -> Composer[C]:
        return self.filter(Context.has.callback_query(trigger), *middleware)

    def game_query(self, trigger: MaybeArray[Trigger], *middleware: Middleware[C]) -> Composer[C]:
        return self.filter(Context.has.game_query(trigger), *middleware)

    def inline_query(
        self, trigger: MaybeArray[Trigger], *middleware: Middleware[C]
    ) -> Composer[C]:
        return self.filter(Context.has.inline_query(trigger), *middleware)

    def chosen_inline_result(
        self, result_id: MaybeArray[Trigger], *middleware: Middleware[C]
    ) -> Composer[C]:
        return self.filter(Context.has.chosen_inline_result(result_id), *middleware)

    def pre_checkout_query(
        self, trigger: MaybeArray[Trigger], *middleware: Middleware[C]
    ) -> Composer[C]:
        return self.filter(Context.has.pre_checkout_query(trigger), *middleware)

    def shipping_query(
        self, trigger: MaybeArray[Trigger], *middleware: Middleware[C]
    ) -> Composer[C]:
        return self.filter(Context.has.shipping_query(trigger), *middleware)

    # === Control flow

    def filter(self, predicate: Predicate[C], *middleware: Middleware[C]) -> Composer[C]:
        """Run ``middleware`` only for contexts matching ``predicate``."""
        composer: Composer[C] = Composer(*middleware)
        self.branch(predicate, composer, pass_through)
        return composer

    def drop(self, predicate: Predicate[C], *middleware: Middleware[C]) -> Composer[C]:
        """Run ``middleware`` only for contexts *not* matching ``predicate``."""

        async def negated(ctx: C) -> bool:
            return not await maybe_await(predicate(ctx))

        return self.filter(negated, *middleware)

    def fork(self, *middleware: Middleware[C]) -> Composer[C]:
        """Run ``middleware`` concurrently with the rest of this chain.

        Both sides start together and are joined before this stage completes.
        The first failure propagates.
        """
        composer: Composer[C] = Composer(*middleware)
        forked = flatten(composer)

        async def fork_middleware(ctx: C, next_: NextFunction) -> None:
            await asyncio.gather(next_(), run(forked, ctx))

        self.use(fork_middleware)
        return composer

    def lazy(self, middleware_factory: MiddlewareFactory[C]) -> Composer[C]:
        """Build the middleware to run per context and run it inline."""

        async def lazy_middleware(ctx: C, next_: NextFunction) -> None:
            middleware = await maybe_await(middleware_factory(ctx))
            units = middleware if isinstance(middleware, (list, tuple)) else [middleware]
            await flatten(Composer(*units))(ctx, next_)

        return self.use(lazy_middleware)

    def route(
        self,
        router: Callable[[C], Any],
        route_handlers: Mapping[Any, MaybeArray[Middleware[C]]],
        fallback: MaybeArray[Middleware[C]] | None = pass_through,
    ) -> Composer[C]:
        """Pick a handler set per context by the key ``router`` returns.

        Unknown or ``None`` keys run ``fallback``.
        """

        async def select(ctx: C) -> MaybeArray[Middleware[C]]:
            key = await maybe_await(router(ctx))
            if key is None or key not in route_handlers:
                return fallback if fallback is not None else []
            return route_handlers[key]

        return self.lazy(select)

    def branch(
        self,
        predicate: Predicate[C],
        true_middleware: MaybeArray[Middleware[C]],
        false_middleware: MaybeArray[Middleware[C]],
    ) -> Composer[C]:
        async def select(ctx: C) -> MaybeArray[Middleware[C]]:
            if await maybe_await(predicate(ctx)):
                return true_middleware
            return false_middleware

        return self.lazy(select)

    def error_boundary(
        self,
        error_handler: Callable[[BotError, NextFunction], Any],
        *middleware: Middleware[C],
    ) -> Composer[C]:
        """Confine errors raised by ``middleware`` to ``error_handler``.

        The handler receives the wrapped error and a continuation; calling the
        continuation resumes the chain after the boundary.
        """
        composer: Composer[C] = Composer(*middleware)
        bound = flatten(composer)

        async def boundary(ctx: C, next_: NextFunction) -> None:
            next_called = False

            async def cont() -> None:
                nonlocal next_called
                next_called = True

            try:
                await bound(ctx, cont)
            except Exception as err:
                next_called = False
                await maybe_await(error_handler(BotError(err, ctx), cont))

            if next_called:
                await next_()

        self.use(boundary)
        return composer

