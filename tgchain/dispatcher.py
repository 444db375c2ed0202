"""Top-level composer that fetches updates by long polling and runs them."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import logfire
from aiogram import Bot
from aiogram.exceptions import (
    TelegramAPIError,
    TelegramConflictError,
    TelegramRetryAfter,
    TelegramUnauthorizedError,
)
from aiogram.types import Update, User

from tgchain.common.retry import RetryConfig, abortable, sleep, with_retries
from tgchain.composer import Composer, Middleware, maybe_await, run
from tgchain.context import Context, MaybeArray
from tgchain.errors import AbortedError, BotError, ListenerRegistrationError
from tgchain.filters import update_kinds

if TYPE_CHECKING:
    from tgchain.config import Settings

DEFAULT_UPDATE_TYPES = [
    "message",
    "edited_message",
    "channel_post",
    "edited_channel_post",
    "business_connection",
    "business_message",
    "edited_business_message",
    "deleted_business_messages",
    "inline_query",
    "chosen_inline_result",
    "callback_query",
    "shipping_query",
    "pre_checkout_query",
    "poll",
    "poll_answer",
    "my_chat_member",
    "chat_join_request",
    "chat_boost",
    "removed_chat_boost",
]

ErrorHandler = Callable[[BotError], Awaitable[None] | None]


@dataclass
class PollingOptions:
    # Max updates per getUpdates call, server default if None
    limit: int | None = None
    # Seconds the server may hold a getUpdates call open
    timeout: int = 30
    allowed_updates: list[str] | None = None
    drop_pending_updates: bool | None = None
    # Seconds to wait after a failed getUpdates call
    error_sleep: float = 3.0
    on_start: Callable[[User], Awaitable[None] | None] | None = None

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> PollingOptions:
        options: dict[str, Any] = {
            "limit": settings.polling_limit,
            "timeout": settings.polling_timeout,
            "allowed_updates": settings.allowed_updates,
            "drop_pending_updates": settings.drop_pending_updates,
            "error_sleep": settings.polling_error_sleep,
        }
        return cls(**(options | kwargs))


@dataclass
class PollingState:
    running: bool = False
    last_update_id: int = 0
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    # Pending shutdown getUpdates call issued by `stop`
    confirm: asyncio.Future[Any] | None = None


def validate_allowed_updates(
    observed: Iterable[str], allowed: Sequence[str] | None = None
) -> list[str]:
    """Warn about listeners for update kinds that polling will not receive."""
    allowed = allowed or DEFAULT_UPDATE_TYPES
    impossible = sorted(u for u in set(observed) if u not in allowed)
    if impossible:
        logfire.warning(
            "listeners_for_unreceived_update_types",
            update_types=impossible,
            hint="add them to `allowed_updates`",
        )
    return impossible


class Dispatcher(Composer[Context]):
    """Runs updates through the registered middleware.

    Updates come either from :meth:`start` (long polling) or from an external
    source such as a webhook via :meth:`handle_update`. The error handler is
    called with a :class:`BotError` whenever a middleware raises while polling.
    Without one, polling stops and the error surfaces from :meth:`start`.
    """

    def __init__(
        self,
        api: Bot,
        *,
        bot_info: User | None = None,
        context_type: type[Context] = Context,
        error_handler: ErrorHandler | None = None,
        retry_config: RetryConfig | None = None,
    ) -> None:
        super().__init__()
        self.api = api
        self.me = bot_info
        self.context_type = context_type
        self.error_handler = error_handler or self._default_error_handler
        self.retry_config = retry_config or RetryConfig()
        self.observed_update_types: set[str] = set()

        self._polling = PollingState()
        self._me_task: asyncio.Future[User] | None = None
        self._frozen = False

    # === Registration

    def use(self, *middleware: Middleware[Context]) -> Composer[Context]:
        if self._frozen:
            raise ListenerRegistrationError(
                "It looks like you are registering more listeners on the dispatcher "
                "from within other listeners! Every handled update would add new "
                "listeners until the process runs out of memory. If you do need to "
                "add middleware at runtime, install a Composer on the dispatcher "
                "before polling starts and extend that composer instead."
            )
        return super().use(*middleware)

    def on(
        self, filter_query: str | Sequence[str], *middleware: Middleware[Context]
    ) -> Composer[Context]:
        self.observed_update_types |= update_kinds(filter_query)
        return super().on(filter_query, *middleware)

    def reaction(
        self, reaction: MaybeArray[str], *middleware: Middleware[Context]
    ) -> Composer[Context]:
        self.observed_update_types.add("message_reaction")
        return super().reaction(reaction, *middleware)

    def catch(self, error_handler: ErrorHandler) -> None:
        """Replace the error handler used while polling."""
        if self._polling.running:
            raise RuntimeError("Cannot replace the error handler while polling")
        self.error_handler = error_handler

    # === Initialization

    @property
    def bot_info(self) -> User:
        if self.me is None:
            raise RuntimeError(
                "Bot information unavailable! Make sure to call `await dispatcher.init()` "
                "before accessing `dispatcher.bot_info`!"
            )
        return self.me

    def is_inited(self) -> bool:
        return self.me is not None

    def is_running(self) -> bool:
        return self._polling.running

    async def init(self, stop_event: asyncio.Event | None = None) -> None:
        """Fetch the bot's own user with retries unless already known."""
        if not self.is_inited():
            logfire.debug("dispatcher_initializing")
            if self._me_task is None:
                self._me_task = asyncio.ensure_future(
                    with_retries(self.api.get_me, stop_event, self.retry_config)
                )
            try:
                me = await self._me_task
            finally:
                self._me_task = None
            if self.me is None:
                self.me = me

        logfire.info("dispatcher_initialized", username=self.me.username, bot_id=self.me.id)

    # === Handling

    async def handle_update(self, update: Update) -> None:
        """Run the middleware for one update, wrapping failures in BotError."""
        if self.me is None:
            raise RuntimeError(
                "Dispatcher not initialized! Either call `await dispatcher.init()`, "
                "or pass `bot_info` to the constructor."
            )

        logfire.debug("processing_update", update_id=update.update_id)
        ctx = self.context_type(update, self.api, self.me)
        try:
            await run(self.middleware(), ctx)
        except Exception as err:
            logfire.debug("middleware_failed", update_id=update.update_id)
            raise BotError(err, ctx) from err

    async def handle_updates(self, updates: Sequence[Update]) -> None:
        # Sequentially: handler side effects for one update must be visible
        # before the next one starts.
        for update in updates:
            self._polling.last_update_id = update.update_id
            try:
                await self.handle_update(update)
            except BotError as err:
                await maybe_await(self.error_handler(err))
            except Exception:
                logfire.error(
                    "update_handling_crashed", update_id=update.update_id, _exc_info=True
                )
                raise

    async def _default_error_handler(self, err: BotError) -> None:
        logfire.error(
            "unhandled_middleware_error",
            update_id=getattr(getattr(err.ctx, "update", None), "update_id", None),
            error=str(err),
            hint="No error handler was set! Set one with `dispatcher.catch(...)`",
            _exc_info=err,
        )
        if self._polling.running:
            logfire.error("stopping_polling_after_unhandled_error")
            await self.stop()
        raise err

    # === Long polling

    async def start(self, options: PollingOptions | None = None) -> None:
        """Poll for updates until :meth:`stop` is called.

        Does nothing if polling is already running.
        """
        options = options or PollingOptions()

        if self._polling.running:
            if not self.is_inited():
                await self.init(self._polling.stop_event)
            logfire.debug("polling_already_running")
            return

        self._polling.running = True
        self._polling.stop_event = asyncio.Event()
        self._polling.confirm = None
        stop_event = self._polling.stop_event

        async def delete_webhook() -> bool:
            return await self.api.delete_webhook(
                drop_pending_updates=options.drop_pending_updates
            )

        try:
            setup = [with_retries(delete_webhook, stop_event, self.retry_config)]
            if not self.is_inited():
                setup.append(self.init(stop_event))
            await asyncio.gather(*setup)
            if options.on_start is not None:
                await maybe_await(options.on_start(self.bot_info))
        except BaseException:
            self._polling.running = False
            raise

        # Stopped from within `on_start`
        if not self._polling.running:
            await self._wait_for_confirm()
            return

        validate_allowed_updates(self.observed_update_types, options.allowed_updates)
        self._frozen = True

        logfire.info("polling_started", username=self.bot_info.username)
        try:
            await self._loop(options)
        finally:
            self._polling.running = False
            await self._wait_for_confirm()
        logfire.info("polling_stopped", last_update_id=self._polling.last_update_id)

    async def stop(self) -> None:
        """Stop polling and confirm the updates handled so far.

        One last getUpdates call with the next offset tells the Bot API not to
        deliver the handled updates again on the next start.
        """
        if not self._polling.running:
            logfire.debug("polling_not_running")
            return

        offset = self._polling.last_update_id + 1
        logfire.info("stopping_polling", offset=offset)
        self._polling.running = False
        self._polling.stop_event.set()
        self._polling.confirm = asyncio.ensure_future(
            self.api.get_updates(offset=offset, limit=1)
        )
        await self._polling.confirm

    async def _wait_for_confirm(self) -> None:
        # `start` returns only after the confirmation of a concurrent `stop` settled
        if self._polling.confirm is not None:
            await asyncio.wait({self._polling.confirm})

    async def _loop(self, options: PollingOptions) -> None:
        # An empty list resets the server-side filter to the default set
        allowed_updates: list[str] | None = options.allowed_updates or []
        while self._polling.running:
            updates = await self._fetch_updates(options, allowed_updates)
            if updates is None:
                break
            await self.handle_updates(updates)
            # The Bot API remembers the last `allowed_updates`
            allowed_updates = None

    async def _fetch_updates(
        self, options: PollingOptions, allowed_updates: list[str] | None
    ) -> list[Update] | None:
        offset = self._polling.last_update_id + 1
        kwargs: dict[str, Any] = {}
        session_timeout = getattr(getattr(self.api, "session", None), "timeout", None)
        if isinstance(session_timeout, (int, float)):
            kwargs["request_timeout"] = int(session_timeout + options.timeout)

        updates = None
        while updates is None and self._polling.running:
            try:
                updates = await abortable(
                    self.api.get_updates(
                        offset=offset,
                        limit=options.limit,
                        timeout=options.timeout,
                        allowed_updates=allowed_updates,
                        **kwargs,
                    ),
                    self._polling.stop_event,
                )
            except Exception as error:
                await self._handle_polling_error(error, options)
        return updates

    async def _handle_polling_error(self, error: Exception, options: PollingOptions) -> None:
        if not self._polling.running:
            logfire.debug("pending_get_updates_cancelled")
            return

        sleep_seconds = options.error_sleep
        if isinstance(error, (TelegramUnauthorizedError, TelegramConflictError)):
            logfire.error(
                "polling_failed_fatally", error_type=type(error).__name__, error=str(error)
            )
            raise error
        if isinstance(error, TelegramRetryAfter):
            logfire.warning("polling_rate_limited", retry_after=error.retry_after)
            if isinstance(error.retry_after, (int, float)):
                sleep_seconds = error.retry_after
        elif isinstance(error, TelegramAPIError):
            logfire.warning("get_updates_api_error", error=error.message)
        else:
            logfire.warning(
                "get_updates_failed", error_type=type(error).__name__, _exc_info=error
            )

        logfire.warning("get_updates_retrying", sleep_seconds=sleep_seconds)
        with contextlib.suppress(AbortedError):
            await sleep(sleep_seconds, self._polling.stop_event)
