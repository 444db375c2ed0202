"""Middleware that logs every update together with its handling time."""

from __future__ import annotations

import time

import logfire
from aiogram.types import Update

from tgchain.common.tg import chat_info, decompose_update
from tgchain.common.utils import elapsed_ms
from tgchain.composer import MiddlewareFn, NextFunction
from tgchain.context import Context


class LogUpdatesMiddleware:
    """Logs one line per update once the rest of the chain has settled.

    Install it first so the measured time covers every other middleware.
    """

    def __init__(self, clock=time.perf_counter) -> None:
        self._clock = clock

    @staticmethod
    def log_string(update: Update, elapsed_ms: int) -> str:
        summary = decompose_update(update)
        where = f"{chat_info(summary.chat)} | " if summary.chat else ""
        return (
            f"{elapsed_ms} ms | {type(summary.payload).__name__} | "
            f"{where}{summary.info}"
        )

    def middleware(self) -> MiddlewareFn[Context]:
        async def log_updates(ctx: Context, next_: NextFunction) -> None:
            started = self._clock()
            try:
                await next_()
            except Exception:
                logfire.warning(
                    "update_failed",
                    update_id=ctx.update.update_id,
                    update=self.log_string(ctx.update, elapsed_ms(started, self._clock())),
                )
                raise

            logfire.info(
                "update_handled",
                update_id=ctx.update.update_id,
                update=self.log_string(ctx.update, elapsed_ms(started, self._clock())),
            )

        return log_updates
