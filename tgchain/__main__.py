"""Main entry point for the Telegram bot."""

from __future__ import annotations

import asyncio
import logging
import signal

import logfire
from aiogram import Bot
from aiogram.client.default import DefaultBotProperties

from tgchain.common.retry import RetryConfig
from tgchain.config import Settings
from tgchain.dispatcher import Dispatcher, PollingOptions
from tgchain.errors import BotError
from tgchain.handlers import basic
from tgchain.middlewares import LogUpdatesMiddleware

settings = Settings()

logfire.configure(
    token=settings.logfire_token,
    service_name=settings.app_name,
    environment=settings.environment,
    send_to_logfire="if-token-present",
)

logging.basicConfig(
    level=logging.INFO if settings.environment == "dev" else logging.WARNING,
    format="[%(asctime)s][%(name)s][%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[
        logfire.LogfireLoggingHandler(),
    ],
)


async def log_error(err: BotError) -> None:
    logfire.error(
        "middleware_error",
        update_id=err.ctx.update.update_id,
        error=str(err),
        _exc_info=err,
    )


async def main() -> None:
    logger = logging.getLogger("Main")

    bot = Bot(
        token=settings.telegram_bot_token,
        default=DefaultBotProperties(
            parse_mode="HTML",
            link_preview_is_disabled=True,
        ),
    )

    dp = Dispatcher(
        bot,
        error_handler=log_error,
        retry_config=RetryConfig.from_settings(settings),
    )
    dp.use(LogUpdatesMiddleware())
    dp.use(basic.composer)

    stopping: set[asyncio.Task] = set()

    def request_stop() -> None:
        task = asyncio.ensure_future(dp.stop())
        stopping.add(task)
        task.add_done_callback(stopping.discard)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, request_stop)

    async def on_start(me) -> None:
        logger.info(f"Starting bot: {me.full_name} (@{me.username}) [ID: {me.id}]")
        logger.info(f"Environment: {settings.environment}")

    try:
        await dp.start(PollingOptions.from_settings(settings, on_start=on_start))
    finally:
        await asyncio.gather(*stopping)
        await bot.session.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        logging.info("App stopped! Good bye.")
    except Exception:
        logfire.fatal("App crashed", _exc_info=True)
        raise
