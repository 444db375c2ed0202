from aiogram import html

from tgchain.composer import Composer, NextFunction
from tgchain.context import Context

composer: Composer[Context] = Composer()


async def cmd_start(ctx: Context, _next: NextFunction) -> None:
    name = ctx.from_user.full_name if ctx.from_user else "there"
    await ctx.reply(
        f"👋 Hello, {html.quote(name)}!\n\n"
        "Use /help to get information about available commands."
    )


async def cmd_help(ctx: Context, _next: NextFunction) -> None:
    await ctx.reply(
        "Available commands:\n"
        "• /start - Start the bot\n"
        "• /help - Show this help message\n"
        "• /ping - Check that the bot is alive"
    )


async def cmd_ping(ctx: Context, _next: NextFunction) -> None:
    await ctx.reply(f"pong {html.quote(ctx.match)}" if ctx.match else "pong")


composer.command("start", cmd_start)
composer.command("help", cmd_help)
composer.command("ping", cmd_ping)
