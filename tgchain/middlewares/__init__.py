"""Middlewares shipped with tgchain."""

from tgchain.middlewares.log_updates import LogUpdatesMiddleware

__all__ = [
    "LogUpdatesMiddleware",
]
