"""Test configuration and reusable fixtures for the tgchain test suite.

This module provides factories for real aiogram update objects, contexts and
a mocked Bot API client, so composer and dispatcher behavior can be tested
without network access.
"""

from __future__ import annotations

import os
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiogram import Bot
from aiogram.types import Chat, Message, MessageEntity, Update, User

# Set up test environment variables before any imports
os.environ.setdefault("LOGFIRE_IGNORE_NO_CONFIG", "1")
os.environ.setdefault("ENVIRONMENT", "dev")
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "123456:TEST_TOKEN_FOR_TESTING")

from tgchain.context import Context  # noqa: E402


# =============================================================================
# TELEGRAM OBJECT FACTORIES (real aiogram types)
# =============================================================================


@pytest.fixture
def bot_user() -> User:
    """The bot's own user, as returned by getMe."""
    return User(id=123456, is_bot=True, first_name="Chain", username="ChainTestBot")


@pytest.fixture
def make_user():
    """Factory fixture for creating Telegram User objects."""

    def _make_user(
        id: int = 12345,
        first_name: str = "Test",
        last_name: str | None = "User",
        username: str | None = "testuser",
        **kwargs,
    ) -> User:
        return User(
            id=id,
            is_bot=False,
            first_name=first_name,
            last_name=last_name,
            username=username,
            **kwargs,
        )

    return _make_user


@pytest.fixture
def make_chat():
    """Factory fixture for creating Telegram Chat objects."""

    def _make_chat(
        id: int = -1001234567890,
        type: str = "supergroup",
        title: str | None = "Test Chat",
        **kwargs,
    ) -> Chat:
        if type == "private":
            title = None
        return Chat(id=id, type=type, title=title, **kwargs)

    return _make_chat


@pytest.fixture
def make_message(make_user, make_chat):
    """Factory fixture for creating Telegram Message objects.

    Text starting with ``/`` gets a ``bot_command`` entity like the Bot API adds.
    """

    def _make_message(
        message_id: int = 1,
        text: str | None = "Hello",
        user_id: int = 12345,
        chat_id: int = -1001234567890,
        chat_type: str = "supergroup",
        **kwargs,
    ) -> Message:
        if text and text.startswith("/") and "entities" not in kwargs:
            command = text.split()[0]
            kwargs["entities"] = [
                MessageEntity(type="bot_command", offset=0, length=len(command))
            ]
        return Message(
            message_id=message_id,
            date=datetime.now(UTC),
            chat=make_chat(id=chat_id, type=chat_type),
            from_user=make_user(id=user_id),
            text=text,
            **kwargs,
        )

    return _make_message


@pytest.fixture
def make_update(make_message):
    """Factory fixture for creating Update objects.

    By default the update carries a text message; pass ``kind`` to put the
    message under another key. Keywords naming an update field build the update
    from them; any other keyword goes to the message.
    """

    def _make_update(
        update_id: int = 1,
        kind: str = "message",
        text: str | None = "Hello",
        **kwargs,
    ) -> Update:
        message_kwargs = {
            key: kwargs.pop(key) for key in list(kwargs) if key not in Update.model_fields
        }
        if not kwargs:
            kwargs[kind] = make_message(message_id=update_id, text=text, **message_kwargs)
        return Update(update_id=update_id, **kwargs)

    return _make_update


@pytest.fixture
def make_context(make_update, bot_user):
    """Factory fixture for creating a Context around an update."""

    def _make_context(update: Update | None = None, api=None, **kwargs) -> Context:
        if update is None:
            update = make_update(**kwargs)
        if api is None:
            api = MagicMock(spec=Bot)
            api.send_message = AsyncMock()
            api.answer_callback_query = AsyncMock(return_value=True)
        return Context(update, api, bot_user)

    return _make_context


@pytest.fixture
def mock_api(bot_user):
    """Mocked Bot API client as consumed by the dispatcher."""
    api = MagicMock(spec=Bot)
    api.get_me = AsyncMock(return_value=bot_user)
    api.delete_webhook = AsyncMock(return_value=True)
    api.get_updates = AsyncMock(return_value=[])
    api.send_message = AsyncMock()
    api.session = MagicMock()
    api.session.timeout = 60
    return api
