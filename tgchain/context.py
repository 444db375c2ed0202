"""Per-update context object and the predicates that inspect it."""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from typing import Any, TypeVar, Union

from aiogram import Bot
from aiogram.types import (
    CallbackQuery,
    Chat,
    ChosenInlineResult,
    InlineQuery,
    Message,
    MessageReactionUpdated,
    PreCheckoutQuery,
    ShippingQuery,
    Update,
    User,
)

from tgchain.filters import UPDATE_KINDS, matches_filter_query

T = TypeVar("T")

MaybeArray = Union[T, Sequence[T]]
Trigger = Union[str, re.Pattern[str]]
ContextPredicate = Callable[["Context"], bool]


def _to_list(value: MaybeArray[T]) -> list[T]:
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return [value]


def _match_triggers(ctx: Context, content: str | None, triggers: list[Trigger]) -> bool:
    """Test ``content`` against triggers, storing the hit in ``ctx.match``."""
    if content is None:
        return False
    for trigger in triggers:
        if isinstance(trigger, re.Pattern):
            if m := trigger.search(content):
                ctx.match = m
                return True
        elif content == trigger:
            ctx.match = content
            return True
    return False


def _reaction_key(reaction: Any) -> str:
    return (
        getattr(reaction, "emoji", None)
        or getattr(reaction, "custom_emoji_id", None)
        or reaction.type
    )


class Has:
    """Predicate factories used by the composer's filtering shortcuts."""

    @staticmethod
    def filter_query(query: str | Sequence[str]) -> ContextPredicate:
        return matches_filter_query(query)

    @staticmethod
    def text(trigger: MaybeArray[Trigger]) -> ContextPredicate:
        triggers = _to_list(trigger)

        def predicate(ctx: Context) -> bool:
            msg = ctx.msg
            if msg is None:
                return False
            return _match_triggers(ctx, msg.text or msg.caption, triggers)

        return predicate

    @staticmethod
    def command(command: MaybeArray[str]) -> ContextPredicate:
        names = set()
        for cmd in _to_list(command):
            name = cmd.removeprefix("/")
            if not name or any(ch.isspace() for ch in name) or "@" in name:
                raise ValueError(f"Invalid command: {cmd!r}")
            names.add(name)

        def predicate(ctx: Context) -> bool:
            msg = ctx.message or ctx.channel_post
            if msg is None:
                return False
            text = msg.text or msg.caption
            entities = msg.entities or msg.caption_entities
            if not text or not entities:
                return False

            entity = next(
                (e for e in entities if e.type == "bot_command" and e.offset == 0), None
            )
            if entity is None:
                return False

            name, _, username = text[1 : entity.length].partition("@")
            if username and username.lower() != (ctx.me.username or "").lower():
                return False
            if name not in names:
                return False

            ctx.match = text[entity.length :].strip()
            return True

        return predicate

    @staticmethod
    def reaction(reaction: MaybeArray[str]) -> ContextPredicate:
        wanted = set(_to_list(reaction))

        def predicate(ctx: Context) -> bool:
            update = ctx.message_reaction
            if update is None:
                return False
            old = {_reaction_key(r) for r in update.old_reaction}
            added = {_reaction_key(r) for r in update.new_reaction} - old
            return bool(added & wanted)

        return predicate

    @staticmethod
    def chat_type(chat_type: MaybeArray[str]) -> ContextPredicate:
        types = set(_to_list(chat_type))

        def predicate(ctx: Context) -> bool:
            chat = ctx.chat
            return chat is not None and chat.type in types

        return predicate

    @staticmethod
    def callback_query(trigger: MaybeArray[Trigger]) -> ContextPredicate:
        triggers = _to_list(trigger)

        def predicate(ctx: Context) -> bool:
            query = ctx.callback_query
            return query is not None and _match_triggers(ctx, query.data, triggers)

        return predicate

    @staticmethod
    def game_query(trigger: MaybeArray[Trigger]) -> ContextPredicate:
        triggers = _to_list(trigger)

        def predicate(ctx: Context) -> bool:
            query = ctx.callback_query
            return query is not None and _match_triggers(
                ctx, query.game_short_name, triggers
            )

        return predicate

    @staticmethod
    def inline_query(trigger: MaybeArray[Trigger]) -> ContextPredicate:
        triggers = _to_list(trigger)

        def predicate(ctx: Context) -> bool:
            query = ctx.inline_query
            return query is not None and _match_triggers(ctx, query.query, triggers)

        return predicate

    @staticmethod
    def chosen_inline_result(result_id: MaybeArray[Trigger]) -> ContextPredicate:
        triggers = _to_list(result_id)

        def predicate(ctx: Context) -> bool:
            result = ctx.chosen_inline_result
            return result is not None and _match_triggers(ctx, result.result_id, triggers)

        return predicate

    @staticmethod
    def pre_checkout_query(trigger: MaybeArray[Trigger]) -> ContextPredicate:
        triggers = _to_list(trigger)

        def predicate(ctx: Context) -> bool:
            query = ctx.pre_checkout_query
            return query is not None and _match_triggers(
                ctx, query.invoice_payload, triggers
            )

        return predicate

    @staticmethod
    def shipping_query(trigger: MaybeArray[Trigger]) -> ContextPredicate:
        triggers = _to_list(trigger)

        def predicate(ctx: Context) -> bool:
            query = ctx.shipping_query
            return query is not None and _match_triggers(
                ctx, query.invoice_payload, triggers
            )

        return predicate


class Context:
    """Everything a middleware needs to handle one update.

    A context is created per update and owned by the run that created it.
    Middleware may attach extra attributes to it.
    """

    has = Has

    def __init__(self, update: Update, api: Bot, me: User) -> None:
        self.update = update
        self.api = api
        self.me = me
        # Set by text, command and query triggers
        self.match: str | re.Match[str] | None = None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} update_id={self.update.update_id}>"

    @property
    def payload(self) -> Any:
        for kind in UPDATE_KINDS:
            if (value := getattr(self.update, kind, None)) is not None:
                return value
        return None

    @property
    def message(self) -> Message | None:
        return self.update.message

    @property
    def edited_message(self) -> Message | None:
        return self.update.edited_message

    @property
    def channel_post(self) -> Message | None:
        return self.update.channel_post

    @property
    def callback_query(self) -> CallbackQuery | None:
        return self.update.callback_query

    @property
    def inline_query(self) -> InlineQuery | None:
        return self.update.inline_query

    @property
    def chosen_inline_result(self) -> ChosenInlineResult | None:
        return self.update.chosen_inline_result

    @property
    def shipping_query(self) -> ShippingQuery | None:
        return self.update.shipping_query

    @property
    def pre_checkout_query(self) -> PreCheckoutQuery | None:
        return self.update.pre_checkout_query

    @property
    def message_reaction(self) -> MessageReactionUpdated | None:
        return self.update.message_reaction

    @property
    def msg(self) -> Message | None:
        """The message this update is about, whatever its kind."""
        u = self.update
        msg = (
            u.message
            or u.edited_message
            or u.channel_post
            or u.edited_channel_post
            or u.business_message
            or u.edited_business_message
        )
        if msg is None and u.callback_query is not None:
            if isinstance(u.callback_query.message, Message):
                msg = u.callback_query.message
        return msg

    @property
    def chat(self) -> Chat | None:
        if (msg := self.msg) is not None:
            return msg.chat
        u = self.update
        for source in (
            u.my_chat_member,
            u.chat_member,
            u.chat_join_request,
            u.message_reaction,
            u.message_reaction_count,
            u.chat_boost,
            u.removed_chat_boost,
        ):
            if source is not None:
                return source.chat
        if u.callback_query is not None and u.callback_query.message is not None:
            return u.callback_query.message.chat
        return None

    @property
    def from_user(self) -> User | None:
        payload = self.payload
        if payload is None:
            return None
        return getattr(payload, "from_user", None) or getattr(payload, "user", None)

    async def reply(self, text: str, **kwargs: Any) -> Message:
        """Send a message to the chat this update belongs to."""
        chat = self.chat
        if chat is None:
            raise RuntimeError("Missing information for API call to sendMessage")
        return await self.api.send_message(chat_id=chat.id, text=text, **kwargs)

    async def answer_callback_query(self, **kwargs: Any) -> bool:
        query = self.callback_query
        if query is None:
            raise RuntimeError("Missing information for API call to answerCallbackQuery")
        return await self.api.answer_callback_query(callback_query_id=query.id, **kwargs)
