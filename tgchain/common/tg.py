"""Human-readable summaries of Telegram updates for logs."""

from __future__ import annotations

from typing import Any, NamedTuple

from aiogram.types import Chat, Message, Update, User

from .utils import one_liner


class UpdateSummary(NamedTuple):
    kind: str
    payload: Any
    user: User | None
    chat: Chat | None
    info: str


def user_info(user: User, sender_chat: Chat | None = None) -> str:
    if sender_chat:
        return chat_info(sender_chat)

    last_name = " " + user.last_name if user.last_name else ""
    username = ", @" + user.username if user.username else ""
    return f"{user.first_name}{last_name} ({user.id}{username})"


def chat_info(chat: Chat) -> str:
    if chat.type == "private":
        return "private"

    username = ", @" + chat.username if chat.username else ""
    return f"{chat.type} | {chat.title} ({chat.id}{username})"


def message_info(message: Message) -> str:
    prefix = f"{message.message_id} | "
    if message.text:
        return prefix + one_liner(message.text, cut_len=50)
    return prefix + f"type: {message.content_type}"


def _payload_info(kind: str, payload: Any) -> str:
    match kind:
        case "message" | "channel_post" | "business_message":
            return message_info(payload)
        case "edited_message" | "edited_channel_post" | "edited_business_message":
            return message_info(payload) + " [edited]"
        case "inline_query" | "chosen_inline_result":
            return one_liner(payload.query, cut_len=50)
        case "callback_query":
            return payload.data or payload.game_short_name or ""
        case "shipping_query" | "pre_checkout_query":
            return payload.invoice_payload
        case "message_reaction":
            new = [getattr(r, "emoji", None) or r.type for r in payload.new_reaction]
            return f"{payload.message_id} | {new}"
        case "my_chat_member" | "chat_member":
            return (
                f"{user_info(payload.new_chat_member.user)}:"
                f" {payload.old_chat_member.status} -> {payload.new_chat_member.status}"
            )
    return payload.model_dump_json(exclude_none=True)


def decompose_update(update: Update) -> UpdateSummary:
    """Find the payload of an update and who/where it came from."""
    for kind in type(update).model_fields:
        if kind == "update_id":
            continue
        payload = getattr(update, kind, None)
        if payload is not None:
            break
    else:
        return UpdateSummary("unknown", update, None, None, str(update.update_id))

    user = getattr(payload, "from_user", None) or getattr(payload, "user", None)
    chat = getattr(payload, "chat", None)
    if chat is None and isinstance(getattr(payload, "message", None), Message):
        chat = payload.message.chat

    sender_chat = getattr(payload, "sender_chat", None)
    if user is not None or sender_chat is not None:
        author = user_info(user, sender_chat) if user else chat_info(sender_chat)
    else:
        author = None

    info = _payload_info(kind, payload)
    if author:
        info = f"{author} | {info}"
    return UpdateSummary(kind, payload, user, chat, info)
