"""
Conversion of python-telegram-bot objects into RawEvents.
"""
import logging
from typing import Optional

from telegram import Message, Update

from knowledge.models import RawEvent


logger = logging.getLogger(__name__)

GROUP_CHAT_TYPES = ("group", "supergroup")


def raw_event_from_message(update_id: int, message: Message, is_edit: bool = False) -> RawEvent:
    """
    Build a RawEvent from a Telegram message.

    The timestamp is the message's original send time even for edits, so an
    edited message keeps its place in the chat timeline.
    """
    sender = message.from_user
    sender_name = None
    if sender is not None:
        sender_name = sender.username or sender.full_name
    elif message.sender_chat is not None:
        sender_name = message.sender_chat.title

    reply = message.reply_to_message
    return RawEvent(
        source_update_id=update_id,
        chat_id=message.chat_id,
        message_id=message.message_id,
        timestamp=message.date,
        text=message.text or message.caption or "",
        sender_id=sender.id if sender is not None else None,
        sender_name=sender_name,
        reply_to_id=reply.message_id if reply is not None else None,
        thread_id=message.message_thread_id,
        is_edit=is_edit,
    )


def raw_event_from_update(update: Update) -> Optional[RawEvent]:
    """RawEvent for a group `message` / `edited_message` update, else None."""
    if update.edited_message is not None:
        message, is_edit = update.edited_message, True
    elif update.message is not None:
        message, is_edit = update.message, False
    else:
        return None

    if message.chat.type not in GROUP_CHAT_TYPES:
        logger.debug(f"Ignoring update {update.update_id} from {message.chat.type} chat")
        return None
    return raw_event_from_message(update.update_id, message, is_edit=is_edit)
