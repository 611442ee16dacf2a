"""
Update handler that records group chat messages and edits.
"""
import asyncio
import logging

from telegram import Update
from telegram.ext import ContextTypes

from apps.telegram_bot.feed import raw_event_from_update
from rag.pipelines.chat_history import ChatHistoryService


logger = logging.getLogger(__name__)


class ChatRecorder:
    """
    Feeds `message` and `edited_message` updates into the event store.

    Recording is a short SQLite write; it runs on a worker thread so the
    polling loop is never blocked by a busy database.
    """

    def __init__(self, service: ChatHistoryService):
        self.service = service
        self.recorded = 0
        self.duplicates = 0

    async def handle_update(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        event = raw_event_from_update(update)
        if event is None:
            return

        result = await asyncio.to_thread(self.service.record, event)
        if result.is_duplicate:
            self.duplicates += 1
            logger.debug(f"Duplicate update {update.update_id} for chat {event.chat_id}")
            return

        self.recorded += 1
        logger.info(
            f"Recorded {event.chat_id}/{event.message_id} rev {result.revision}"
            f"{' (edit)' if event.is_edit else ''}"
        )

    async def error_handler(self, update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle errors."""
        logger.error("Exception while handling an update:", exc_info=context.error)
