"""
Main Telegram application: records group history and runs indexing workers.
"""
import logging
import os
import sys
from telegram.ext import Application, MessageHandler, filters

from apps.telegram_bot.config import HistoryConfig
from apps.telegram_bot.recorder import ChatRecorder
from apps.telegram_bot.service_factory import build_service
from rag.pipelines.chat_history import ChatHistoryService


logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(threadName)s] %(name)s %(levelname)s: %(message)s"


def configure_logging(level: int = logging.INFO) -> None:
    """Log to stdout and to DATA_DIR/chat_history.log."""
    os.makedirs(HistoryConfig.DATA_DIR, exist_ok=True)
    log_path = os.path.join(HistoryConfig.DATA_DIR, "chat_history.log")
    logging.basicConfig(
        format=LOG_FORMAT,
        level=level,
        handlers=[logging.StreamHandler(sys.stdout), logging.FileHandler(log_path, encoding="utf-8")],
    )
    # httpx logs every long-poll request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)


class HistoryBot:
    """
    Records message and edited_message updates and keeps a worker pool
    indexing them in the background.
    """

    def __init__(self, service: ChatHistoryService):
        self.service = service
        self.recorder = ChatRecorder(service)
        self.pool = service.worker_pool(
            size=HistoryConfig.WORKER_COUNT,
            poll_interval=HistoryConfig.WORKER_POLL_SECONDS,
        )
        self.application = (
            Application.builder()
            .token(HistoryConfig.TELEGRAM_TOKEN)
            .post_init(self._on_start)
            .post_shutdown(self._on_stop)
            .build()
        )
        logger.info("HistoryBot initialized")

    async def _on_start(self, application: Application) -> None:
        self.pool.start()

    async def _on_stop(self, application: Application) -> None:
        self.pool.stop()
        self.service.close()

    def register_handlers(self) -> None:
        """Group messages and edits go to the recorder; nothing else is handled."""
        updates = filters.UpdateType.MESSAGE | filters.UpdateType.EDITED_MESSAGE
        self.application.add_handler(MessageHandler(filters.ChatType.GROUPS & updates, self.recorder.handle_update))
        self.application.add_error_handler(self.recorder.error_handler)

    def run(self) -> None:
        self.register_handlers()
        logger.info(f"Recording group history with {HistoryConfig.WORKER_COUNT} indexing workers")
        self.application.run_polling(allowed_updates=["message", "edited_message"])


def main() -> int:
    configure_logging()
    try:
        HistoryConfig.validate(require_token=True)
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        return 2

    bot = HistoryBot(build_service(with_llm=False))
    try:
        bot.run()
    except KeyboardInterrupt:
        logger.info("Stopped by user")
    except Exception:
        logger.exception("Recorder crashed")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
