"""
Builds the ChatHistoryService from HistoryConfig.

Shared by the bot and the operator scripts.
"""
import logging
from typing import Optional

from apps.telegram_bot.config import HistoryConfig
from llm.chat_client import ChatClient
from llm.embedders import OpenAIEmbedder, SentenceTransformerEmbedder
from rag.contracts import ToolInvoker
from rag.pipelines.chat_history import ChatHistoryService


logger = logging.getLogger(__name__)


def build_embedder():
    if HistoryConfig.EMBEDDING_BACKEND == "openai":
        return OpenAIEmbedder()
    return SentenceTransformerEmbedder()


def build_chat_client() -> ChatClient:
    return ChatClient(
        api_key=HistoryConfig.LLM_API_KEY or None,
        base_url=HistoryConfig.LLM_BASE_URL,
        default_model=HistoryConfig.LLM_MODEL,
        cache_enabled=HistoryConfig.LLM_CACHE_ENABLED,
        cache_path=HistoryConfig.LLM_CACHE_PATH,
    )


def build_service(with_llm: bool = True, tools: Optional[ToolInvoker] = None) -> ChatHistoryService:
    """
    Args:
        with_llm: Create the chat client. Recording, indexing and operator
            actions do not need it; ask() then abstains with generation_error.
        tools: Optional tool registry offered to the chat model
    """
    llm_client = build_chat_client() if with_llm else None
    service = ChatHistoryService.build(
        HistoryConfig.HISTORY_DB_PATH,
        HistoryConfig.EMBEDDINGS_DB_PATH,
        embedder=build_embedder(),
        llm_client=llm_client,
        tools=tools,
        chunker_cfg=HistoryConfig.chunker_config(),
        queue_cfg=HistoryConfig.queue_config(),
        indexer_cfg=HistoryConfig.indexer_config(),
        retriever_cfg=HistoryConfig.retriever_config(),
        composer_cfg=HistoryConfig.composer_config(),
    )
    logger.info(f"Service ready (embedding model {service.model_id}, llm={'on' if with_llm else 'off'})")
    return service
