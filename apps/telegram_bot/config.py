"""
Recorder and service configuration.
"""
import os
from dotenv import load_dotenv

from ingest.chunking.time_gap import ChunkerConfig
from ingest.indexing.indexer import IndexerConfig
from ingest.indexing.work_queue import QueueConfig
from rag.generators.answer_composer import ComposerConfig
from rag.retrievers.dense_retriever import RetrieverConfig

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class HistoryConfig:
    """Configuration for the chat history recorder, workers and QA."""

    # Telegram settings
    TELEGRAM_TOKEN: str = os.getenv("TELEGRAM_BOT_TOKEN", "")

    # Data paths
    DATA_DIR: str = os.getenv("DATA_DIR", "data")
    HISTORY_DB_PATH: str = os.getenv("HISTORY_DB_PATH", os.path.join(DATA_DIR, "history.db"))
    EMBEDDINGS_DB_PATH: str = os.getenv("EMBEDDINGS_DB_PATH", os.path.join(DATA_DIR, "embeddings.duckdb"))
    LLM_CACHE_PATH: str = os.getenv("LLM_CACHE_PATH", os.path.join(DATA_DIR, "cache", "llm_cache.db"))

    # Capabilities
    EMBEDDING_MODEL: str = os.getenv("EMBEDDING_MODEL", "intfloat/e5-small-v2")
    EMBEDDING_BACKEND: str = os.getenv("EMBEDDING_BACKEND", "sentence-transformers")  # or "openai"
    LLM_API_KEY: str = os.getenv("LLM_API_KEY", os.getenv("DEEPSEEK_API_KEY", ""))
    LLM_BASE_URL: str = os.getenv("LLM_BASE_URL", "https://api.deepseek.com")
    LLM_MODEL: str = os.getenv("LLM_MODEL", "deepseek-chat")
    LLM_CACHE_ENABLED: bool = _env_bool("LLM_CACHE_ENABLED", True)

    # Chunking
    CHUNK_GAP_SECONDS: float = float(os.getenv("CHUNK_GAP_SECONDS", "900"))
    CHUNK_MAX_MESSAGES: int = int(os.getenv("CHUNK_MAX_MESSAGES", "80"))
    CHUNK_MAX_TOKENS: int = int(os.getenv("CHUNK_MAX_TOKENS", "1500"))
    CHUNK_MIN_MESSAGES: int = int(os.getenv("CHUNK_MIN_MESSAGES", "3"))

    # Work queue
    LEASE_SECONDS: float = float(os.getenv("LEASE_SECONDS", "300"))
    MAX_ATTEMPTS: int = int(os.getenv("MAX_ATTEMPTS", "5"))
    WORKER_COUNT: int = int(os.getenv("WORKER_COUNT", "2"))
    WORKER_POLL_SECONDS: float = float(os.getenv("WORKER_POLL_SECONDS", "1.0"))

    # Retrieval and answering
    TOP_K: int = int(os.getenv("TOP_K", "8"))
    MIN_SIMILARITY: float = float(os.getenv("MIN_SIMILARITY", "0.3"))
    MAX_TOOL_STEPS: int = int(os.getenv("MAX_TOOL_STEPS", "3"))
    STEP_TIMEOUT_SECONDS: float = float(os.getenv("STEP_TIMEOUT_SECONDS", "20"))
    QUESTION_TIMEOUT_SECONDS: float = float(os.getenv("QUESTION_TIMEOUT_SECONDS", "90"))
    REQUIRE_CITATIONS: bool = _env_bool("REQUIRE_CITATIONS", True)

    @classmethod
    def validate(cls, require_token: bool = True, require_llm: bool = False) -> None:
        """Validate configuration."""
        if require_token and not cls.TELEGRAM_TOKEN:
            raise ValueError("TELEGRAM_BOT_TOKEN not set in environment")

        if require_llm and not cls.LLM_API_KEY:
            raise ValueError("LLM_API_KEY not set in environment")

        if cls.CHUNK_MIN_MESSAGES > cls.CHUNK_MAX_MESSAGES:
            raise ValueError("CHUNK_MIN_MESSAGES must not exceed CHUNK_MAX_MESSAGES")

        if cls.EMBEDDING_BACKEND not in ("sentence-transformers", "openai"):
            raise ValueError(f"Unknown EMBEDDING_BACKEND: {cls.EMBEDDING_BACKEND}")

    @classmethod
    def chunker_config(cls) -> ChunkerConfig:
        return ChunkerConfig(
            gap_seconds=cls.CHUNK_GAP_SECONDS,
            max_messages=cls.CHUNK_MAX_MESSAGES,
            max_tokens=cls.CHUNK_MAX_TOKENS,
            min_messages=cls.CHUNK_MIN_MESSAGES,
        )

    @classmethod
    def queue_config(cls) -> QueueConfig:
        return QueueConfig(lease_seconds=cls.LEASE_SECONDS, max_attempts=cls.MAX_ATTEMPTS)

    @classmethod
    def indexer_config(cls) -> IndexerConfig:
        return IndexerConfig(model_id=cls.EMBEDDING_MODEL)

    @classmethod
    def retriever_config(cls) -> RetrieverConfig:
        return RetrieverConfig(top_k=cls.TOP_K, min_similarity=cls.MIN_SIMILARITY)

    @classmethod
    def composer_config(cls) -> ComposerConfig:
        return ComposerConfig(
            model=cls.LLM_MODEL,
            max_tool_steps=cls.MAX_TOOL_STEPS,
            step_timeout_seconds=cls.STEP_TIMEOUT_SECONDS,
            question_timeout_seconds=cls.QUESTION_TIMEOUT_SECONDS,
            require_citations=cls.REQUIRE_CITATIONS,
        )
