"""
ChatHistoryService: the facade wiring ingestion, indexing and QA together.

record()  - Telegram update -> event store (+ chunk_region work)
ask()     - question -> query embedding -> per-chat retrieval -> composer
status()  - per-chat indexing progress
backfill(), reembed(), failed_work(), retry_failed() - operator actions
"""
import time
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from knowledge.errors import InvariantViolation
from knowledge.models import (
    Answer,
    ChatStatus,
    ChunkStatus,
    RawEvent,
    RecordResult,
    RetrievalTrace,
    WorkItem,
    WorkKind,
)
from ingest.chunking.time_gap import ChunkerConfig
from ingest.event_store import EventStore
from ingest.indexing.chunk_store import ChunkStore
from ingest.indexing.database import HistoryDatabase
from ingest.indexing.embedding_store import DuckDbEmbeddingStore
from ingest.indexing.indexer import IncrementalIndexer, IndexerConfig
from ingest.indexing.work_queue import QueueConfig, WorkQueue
from ingest.indexing.worker import IndexerWorker, WorkerPool
from rag.contracts import ChatModel, EmbeddingProvider, ToolInvoker
from rag.generators.answer_composer import AnswerComposer, ComposerConfig
from rag.guardrails.citation_guard import abstention
from rag.retrievers.dense_retriever import ChatRetriever, RetrieverConfig


logger = logging.getLogger(__name__)


class ChatHistoryService:
    """
    One instance per process; safe to share between the bot's handlers and
    indexing worker threads (every component opens its own connections).
    """

    def __init__(
        self,
        db: HistoryDatabase,
        embeddings: DuckDbEmbeddingStore,
        embedder: EmbeddingProvider,
        composer: AnswerComposer,
        chunker_cfg: Optional[ChunkerConfig] = None,
        queue_cfg: Optional[QueueConfig] = None,
        indexer_cfg: Optional[IndexerConfig] = None,
        retriever_cfg: Optional[RetrieverConfig] = None,
    ):
        self.db = db
        self.embeddings = embeddings
        self.embedder = embedder
        self.composer = composer

        self.queue = WorkQueue(db, queue_cfg)
        self.chunks = ChunkStore(db)
        self.events = EventStore(db, self.chunks, self.queue)
        self.indexer = IncrementalIndexer(
            db, self.events, self.chunks, embeddings, self.queue, embedder, chunker_cfg, indexer_cfg
        )
        self.retriever = ChatRetriever(self.chunks, embeddings, self.indexer.model_id, retriever_cfg)

    @classmethod
    def build(
        cls,
        history_db_path: Union[str, Path],
        embeddings_db_path: Union[str, Path],
        embedder: EmbeddingProvider,
        llm_client: ChatModel,
        tools: Optional[ToolInvoker] = None,
        chunker_cfg: Optional[ChunkerConfig] = None,
        queue_cfg: Optional[QueueConfig] = None,
        indexer_cfg: Optional[IndexerConfig] = None,
        retriever_cfg: Optional[RetrieverConfig] = None,
        composer_cfg: Optional[ComposerConfig] = None,
    ) -> "ChatHistoryService":
        """
        Build a service over a SQLite history database and a DuckDB embedding store.
        """
        db = HistoryDatabase(history_db_path)
        embeddings = DuckDbEmbeddingStore(embeddings_db_path)
        composer = AnswerComposer(llm_client, tools=tools, cfg=composer_cfg)
        logger.info(f"Chat history service using {history_db_path} and {embeddings_db_path}")
        return cls(db, embeddings, embedder, composer, chunker_cfg, queue_cfg, indexer_cfg, retriever_cfg)

    def close(self) -> None:
        self.embeddings.close()

    @property
    def model_id(self) -> str:
        return self.indexer.model_id

    # ================== Ingestion ==================

    def record(self, raw_event: Union[RawEvent, Dict[str, Any]]) -> RecordResult:
        return self.events.record(raw_event)

    def import_events(self, raw_events: Iterable[Union[RawEvent, Dict[str, Any]]]) -> Dict[str, int]:
        """Record a batch of exported events. Returns stored/duplicate counts."""
        counts = {"stored": 0, "duplicate": 0}
        for raw in raw_events:
            result = self.record(raw)
            counts["duplicate" if result.is_duplicate else "stored"] += 1
        return counts

    # ================== Question answering ==================

    def ask(
        self,
        chat_id: int,
        question: str,
        k: Optional[int] = None,
        min_similarity: Optional[float] = None,
    ) -> Answer:
        """
        Answer a question from one chat's history.

        Always returns an Answer; failures become abstentions with a
        refusal_reason.
        """
        start_time = time.time()
        question = (question or "").strip()
        trace = RetrievalTrace(query=question, chat_id=chat_id, metadata={"model_id": self.model_id})

        if not question:
            return abstention(question, "empty_question", trace)

        retrieval_start = time.time()
        try:
            query_vector = self.embedder.embed_query(question, self.model_id)
            retrieved = self.retriever.retrieve(chat_id, query_vector, k=k, min_similarity=min_similarity)
        except InvariantViolation as e:
            logger.error(f"Retrieval invariant violated for chat {chat_id}: {e} context={e.context}")
            return abstention(question, "invariant_violation", trace, {"error": str(e)})
        except Exception as e:
            logger.error(f"Retrieval failed for chat {chat_id}: {e}")
            return abstention(question, "retrieval_error", trace, {"error": str(e)})
        retrieval_time = (time.time() - retrieval_start) * 1000

        logger.info(f"Chat {chat_id}: retrieved {len(retrieved)} chunks in {retrieval_time:.1f}ms")

        answer = self.composer.compose(question, retrieved)
        answer_chats = {c.chat_id for c in answer.citations}
        if answer_chats - {chat_id}:
            logger.error(f"Answer for chat {chat_id} cites other chats {sorted(answer_chats - {chat_id})}")
            return abstention(question, "invariant_violation", trace)

        answer.trace = answer.trace or trace
        answer.trace.chat_id = chat_id
        answer.trace.retrieved_chunks_count = len(retrieved)
        answer.trace.retrieval_time_ms = retrieval_time
        answer.trace.metadata.update({
            "model_id": self.model_id,
            "total_time_ms": (time.time() - start_time) * 1000,
        })
        return answer

    # ================== Operations ==================

    def status(self, chat_id: int) -> ChatStatus:
        counts = self.chunks.status_counts(chat_id)
        live = sum(n for s, n in counts.items() if s != ChunkStatus.SUPERSEDED)
        return ChatStatus(
            chat_id=chat_id,
            pending_work_count=self.queue.pending_count(chat_id),
            failed_work_count=self.queue.failed_count(chat_id),
            last_indexed_at=self.chunks.last_indexed_at(chat_id),
            message_count=self.events.count_messages(chat_id),
            live_chunk_count=live,
            indexed_chunk_count=counts.get(ChunkStatus.INDEXED, 0),
            stale_chunk_count=counts.get(ChunkStatus.STALE, 0),
        )

    def backfill(self, chat_id: int, start: datetime, end: datetime) -> List[str]:
        """
        Re-chunk the stored messages of [start, end]. Returns enqueued work ids.

        Re-chunking already runs to the end of the chat, so a single region
        item covers the whole range.
        """
        messages = self.events.messages_between(chat_id, start, end)
        if not messages:
            logger.info(f"Backfill for chat {chat_id}: no stored messages between {start} and {end}")
            return []
        work_id = self.queue.enqueue(
            chat_id,
            WorkKind.CHUNK_REGION,
            {"from_message_id": messages[0].message_id, "to_message_id": messages[-1].message_id},
        )
        logger.info(f"Backfill for chat {chat_id}: {len(messages)} messages, work {work_id}")
        return [work_id]

    def reembed(self, chat_id: int, model_id: str) -> List[str]:
        return self.indexer.request_reembed(chat_id, model_id)

    def failed_work(self, chat_id: Optional[int] = None) -> List[WorkItem]:
        return self.queue.list_failed(chat_id)

    def retry_failed(self, work_id: str) -> bool:
        return self.queue.retry_failed(work_id)

    # ================== Workers ==================

    def worker(self, owner: Optional[str] = None) -> IndexerWorker:
        return IndexerWorker(self.queue, self.indexer, owner=owner)

    def worker_pool(self, size: int = 2, poll_interval: float = 1.0) -> WorkerPool:
        return WorkerPool(self.queue, self.indexer, size=size, poll_interval=poll_interval)
