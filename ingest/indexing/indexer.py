"""
Incremental indexer: turns work items into chunks and embeddings.

chunk_region
    Re-chunks a chat from the start of the latest live chunk at or before the
    named message up to the end of the chat's stream. Chunk boundaries reset
    the chunker state, so starting at a live chunk's first message reproduces
    everything before it. Candidates identical to live chunks are kept; new
    ones are inserted and get an embed_chunk item; live chunks that no longer
    match are superseded. All of it commits in one transaction.

embed_chunk / reembed_chunk
    Calls the embedding capability outside any transaction, stores the vector
    (insert-if-absent per model) and moves pending chunks to `indexed` when
    the vector belongs to the active model.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from knowledge.errors import InvariantViolation, TransientCapabilityFailure
from knowledge.models import Chunk, ChunkCandidate, ChunkStatus, WorkItem, WorkKind, to_epoch
from ingest.chunking.time_gap import ChunkerConfig, build_chunks
from ingest.event_store import EventStore
from ingest.indexing.chunk_store import ChunkStore
from ingest.indexing.database import HistoryDatabase
from ingest.indexing.embedding_store import DuckDbEmbeddingStore
from ingest.indexing.work_queue import WorkQueue
from rag.contracts import EmbeddingProvider


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndexerConfig:
    model_id: str = "intfloat/e5-small-v2"  # active embedding model


@dataclass
class RegionResult:
    """What a chunk_region pass changed."""
    kept: List[str]
    inserted: List[str]
    superseded: List[str]
    embed_work_ids: List[str]


def _span(ch) -> tuple:
    return (
        (to_epoch(ch.time_range_start), ch.first_message_id),
        (to_epoch(ch.time_range_end), ch.last_message_id),
    )


def _overlaps(a, b) -> bool:
    (a_start, a_end), (b_start, b_end) = _span(a), _span(b)
    return not (a_end < b_start or b_end < a_start)


class IncrementalIndexer:
    def __init__(
        self,
        db: HistoryDatabase,
        events: EventStore,
        chunks: ChunkStore,
        embeddings: DuckDbEmbeddingStore,
        queue: WorkQueue,
        embedder: EmbeddingProvider,
        chunker_cfg: Optional[ChunkerConfig] = None,
        cfg: Optional[IndexerConfig] = None,
    ):
        self.db = db
        self.events = events
        self.chunks = chunks
        self.embeddings = embeddings
        self.queue = queue
        self.embedder = embedder
        self.chunker_cfg = chunker_cfg or ChunkerConfig()
        self.cfg = cfg or IndexerConfig()

    @property
    def model_id(self) -> str:
        return self.cfg.model_id

    def process(self, item: WorkItem) -> None:
        """Run one work item. Raises on failure; the caller records it."""
        if item.kind == WorkKind.CHUNK_REGION:
            self.process_chunk_region(item)
        elif item.kind in (WorkKind.EMBED_CHUNK, WorkKind.REEMBED_CHUNK):
            self.process_embedding(item)
        else:
            raise ValueError(f"Unknown work kind: {item.kind}")

    # ================== Chunking ==================

    def _window_start(self, chat_id: int, ts: float, message_id: int, conn: sqlite3.Connection):
        anchor = self.chunks.last_live_chunk_starting_before(chat_id, ts, message_id, conn=conn)
        if anchor is not None:
            return (to_epoch(anchor.time_range_start), anchor.first_message_id)
        return self.events.first_position(chat_id, conn=conn)

    def process_chunk_region(self, item: WorkItem) -> RegionResult:
        chat_id = item.chat_id
        from_message_id = int(item.payload["from_message_id"])

        result = RegionResult(kept=[], inserted=[], superseded=[], embed_work_ids=[])
        with self.db.transaction() as c:
            pos = self.events.message_position(chat_id, from_message_id, conn=c)
            if pos is None:
                logger.warning(f"chunk_region {item.work_id}: message {chat_id}/{from_message_id} not stored, skipping")
                return result

            start = self._window_start(chat_id, pos[0], pos[1], c)
            messages = self.events.get_latest_messages(chat_id, start=start, conn=c)
            candidates = build_chunks(chat_id, messages, self.chunker_cfg)
            existing = self.chunks.live_chunks_from(chat_id, start[0], start[1], conn=c)
            existing_by_id: Dict[str, Chunk] = {ch.chunk_id: ch for ch in existing}

            keep: Set[str] = set()
            new_candidates: List[ChunkCandidate] = []
            for cand in candidates:
                current = existing_by_id.get(cand.chunk_id)
                if current is None:
                    new_candidates.append(cand)
                    continue
                keep.add(cand.chunk_id)
                result.kept.append(cand.chunk_id)
                if current.is_open != cand.is_open:
                    self.chunks.set_open(cand.chunk_id, cand.is_open, conn=c)
                if current.status == ChunkStatus.STALE:
                    # Edit did not change the rendered transcript.
                    self._restore(cand.chunk_id, chat_id, c, result)

            superseded_ids = [ch.chunk_id for ch in existing if ch.chunk_id not in keep]
            for ch in existing:
                if ch.chunk_id in keep:
                    continue
                replacement = next((cand.chunk_id for cand in new_candidates if _overlaps(cand, ch)), None)
                self.chunks.supersede([ch.chunk_id], superseded_by=replacement, conn=c)
            result.superseded.extend(superseded_ids)

            for cand in new_candidates:
                if self.embeddings.has(cand.chunk_id, self.model_id):
                    status = ChunkStatus.INDEXED
                else:
                    status = ChunkStatus.PENDING_EMBEDDING
                self.chunks.insert_candidate(cand, status, conn=c)
                result.inserted.append(cand.chunk_id)
                if status == ChunkStatus.PENDING_EMBEDDING:
                    work_id = self.queue.enqueue(
                        chat_id,
                        WorkKind.EMBED_CHUNK,
                        {"chunk_id": cand.chunk_id, "model_id": self.model_id},
                        conn=c,
                    )
                    result.embed_work_ids.append(work_id)

            try:
                self.chunks.verify_no_overlap(chat_id, conn=c)
            except InvariantViolation as e:
                logger.error(
                    f"chunk_region {item.work_id} for chat {chat_id} would leave overlapping chunks: {e} "
                    f"context={e.context} window_start={start} candidates={[x.chunk_id for x in candidates]}"
                )
                raise

        logger.info(
            f"chunk_region {item.work_id} chat {chat_id}: {len(messages)} messages, "
            f"{len(result.kept)} kept, {len(result.inserted)} new, {len(result.superseded)} superseded"
        )
        return result

    def _restore(self, chunk_id: str, chat_id: int, conn: sqlite3.Connection, result: RegionResult) -> None:
        if self.embeddings.has(chunk_id, self.model_id):
            self.chunks.set_status(chunk_id, ChunkStatus.INDEXED, conn=conn)
            return
        self.chunks.set_status(chunk_id, ChunkStatus.PENDING_EMBEDDING, conn=conn)
        result.embed_work_ids.append(
            self.queue.enqueue(chat_id, WorkKind.EMBED_CHUNK, {"chunk_id": chunk_id, "model_id": self.model_id}, conn=conn)
        )

    # ================== Embedding ==================

    def process_embedding(self, item: WorkItem) -> bool:
        """Returns True when a new vector was stored."""
        chunk_id = item.payload["chunk_id"]
        model_id = item.payload.get("model_id") or self.model_id

        chunk = self.chunks.get(chunk_id)
        if chunk is None:
            logger.warning(f"{item.kind.value} {item.work_id}: chunk {chunk_id} does not exist, skipping")
            return False
        if chunk.status == ChunkStatus.SUPERSEDED:
            logger.info(f"{item.kind.value} {item.work_id}: chunk {chunk_id} superseded, skipping")
            return False

        stored = False
        if not self.embeddings.has(chunk_id, model_id):
            try:
                vector = self.embedder.embed(chunk.rendered_text, model_id)
            except TransientCapabilityFailure:
                raise
            except Exception as e:
                raise TransientCapabilityFailure(f"embedding {chunk_id} with {model_id} failed: {e}", capability="embedding") from e
            stored = self.embeddings.put(chunk_id, model_id, vector)

        if model_id == self.model_id and self.chunks.mark_indexed(chunk_id):
            logger.debug(f"Chunk {chunk_id} indexed with {model_id}")
        return stored

    def request_reembed(self, chat_id: int, model_id: str) -> List[str]:
        """Enqueue reembed_chunk for every live chunk of the chat (model migration)."""
        work_ids: List[str] = []
        with self.db.transaction() as c:
            for ch in self.chunks.live_chunks(chat_id, conn=c):
                if ch.status == ChunkStatus.STALE:
                    continue
                work_ids.append(
                    self.queue.enqueue(chat_id, WorkKind.REEMBED_CHUNK, {"chunk_id": ch.chunk_id, "model_id": model_id}, conn=c)
                )
        logger.info(f"Queued {len(work_ids)} re-embeddings for chat {chat_id} with {model_id}")
        return work_ids
