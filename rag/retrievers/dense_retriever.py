"""
Dense (vector) retriever over one chat's indexed chunks, using FAISS.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import faiss
import numpy as np

from knowledge.errors import InvariantViolation
from knowledge.models import Chunk, RetrievedChunk, to_epoch
from ingest.indexing.chunk_store import ChunkStore
from ingest.indexing.embedding_store import DuckDbEmbeddingStore
from ingest.indexing.vector_index import build_faiss_ip, search_ip


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetrieverConfig:
    top_k: int = 8
    min_similarity: float = 0.3


@dataclass
class _ChatIndex:
    signature: Tuple[str, ...]
    index: faiss.Index
    chunk_ids: List[str]


class ChatRetriever:
    """
    Retrieves `indexed` chunks of the requesting chat only.

    A FAISS IndexFlatIP is kept per (chat, model) and rebuilt whenever the set
    of indexed chunks changes; the chunk table stays authoritative, the index
    is a cache derived from it.
    """

    def __init__(
        self,
        chunks: ChunkStore,
        embeddings: DuckDbEmbeddingStore,
        model_id: str,
        cfg: Optional[RetrieverConfig] = None,
    ):
        self.chunks = chunks
        self.embeddings = embeddings
        self.model_id = model_id
        self.cfg = cfg or RetrieverConfig()
        self._indices: Dict[Tuple[int, str], _ChatIndex] = {}
        self._lock = threading.Lock()

    def _index_for(self, chat_id: int, indexed: List[Chunk]) -> _ChatIndex:
        signature = tuple(sorted(ch.chunk_id for ch in indexed))
        key = (chat_id, self.model_id)
        with self._lock:
            cached = self._indices.get(key)
            if cached is not None and cached.signature == signature:
                return cached

        vectors = self.embeddings.get_many(self.model_id, list(signature))
        chunk_ids = [cid for cid in signature if cid in vectors]
        missing = len(signature) - len(chunk_ids)
        if missing:
            logger.warning(f"Chat {chat_id}: {missing} indexed chunks have no {self.model_id} embedding")

        if chunk_ids:
            matrix = np.stack([vectors[cid] for cid in chunk_ids], axis=0)
        else:
            matrix = np.zeros((0, 1), dtype=np.float32)
        built = _ChatIndex(signature=signature, index=build_faiss_ip(matrix), chunk_ids=chunk_ids)
        logger.debug(f"Built FAISS index for chat {chat_id}: {built.index.ntotal} vectors")

        with self._lock:
            self._indices[key] = built
        return built

    def retrieve(
        self,
        chat_id: int,
        query_vector: Sequence[float],
        k: Optional[int] = None,
        min_similarity: Optional[float] = None,
    ) -> List[RetrievedChunk]:
        """
        Retrieve up to k chunks of `chat_id` with cosine similarity at or
        above `min_similarity`.

        Ordered by descending score, ties broken by the more recent chunk end.
        Returns fewer than k results rather than padding with weak matches.
        """
        k = self.cfg.top_k if k is None else k
        min_similarity = self.cfg.min_similarity if min_similarity is None else min_similarity

        indexed = self.chunks.indexed_chunks(chat_id)
        if not indexed or k <= 0:
            return []
        by_id = {ch.chunk_id: ch for ch in indexed}

        chat_index = self._index_for(chat_id, indexed)
        hits = search_ip(chat_index.index, np.asarray(query_vector, dtype=np.float32), chat_index.index.ntotal)

        results: List[RetrievedChunk] = []
        for row, score in hits:
            if score < min_similarity:
                continue
            chunk = by_id.get(chat_index.chunk_ids[row])
            if chunk is None:
                continue
            if chunk.chat_id != chat_id:
                raise InvariantViolation(
                    f"retrieval for chat {chat_id} produced chunk {chunk.chunk_id} of chat {chunk.chat_id}",
                    {"chat_id": chat_id, "chunk_id": chunk.chunk_id},
                )
            results.append(RetrievedChunk(chunk=chunk, score=score, metadata={"row": row}))

        results.sort(key=lambda r: (-r.score, -to_epoch(r.chunk.time_range_end)))
        return results[:k]
