"""
Embedding providers.

Both implement the EmbeddingProvider contract: `embed` for chunk
transcripts, `embed_query` for questions. Vectors are L2-normalized so
inner product equals cosine similarity.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Dict, List, Optional

import numpy as np
from openai import OpenAI, APIError, APITimeoutError, APIConnectionError, RateLimitError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from knowledge.errors import TransientCapabilityFailure


logger = logging.getLogger(__name__)


def _normalize(vec) -> List[float]:
    v = np.asarray(vec, dtype=np.float32)
    norm = float(np.linalg.norm(v))
    if norm > 0:
        v = v / norm
    return v.astype(np.float32).tolist()


class SentenceTransformerEmbedder:
    """
    Local SentenceTransformers models, loaded lazily once per model id.

    E5 models get their task prefixes ("passage: " / "query: ").
    """

    def __init__(self, device: Optional[str] = None):
        self.device = device
        self._models: Dict[str, object] = {}
        self._lock = threading.Lock()

    def _model(self, model_id: str):
        with self._lock:
            model = self._models.get(model_id)
            if model is None:
                from sentence_transformers import SentenceTransformer

                os.environ.setdefault("TOKENIZERS_PARALLELISM", "false")
                logger.info(f"Loading embedding model {model_id}")
                model = SentenceTransformer(model_id, device=self.device)
                self._models[model_id] = model
            return model

    @staticmethod
    def _prefixed(text: str, model_id: str, kind: str) -> str:
        if "e5" in model_id.lower():
            return f"{kind}: {text}"
        return text

    def _encode(self, text: str, model_id: str) -> List[float]:
        try:
            emb = self._model(model_id).encode([text], normalize_embeddings=True, show_progress_bar=False)
        except (RuntimeError, OSError) as e:
            raise TransientCapabilityFailure(f"embedding failed: {e}", capability="embedding") from e
        return _normalize(emb[0])

    def embed(self, text: str, model_id: str) -> List[float]:
        return self._encode(self._prefixed(text, model_id, "passage"), model_id)

    def embed_query(self, text: str, model_id: str) -> List[float]:
        return self._encode(self._prefixed(text, model_id, "query"), model_id)


class OpenAIEmbedder:
    """Remote embeddings through an OpenAI-compatible endpoint."""

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None, timeout: float = 30.0):
        api_key = api_key or os.getenv("EMBEDDING_API_KEY") or os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise ValueError("Embedding API key not provided and EMBEDDING_API_KEY env var not set")
        self.client = OpenAI(api_key=api_key, base_url=base_url, timeout=timeout)

    @retry(
        retry=retry_if_exception_type((APITimeoutError, APIConnectionError, RateLimitError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True
    )
    def _create(self, text: str, model_id: str):
        return self.client.embeddings.create(model=model_id, input=[text])

    def embed(self, text: str, model_id: str) -> List[float]:
        try:
            response = self._create(text, model_id)
        except APIError as e:
            raise TransientCapabilityFailure(f"embedding failed: {e}", capability="embedding") from e
        return _normalize(response.data[0].embedding)

    def embed_query(self, text: str, model_id: str) -> List[float]:
        return self.embed(text, model_id)
