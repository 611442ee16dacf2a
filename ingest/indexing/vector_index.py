"""
FAISS vector index helpers.
"""

from __future__ import annotations

from typing import List, Tuple

import faiss
import numpy as np


def normalize_rows(vectors: np.ndarray) -> np.ndarray:
    """L2-normalize rows so inner product equals cosine similarity."""
    v = np.ascontiguousarray(np.asarray(vectors, dtype=np.float32))
    if v.ndim == 1:
        v = v.reshape(1, -1)
    if v.size:
        faiss.normalize_L2(v)
    return v


def build_faiss_ip(embeddings: np.ndarray) -> faiss.Index:
    """
    Build IndexFlatIP for cosine similarity over the given rows.
    """
    if embeddings.ndim != 2:
        raise ValueError("embeddings must be 2D [N, D]")
    n, d = embeddings.shape
    index = faiss.IndexFlatIP(d)
    if n:
        index.add(normalize_rows(embeddings))
    return index


def search_ip(index: faiss.Index, query_vector: np.ndarray, k: int) -> List[Tuple[int, float]]:
    """
    Top-k (row, cosine) pairs for a single query vector.
    """
    if index.ntotal == 0 or k <= 0:
        return []
    q = normalize_rows(query_vector)
    if q.shape[1] != index.d:
        raise ValueError(f"Query dim {q.shape[1]} does not match index dim {index.d}")
    scores, indices = index.search(q, min(k, index.ntotal))
    out: List[Tuple[int, float]] = []
    for score, idx in zip(scores[0], indices[0]):
        if idx == -1:  # FAISS returns -1 for empty results
            break
        out.append((int(idx), float(score)))
    return out
