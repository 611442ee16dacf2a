"""
DuckDB-backed embedding store.

One row per (model_id, chunk_id). Writing an embedding for a new model adds
a row next to the old one, so a model migration never loses vectors. Writes
are insert-if-absent, which makes a re-processed embedding job a no-op.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import duckdb
import numpy as np

from knowledge.models import Embedding, ensure_utc


logger = logging.getLogger(__name__)


class DuckDbEmbeddingStore:
    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.con = duckdb.connect(str(self.db_path))
        # A DuckDB connection must not be used from several threads at once.
        self._lock = threading.Lock()
        self._init_schema()

    def close(self) -> None:
        with self._lock:
            self.con.close()

    def _init_schema(self) -> None:
        with self._lock:
            self.con.execute(
                """
                CREATE TABLE IF NOT EXISTS embeddings (
                  model_id VARCHAR NOT NULL,
                  chunk_id VARCHAR NOT NULL,
                  dim INTEGER NOT NULL,
                  vec BLOB NOT NULL,
                  created_at TIMESTAMP DEFAULT now(),
                  PRIMARY KEY (model_id, chunk_id)
                );
                """
            )

    @staticmethod
    def _pack(vec: Sequence[float] | np.ndarray) -> Tuple[int, bytes]:
        v = np.asarray(vec, dtype=np.float32).reshape(-1)
        return int(v.shape[0]), v.tobytes(order="C")

    @staticmethod
    def _unpack(dim: int, blob: bytes) -> np.ndarray:
        v = np.frombuffer(blob, dtype=np.float32)
        if v.shape[0] != dim:
            raise ValueError(f"Embedding dim mismatch: expected {dim}, got {v.shape[0]}")
        return v

    def put(self, chunk_id: str, model_id: str, vector: Sequence[float] | np.ndarray) -> bool:
        """
        Store the embedding unless one already exists for (chunk_id, model_id).
        Returns True if a row was written.
        """
        dim, blob = self._pack(vector)
        if dim == 0:
            raise ValueError(f"Empty embedding for chunk {chunk_id}")
        with self._lock:
            exists = self.con.execute(
                "SELECT 1 FROM embeddings WHERE model_id = ? AND chunk_id = ?",
                [model_id, chunk_id],
            ).fetchone()
            if exists:
                return False
            self.con.execute(
                "INSERT INTO embeddings (model_id, chunk_id, dim, vec) VALUES (?, ?, ?, ?)",
                [model_id, chunk_id, dim, blob],
            )
        return True

    def has(self, chunk_id: str, model_id: str) -> bool:
        with self._lock:
            row = self.con.execute(
                "SELECT 1 FROM embeddings WHERE model_id = ? AND chunk_id = ?",
                [model_id, chunk_id],
            ).fetchone()
        return row is not None

    def get(self, chunk_id: str, model_id: str) -> Optional[Embedding]:
        with self._lock:
            row = self.con.execute(
                "SELECT dim, vec, created_at FROM embeddings WHERE model_id = ? AND chunk_id = ?",
                [model_id, chunk_id],
            ).fetchone()
        if row is None:
            return None
        dim, blob, created_at = row
        created = ensure_utc(created_at) if isinstance(created_at, datetime) else None
        return Embedding(
            chunk_id=chunk_id,
            model_id=model_id,
            vector=self._unpack(int(dim), blob).tolist(),
            created_at=created,
        )

    def get_many(self, model_id: str, chunk_ids: List[str], *, batch_size: int = 500) -> Dict[str, np.ndarray]:
        """
        Returns a dict chunk_id -> embedding (float32).
        """
        if not chunk_ids:
            return {}
        out: Dict[str, np.ndarray] = {}
        for i in range(0, len(chunk_ids), batch_size):
            batch = chunk_ids[i : i + batch_size]
            placeholders = ",".join(["?"] * len(batch))
            with self._lock:
                rows = self.con.execute(
                    f"SELECT chunk_id, dim, vec FROM embeddings WHERE model_id = ? AND chunk_id IN ({placeholders})",
                    [model_id, *batch],
                ).fetchall()
            for cid, dim, blob in rows:
                out[str(cid)] = self._unpack(int(dim), blob)
        return out

    def put_many(self, model_id: str, items: Iterable[Tuple[str, np.ndarray]]) -> int:
        return sum(1 for chunk_id, vec in items if self.put(chunk_id, model_id, vec))

    def model_ids(self, chunk_id: str) -> List[str]:
        with self._lock:
            rows = self.con.execute(
                "SELECT model_id FROM embeddings WHERE chunk_id = ? ORDER BY model_id",
                [chunk_id],
            ).fetchall()
        return [str(r[0]) for r in rows]

    def count(self, model_id: Optional[str] = None) -> int:
        with self._lock:
            if model_id is None:
                row = self.con.execute("SELECT COUNT(*) FROM embeddings").fetchone()
            else:
                row = self.con.execute("SELECT COUNT(*) FROM embeddings WHERE model_id = ?", [model_id]).fetchone()
        return int(row[0])
