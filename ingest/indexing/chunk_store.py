"""
Chunk persistence on top of the history database.

Chunks are never rewritten in place: re-chunking inserts new rows and marks
the rows they replace `superseded`. A chunk's identity is its natural key
(chat, message range, content hash), so inserting the same candidate twice is
a no-op.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from typing import Dict, List, Optional

from knowledge.errors import InvariantViolation
from knowledge.models import Chunk, ChunkCandidate, ChunkStatus, from_epoch, to_epoch
from ingest.indexing.database import HistoryDatabase


logger = logging.getLogger(__name__)

_LIVE = "status != 'superseded'"


def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    return Chunk(
        chunk_id=row["chunk_id"],
        chat_id=row["chat_id"],
        first_message_id=row["first_message_id"],
        last_message_id=row["last_message_id"],
        time_range_start=from_epoch(row["first_ts"]),
        time_range_end=from_epoch(row["last_ts"]),
        participant_set=json.loads(row["participants"]),
        message_count=row["message_count"],
        token_count=row["token_count"],
        rendered_text=row["rendered_text"],
        content_hash=row["content_hash"],
        is_open=bool(row["is_open"]),
        status=ChunkStatus(row["status"]),
        created_at=from_epoch(row["created_at"]),
        indexed_at=from_epoch(row["indexed_at"]),
        superseded_at=from_epoch(row["superseded_at"]),
        superseded_by=row["superseded_by"],
    )


class ChunkStore:
    def __init__(self, db: HistoryDatabase):
        self.db = db

    # ================== Reads ==================

    def get(self, chunk_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Chunk]:
        with self.db.reader(conn) as c:
            row = c.execute("SELECT * FROM chunks WHERE chunk_id = ?", (chunk_id,)).fetchone()
        return _row_to_chunk(row) if row else None

    def get_many(self, chunk_ids: List[str], conn: Optional[sqlite3.Connection] = None) -> Dict[str, Chunk]:
        if not chunk_ids:
            return {}
        placeholders = ",".join(["?"] * len(chunk_ids))
        with self.db.reader(conn) as c:
            rows = c.execute(f"SELECT * FROM chunks WHERE chunk_id IN ({placeholders})", chunk_ids).fetchall()
        return {r["chunk_id"]: _row_to_chunk(r) for r in rows}

    def live_chunks(self, chat_id: int, conn: Optional[sqlite3.Connection] = None) -> List[Chunk]:
        with self.db.reader(conn) as c:
            rows = c.execute(
                f"SELECT * FROM chunks WHERE chat_id = ? AND {_LIVE} ORDER BY first_ts, first_message_id",
                (chat_id,),
            ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def live_chunks_from(
        self,
        chat_id: int,
        start_ts: float,
        start_message_id: int,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[Chunk]:
        """Live chunks that start at or after the given timeline position."""
        with self.db.reader(conn) as c:
            rows = c.execute(
                f"""
                SELECT * FROM chunks
                WHERE chat_id = ? AND {_LIVE}
                  AND (first_ts > ? OR (first_ts = ? AND first_message_id >= ?))
                ORDER BY first_ts, first_message_id
                """,
                (chat_id, start_ts, start_ts, start_message_id),
            ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def find_live_chunk_containing(
        self,
        chat_id: int,
        message_id: int,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[Chunk]:
        with self.db.reader(conn) as c:
            row = c.execute(
                f"""
                SELECT c.* FROM chunks AS c
                JOIN chunk_messages AS cm ON cm.chunk_id = c.chunk_id
                WHERE cm.chat_id = ? AND cm.message_id = ? AND c.{_LIVE}
                """,
                (chat_id, message_id),
            ).fetchone()
        return _row_to_chunk(row) if row else None

    def last_live_chunk_starting_before(
        self,
        chat_id: int,
        ts: float,
        message_id: int,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[Chunk]:
        """The latest live chunk whose first message is at or before the position."""
        with self.db.reader(conn) as c:
            row = c.execute(
                f"""
                SELECT * FROM chunks
                WHERE chat_id = ? AND {_LIVE}
                  AND (first_ts < ? OR (first_ts = ? AND first_message_id <= ?))
                ORDER BY first_ts DESC, first_message_id DESC
                LIMIT 1
                """,
                (chat_id, ts, ts, message_id),
            ).fetchone()
        return _row_to_chunk(row) if row else None

    def open_chunk(self, chat_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[Chunk]:
        with self.db.reader(conn) as c:
            row = c.execute(
                f"SELECT * FROM chunks WHERE chat_id = ? AND is_open = 1 AND {_LIVE} ORDER BY first_ts DESC LIMIT 1",
                (chat_id,),
            ).fetchone()
        return _row_to_chunk(row) if row else None

    def indexed_chunks(self, chat_id: int, conn: Optional[sqlite3.Connection] = None) -> List[Chunk]:
        with self.db.reader(conn) as c:
            rows = c.execute(
                "SELECT * FROM chunks WHERE chat_id = ? AND status = ? ORDER BY first_ts, first_message_id",
                (chat_id, ChunkStatus.INDEXED.value),
            ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def chunks_with_range(self, chat_id: int, first_message_id: int, last_message_id: int) -> List[Chunk]:
        """All chunks (live or superseded) with exactly this message range."""
        with self.db.reader() as c:
            rows = c.execute(
                "SELECT * FROM chunks WHERE chat_id = ? AND first_message_id = ? AND last_message_id = ?",
                (chat_id, first_message_id, last_message_id),
            ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def status_counts(self, chat_id: int) -> Dict[ChunkStatus, int]:
        with self.db.reader() as c:
            rows = c.execute(
                "SELECT status, COUNT(*) AS n FROM chunks WHERE chat_id = ? GROUP BY status",
                (chat_id,),
            ).fetchall()
        counts = {s: 0 for s in ChunkStatus}
        for r in rows:
            counts[ChunkStatus(r["status"])] = int(r["n"])
        return counts

    def last_indexed_at(self, chat_id: int):
        with self.db.reader() as c:
            row = c.execute(
                "SELECT MAX(indexed_at) FROM chunks WHERE chat_id = ? AND indexed_at IS NOT NULL",
                (chat_id,),
            ).fetchone()
        return from_epoch(row[0]) if row and row[0] is not None else None

    # ================== Writes ==================

    def insert_candidate(
        self,
        candidate: ChunkCandidate,
        status: ChunkStatus,
        conn: Optional[sqlite3.Connection] = None,
    ) -> bool:
        """
        Persist a chunk candidate. Returns False when a live chunk with the
        same natural key already exists. A superseded twin is revived.
        """
        chunk_id = candidate.chunk_id
        now = time.time()
        indexed_at = now if status == ChunkStatus.INDEXED else None
        with self.db.transaction(conn) as c:
            row = c.execute("SELECT status FROM chunks WHERE chunk_id = ?", (chunk_id,)).fetchone()
            if row is not None:
                if row["status"] != ChunkStatus.SUPERSEDED.value:
                    return False
                c.execute(
                    """
                    UPDATE chunks
                    SET status = ?, is_open = ?, indexed_at = ?, superseded_at = NULL, superseded_by = NULL
                    WHERE chunk_id = ?
                    """,
                    (status.value, int(candidate.is_open), indexed_at, chunk_id),
                )
                logger.info(f"Revived superseded chunk {chunk_id} as {status.value}")
                return True

            c.execute(
                """
                INSERT INTO chunks (chunk_id, chat_id, first_message_id, last_message_id, first_ts, last_ts,
                                    participants, message_count, token_count, rendered_text, content_hash,
                                    is_open, status, created_at, indexed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    chunk_id,
                    candidate.chat_id,
                    candidate.first_message_id,
                    candidate.last_message_id,
                    to_epoch(candidate.time_range_start),
                    to_epoch(candidate.time_range_end),
                    json.dumps(candidate.participants, ensure_ascii=False),
                    candidate.message_count,
                    candidate.token_count,
                    candidate.rendered_text,
                    candidate.content_hash,
                    int(candidate.is_open),
                    status.value,
                    now,
                    indexed_at,
                ),
            )
            c.executemany(
                "INSERT OR IGNORE INTO chunk_messages (chunk_id, chat_id, message_id) VALUES (?, ?, ?)",
                [(chunk_id, candidate.chat_id, mid) for mid in candidate.message_ids],
            )
        return True

    def supersede(
        self,
        chunk_ids: List[str],
        superseded_by: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> int:
        if not chunk_ids:
            return 0
        now = time.time()
        with self.db.transaction(conn) as c:
            n = 0
            for chunk_id in chunk_ids:
                cur = c.execute(
                    f"UPDATE chunks SET status = ?, superseded_at = ?, superseded_by = ? WHERE chunk_id = ? AND {_LIVE}",
                    (ChunkStatus.SUPERSEDED.value, now, superseded_by, chunk_id),
                )
                n += cur.rowcount
        return n

    def set_status(self, chunk_id: str, status: ChunkStatus, conn: Optional[sqlite3.Connection] = None) -> bool:
        """Set the status of a live chunk."""
        indexed_at = time.time() if status == ChunkStatus.INDEXED else None
        with self.db.transaction(conn) as c:
            cur = c.execute(
                f"UPDATE chunks SET status = ?, indexed_at = COALESCE(?, indexed_at) WHERE chunk_id = ? AND {_LIVE}",
                (status.value, indexed_at, chunk_id),
            )
            return cur.rowcount == 1

    def set_open(self, chunk_id: str, is_open: bool, conn: Optional[sqlite3.Connection] = None) -> None:
        with self.db.transaction(conn) as c:
            c.execute("UPDATE chunks SET is_open = ? WHERE chunk_id = ?", (int(is_open), chunk_id))

    def mark_stale(self, chunk_id: str, conn: Optional[sqlite3.Connection] = None) -> bool:
        changed = self.set_status(chunk_id, ChunkStatus.STALE, conn=conn)
        if changed:
            logger.info(f"Chunk {chunk_id} marked stale")
        return changed

    def mark_indexed(self, chunk_id: str, conn: Optional[sqlite3.Connection] = None) -> bool:
        """pending_embedding -> indexed. No-op for any other status."""
        with self.db.transaction(conn) as c:
            cur = c.execute(
                "UPDATE chunks SET status = ?, indexed_at = ? WHERE chunk_id = ? AND status = ?",
                (ChunkStatus.INDEXED.value, time.time(), chunk_id, ChunkStatus.PENDING_EMBEDDING.value),
            )
            return cur.rowcount == 1

    # ================== Invariants ==================

    def verify_no_overlap(self, chat_id: int, conn: Optional[sqlite3.Connection] = None) -> None:
        """
        Raise InvariantViolation if a message belongs to two live chunks or
        live chunk ranges interleave on the timeline.
        """
        with self.db.reader(conn) as c:
            dup = c.execute(
                f"""
                SELECT cm.message_id, COUNT(*) AS n FROM chunk_messages AS cm
                JOIN chunks AS ch ON ch.chunk_id = cm.chunk_id
                WHERE cm.chat_id = ? AND ch.{_LIVE}
                GROUP BY cm.message_id HAVING COUNT(*) > 1
                LIMIT 1
                """,
                (chat_id,),
            ).fetchone()
            if dup is not None:
                raise InvariantViolation(
                    f"message {dup['message_id']} belongs to {dup['n']} live chunks",
                    {"chat_id": chat_id, "message_id": dup["message_id"]},
                )

            rows = c.execute(
                f"""
                SELECT chunk_id, first_ts, first_message_id, last_ts, last_message_id FROM chunks
                WHERE chat_id = ? AND {_LIVE} ORDER BY first_ts, first_message_id
                """,
                (chat_id,),
            ).fetchall()

        prev = None
        for r in rows:
            if prev is not None and (r["first_ts"], r["first_message_id"]) <= (prev["last_ts"], prev["last_message_id"]):
                raise InvariantViolation(
                    f"live chunks {prev['chunk_id']} and {r['chunk_id']} overlap",
                    {"chat_id": chat_id, "previous": prev["chunk_id"], "next": r["chunk_id"]},
                )
            prev = r
