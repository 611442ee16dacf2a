"""
Append-only, idempotent store of inbound chat messages.

This is the durability boundary of the pipeline: it deduplicates deliveries,
keeps every edit as a new revision, and enqueues the follow-up chunking work
in the same transaction as the write. It never chunks or embeds anything
itself.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from knowledge.errors import DuplicateEvent
from knowledge.models import (
    MessageRecord,
    RawEvent,
    RecordResult,
    RecordStatus,
    WorkKind,
    from_epoch,
    to_epoch,
)
from ingest.indexing.chunk_store import ChunkStore
from ingest.indexing.database import HistoryDatabase
from ingest.indexing.work_queue import WorkQueue


logger = logging.getLogger(__name__)

Position = Tuple[float, int]  # (timestamp epoch, message_id)


def _row_to_record(row: sqlite3.Row) -> MessageRecord:
    return MessageRecord(
        chat_id=row["chat_id"],
        message_id=row["message_id"],
        revision=row["revision"],
        source_update_id=row["source_update_id"],
        timestamp=from_epoch(row["ts"]),
        text=row["text"] or "",
        sender_id=row["sender_id"],
        sender_name=row["sender_name"],
        reply_to_id=row["reply_to_id"],
        thread_id=row["thread_id"],
        payload_hash=row["payload_hash"],
        received_at=from_epoch(row["received_at"]),
    )


class EventStore:
    """
    Durable record of raw message events.

    Deduplication is two-layered: by `source_update_id` (redelivered update),
    then by `(chat_id, message_id, revision)` (same message seen again).
    """

    def __init__(self, db: HistoryDatabase, chunks: ChunkStore, queue: WorkQueue):
        self.db = db
        self.chunks = chunks
        self.queue = queue

    def _next_revision(self, c: sqlite3.Connection, event: RawEvent, payload_hash: str) -> Tuple[int, float]:
        """
        Revision number and timeline position for a new event.

        Raises DuplicateEvent for a redelivered update, or for a message
        revision that is already stored.
        """
        seen = c.execute(
            "SELECT 1 FROM raw_events WHERE source_update_id = ?",
            (event.source_update_id,),
        ).fetchone()
        if seen:
            raise DuplicateEvent(f"Duplicate update {event.source_update_id}", key=str(event.source_update_id))

        latest = c.execute(
            """
            SELECT revision, payload_hash, ts FROM raw_events
            WHERE chat_id = ? AND message_id = ?
            ORDER BY revision DESC LIMIT 1
            """,
            (event.chat_id, event.message_id),
        ).fetchone()

        if latest is None:
            return 0, to_epoch(event.timestamp)
        if not event.is_edit or latest["payload_hash"] == payload_hash:
            raise DuplicateEvent(
                f"Duplicate message {event.chat_id}/{event.message_id} (update {event.source_update_id})",
                key=f"{event.chat_id}/{event.message_id}",
                revision=latest["revision"],
            )
        # An edit keeps the message's place in the timeline.
        return latest["revision"] + 1, latest["ts"]

    def record(self, raw_event: Union[RawEvent, Dict[str, Any]]) -> RecordResult:
        event = raw_event if isinstance(raw_event, RawEvent) else RawEvent.model_validate(raw_event)
        payload_hash = event.payload_hash()
        received_at = to_epoch(event.received_at) if event.received_at else time.time()

        try:
            with self.db.transaction() as c:
                revision, ts = self._next_revision(c, event, payload_hash)
                work_id = self._store(c, event, revision, ts, payload_hash, received_at)
        except DuplicateEvent as dup:
            logger.debug(f"{dup} ignored")
            return RecordResult(status=RecordStatus.DUPLICATE, revision=dup.revision)

        logger.debug(f"Stored {event.chat_id}/{event.message_id} rev {revision}, work {work_id}")
        return RecordResult(status=RecordStatus.STORED, revision=revision, enqueued_work_ids=[work_id])

    def _store(
        self,
        c: sqlite3.Connection,
        event: RawEvent,
        revision: int,
        ts: float,
        payload_hash: str,
        received_at: float,
    ) -> str:
        """Insert the revision and enqueue its chunk_region work. Returns the work id."""
        c.execute(
            """
            INSERT INTO raw_events (chat_id, message_id, revision, source_update_id, sender_id, sender_name,
                                    ts, text, reply_to_id, thread_id, payload_hash, received_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.chat_id,
                event.message_id,
                revision,
                event.source_update_id,
                event.sender_id,
                event.sender_name,
                ts,
                event.text or "",
                event.reply_to_id,
                event.thread_id,
                payload_hash,
                received_at,
            ),
        )

        payload: Dict[str, Any] = {"from_message_id": event.message_id, "to_message_id": event.message_id}
        if revision > 0:
            owner = self.chunks.find_live_chunk_containing(event.chat_id, event.message_id, conn=c)
            if owner is not None:
                self.chunks.mark_stale(owner.chunk_id, conn=c)
                payload = {
                    "from_message_id": owner.first_message_id,
                    "to_message_id": owner.last_message_id,
                }
        return self.queue.enqueue(event.chat_id, WorkKind.CHUNK_REGION, payload, conn=c)

    # ================== Reads ==================

    def message_position(
        self,
        chat_id: int,
        message_id: int,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[Position]:
        with self.db.reader(conn) as c:
            row = c.execute(
                "SELECT ts FROM raw_events WHERE chat_id = ? AND message_id = ? ORDER BY revision LIMIT 1",
                (chat_id, message_id),
            ).fetchone()
        return (float(row["ts"]), message_id) if row else None

    def first_position(self, chat_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[Position]:
        with self.db.reader(conn) as c:
            row = c.execute(
                "SELECT ts, message_id FROM raw_events WHERE chat_id = ? ORDER BY ts, message_id LIMIT 1",
                (chat_id,),
            ).fetchone()
        return (float(row["ts"]), int(row["message_id"])) if row else None

    def get_latest_messages(
        self,
        chat_id: int,
        start: Optional[Position] = None,
        end: Optional[Position] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[MessageRecord]:
        """
        Latest revision of each message, in timeline order, optionally bounded
        by inclusive (timestamp, message_id) positions.
        """
        clauses = ["r.chat_id = ?"]
        params: List[Any] = [chat_id]
        if start is not None:
            clauses.append("(r.ts > ? OR (r.ts = ? AND r.message_id >= ?))")
            params.extend([start[0], start[0], start[1]])
        if end is not None:
            clauses.append("(r.ts < ? OR (r.ts = ? AND r.message_id <= ?))")
            params.extend([end[0], end[0], end[1]])

        with self.db.reader(conn) as c:
            rows = c.execute(
                f"""
                SELECT r.* FROM raw_events AS r
                JOIN (
                    SELECT message_id, MAX(revision) AS rev FROM raw_events
                    WHERE chat_id = ? GROUP BY message_id
                ) AS latest ON latest.message_id = r.message_id AND latest.rev = r.revision
                WHERE {' AND '.join(clauses)}
                ORDER BY r.ts, r.message_id
                """,
                (chat_id, *params),
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def get_revisions(self, chat_id: int, message_id: int) -> List[MessageRecord]:
        with self.db.reader() as c:
            rows = c.execute(
                "SELECT * FROM raw_events WHERE chat_id = ? AND message_id = ? ORDER BY revision",
                (chat_id, message_id),
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def messages_between(self, chat_id: int, start: datetime, end: datetime) -> List[MessageRecord]:
        """Latest revisions with timestamps in [start, end]."""
        with self.db.reader() as c:
            rows = c.execute(
                "SELECT DISTINCT message_id, ts FROM raw_events WHERE chat_id = ? AND ts >= ? AND ts <= ? ORDER BY ts, message_id",
                (chat_id, to_epoch(start), to_epoch(end)),
            ).fetchall()
        if not rows:
            return []
        first = (float(rows[0]["ts"]), int(rows[0]["message_id"]))
        last = (float(rows[-1]["ts"]), int(rows[-1]["message_id"]))
        return self.get_latest_messages(chat_id, start=first, end=last)

    def count_messages(self, chat_id: int) -> int:
        with self.db.reader() as c:
            row = c.execute(
                "SELECT COUNT(DISTINCT message_id) FROM raw_events WHERE chat_id = ?",
                (chat_id,),
            ).fetchone()
        return int(row[0])

    def count_rows(self, chat_id: Optional[int] = None) -> int:
        sql = "SELECT COUNT(*) FROM raw_events"
        params: List[Any] = []
        if chat_id is not None:
            sql += " WHERE chat_id = ?"
            params.append(chat_id)
        with self.db.reader() as c:
            return int(c.execute(sql, params).fetchone()[0])

    def list_chat_ids(self) -> List[int]:
        with self.db.reader() as c:
            rows = c.execute("SELECT DISTINCT chat_id FROM raw_events ORDER BY chat_id").fetchall()
        return [int(r[0]) for r in rows]
