"""
Durable work queue over the `work_items` table.

Items move through an explicit state machine:

    queued -> in_progress -> done
                          -> queued (retry with backoff)
                          -> failed (attempt ceiling reached)

Claiming is optimistic (conditional update on the expected state) and takes a
lease. A lease that expires without completion returns the item to `queued`,
which is how work owned by a crashed worker gets picked up again.
`chunk_region` items are sequenced per chat: at most one is in progress for a
given chat at any time.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from knowledge.errors import ExhaustedRetries, LeaseLost
from knowledge.models import WorkItem, WorkKind, WorkState, from_epoch
from ingest.indexing.database import HistoryDatabase


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueConfig:
    lease_seconds: float = 300.0
    max_attempts: int = 5
    backoff_base_seconds: float = 2.0
    backoff_max_seconds: float = 600.0

    def backoff_seconds(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        return min(self.backoff_max_seconds, self.backoff_base_seconds * (2 ** max(0, attempt - 1)))


def _dedup_key(chat_id: int, kind: WorkKind, payload: Dict[str, Any]) -> str:
    return f"{chat_id}|{kind.value}|{json.dumps(payload, sort_keys=True)}"


def _row_to_item(row: sqlite3.Row) -> WorkItem:
    return WorkItem(
        work_id=row["work_id"],
        chat_id=row["chat_id"],
        kind=WorkKind(row["kind"]),
        payload=json.loads(row["payload"]),
        state=WorkState(row["state"]),
        attempt_count=row["attempt_count"],
        last_error=row["last_error"],
        owner=row["owner"],
        lease_expires_at=from_epoch(row["lease_expires_at"]),
        available_at=from_epoch(row["available_at"]),
        created_at=from_epoch(row["created_at"]),
        updated_at=from_epoch(row["updated_at"]),
    )


class WorkQueue:
    def __init__(
        self,
        db: HistoryDatabase,
        cfg: Optional[QueueConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.cfg = cfg or QueueConfig()
        self.clock = clock

    # ================== Producers ==================

    def enqueue(
        self,
        chat_id: int,
        kind: WorkKind,
        payload: Dict[str, Any],
        conn: Optional[sqlite3.Connection] = None,
    ) -> str:
        """
        Add a work item unless an identical one is already queued.

        Returns the id of the new or already-queued item.
        """
        key = _dedup_key(chat_id, kind, payload)
        now = self.clock()
        with self.db.transaction(conn) as c:
            existing = c.execute(
                "SELECT work_id FROM work_items WHERE dedup_key = ? AND state = ?",
                (key, WorkState.QUEUED.value),
            ).fetchone()
            if existing:
                logger.debug(f"Work already queued: {key}")
                return existing["work_id"]

            work_id = uuid.uuid4().hex
            c.execute(
                """
                INSERT INTO work_items (work_id, chat_id, kind, payload, dedup_key, state,
                                        attempt_count, available_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?)
                """,
                (work_id, chat_id, kind.value, json.dumps(payload, sort_keys=True), key,
                 WorkState.QUEUED.value, now, now, now),
            )
        logger.debug(f"Enqueued {kind.value} {work_id} for chat {chat_id}: {payload}")
        return work_id

    # ================== Consumers ==================

    def requeue_expired(self, conn: Optional[sqlite3.Connection] = None) -> int:
        """Return items with expired leases to the queue, counting an attempt."""
        now = self.clock()
        with self.db.transaction(conn) as c:
            rows = c.execute(
                "SELECT work_id, attempt_count, owner FROM work_items WHERE state = ? AND lease_expires_at < ?",
                (WorkState.IN_PROGRESS.value, now),
            ).fetchall()
            for row in rows:
                attempts = row["attempt_count"] + 1
                state = WorkState.FAILED if attempts >= self.cfg.max_attempts else WorkState.QUEUED
                c.execute(
                    """
                    UPDATE work_items
                    SET state = ?, attempt_count = ?, last_error = ?, owner = NULL,
                        lease_expires_at = NULL, available_at = ?, updated_at = ?
                    WHERE work_id = ? AND state = ?
                    """,
                    (state.value, attempts, f"lease expired (owner {row['owner']})", now, now,
                     row["work_id"], WorkState.IN_PROGRESS.value),
                )
                logger.warning(f"Lease expired for work {row['work_id']} (owner {row['owner']}), now {state.value}")
        return len(rows)

    def claim(self, owner: str, kinds: Optional[Iterable[WorkKind]] = None) -> Optional[WorkItem]:
        """
        Claim the oldest available item, or None when nothing is claimable.
        """
        now = self.clock()
        kind_values = [k.value for k in kinds] if kinds else [k.value for k in WorkKind]
        placeholders = ",".join(["?"] * len(kind_values))

        with self.db.transaction() as c:
            self.requeue_expired(conn=c)
            row = c.execute(
                f"""
                SELECT * FROM work_items AS w
                WHERE w.state = ? AND w.available_at <= ? AND w.kind IN ({placeholders})
                  AND NOT (
                    w.kind = ? AND EXISTS (
                      SELECT 1 FROM work_items AS o
                      WHERE o.chat_id = w.chat_id AND o.kind = ? AND o.state = ?
                    )
                  )
                ORDER BY w.available_at, w.created_at
                LIMIT 1
                """,
                (WorkState.QUEUED.value, now, *kind_values,
                 WorkKind.CHUNK_REGION.value, WorkKind.CHUNK_REGION.value, WorkState.IN_PROGRESS.value),
            ).fetchone()
            if row is None:
                return None

            cur = c.execute(
                """
                UPDATE work_items
                SET state = ?, owner = ?, lease_expires_at = ?, updated_at = ?
                WHERE work_id = ? AND state = ?
                """,
                (WorkState.IN_PROGRESS.value, owner, now + self.cfg.lease_seconds, now,
                 row["work_id"], WorkState.QUEUED.value),
            )
            if cur.rowcount != 1:
                return None
            claimed = c.execute("SELECT * FROM work_items WHERE work_id = ?", (row["work_id"],)).fetchone()

        item = _row_to_item(claimed)
        logger.debug(f"{owner} claimed {item.kind.value} {item.work_id} (chat {item.chat_id})")
        return item

    def heartbeat(self, work_id: str, owner: str) -> None:
        """Extend the lease of an item the caller still owns."""
        now = self.clock()
        with self.db.transaction() as c:
            cur = c.execute(
                "UPDATE work_items SET lease_expires_at = ?, updated_at = ? WHERE work_id = ? AND owner = ? AND state = ?",
                (now + self.cfg.lease_seconds, now, work_id, owner, WorkState.IN_PROGRESS.value),
            )
            if cur.rowcount != 1:
                raise LeaseLost(f"Lease on {work_id} no longer held by {owner}", work_id=work_id)

    def complete(self, work_id: str, owner: str) -> None:
        now = self.clock()
        with self.db.transaction() as c:
            cur = c.execute(
                """
                UPDATE work_items
                SET state = ?, owner = NULL, lease_expires_at = NULL, last_error = NULL, updated_at = ?
                WHERE work_id = ? AND owner = ? AND state = ?
                """,
                (WorkState.DONE.value, now, work_id, owner, WorkState.IN_PROGRESS.value),
            )
            if cur.rowcount != 1:
                raise LeaseLost(f"Cannot complete {work_id}: not held by {owner}", work_id=work_id)

    def fail(self, work_id: str, owner: str, error: str) -> WorkItem:
        """
        Record a failed attempt. The item is retried after a backoff, or marked
        `failed` and ExhaustedRetries raised once the attempt ceiling is hit.
        """
        now = self.clock()
        with self.db.transaction() as c:
            row = c.execute("SELECT * FROM work_items WHERE work_id = ?", (work_id,)).fetchone()
            if row is None or row["state"] != WorkState.IN_PROGRESS.value or row["owner"] != owner:
                raise LeaseLost(f"Cannot fail {work_id}: not held by {owner}", work_id=work_id)

            attempts = row["attempt_count"] + 1
            if attempts >= self.cfg.max_attempts:
                state = WorkState.FAILED
                available_at = now
            else:
                state = WorkState.QUEUED
                available_at = now + self.cfg.backoff_seconds(attempts)

            c.execute(
                """
                UPDATE work_items
                SET state = ?, attempt_count = ?, last_error = ?, owner = NULL,
                    lease_expires_at = NULL, available_at = ?, updated_at = ?
                WHERE work_id = ?
                """,
                (state.value, attempts, error[:2000], available_at, now, work_id),
            )
            updated = c.execute("SELECT * FROM work_items WHERE work_id = ?", (work_id,)).fetchone()

        item = _row_to_item(updated)
        if item.state == WorkState.FAILED:
            raise ExhaustedRetries(
                f"{item.kind.value} {work_id} failed after {attempts} attempts: {error}",
                work_id=work_id,
                attempt_count=attempts,
            )
        logger.info(f"Work {work_id} attempt {attempts} failed, retrying in {self.cfg.backoff_seconds(attempts):.0f}s")
        return item

    # ================== Operator view ==================

    def get(self, work_id: str) -> Optional[WorkItem]:
        with self.db.reader() as c:
            row = c.execute("SELECT * FROM work_items WHERE work_id = ?", (work_id,)).fetchone()
        return _row_to_item(row) if row else None

    def list_items(self, chat_id: Optional[int] = None, state: Optional[WorkState] = None, limit: int = 100) -> List[WorkItem]:
        clauses = []
        params: List[Any] = []
        if chat_id is not None:
            clauses.append("chat_id = ?")
            params.append(chat_id)
        if state is not None:
            clauses.append("state = ?")
            params.append(state.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.db.reader() as c:
            rows = c.execute(
                f"SELECT * FROM work_items {where} ORDER BY created_at LIMIT ?",
                (*params, limit),
            ).fetchall()
        return [_row_to_item(r) for r in rows]

    def list_failed(self, chat_id: Optional[int] = None, limit: int = 100) -> List[WorkItem]:
        return self.list_items(chat_id=chat_id, state=WorkState.FAILED, limit=limit)

    def retry_failed(self, work_id: str) -> bool:
        """Put a failed item back in the queue with a fresh attempt budget."""
        now = self.clock()
        with self.db.transaction() as c:
            cur = c.execute(
                "UPDATE work_items SET state = ?, attempt_count = 0, available_at = ?, updated_at = ? WHERE work_id = ? AND state = ?",
                (WorkState.QUEUED.value, now, now, work_id, WorkState.FAILED.value),
            )
            retried = cur.rowcount == 1
        if retried:
            logger.info(f"Failed work {work_id} requeued by operator")
        return retried

    def _count(self, states: List[WorkState], chat_id: Optional[int]) -> int:
        placeholders = ",".join(["?"] * len(states))
        sql = f"SELECT COUNT(*) FROM work_items WHERE state IN ({placeholders})"
        params: List[Any] = [s.value for s in states]
        if chat_id is not None:
            sql += " AND chat_id = ?"
            params.append(chat_id)
        with self.db.reader() as c:
            return int(c.execute(sql, params).fetchone()[0])

    def pending_count(self, chat_id: Optional[int] = None) -> int:
        return self._count([WorkState.QUEUED, WorkState.IN_PROGRESS], chat_id)

    def failed_count(self, chat_id: Optional[int] = None) -> int:
        return self._count([WorkState.FAILED], chat_id)
