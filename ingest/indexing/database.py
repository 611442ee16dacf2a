"""
SQLite system of record: raw events, chunks and the work queue.

All three live in one database file so that recording an event and enqueueing
its follow-up work commit atomically.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional


logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS raw_events (
    chat_id INTEGER NOT NULL,
    message_id INTEGER NOT NULL,
    revision INTEGER NOT NULL,
    source_update_id INTEGER NOT NULL UNIQUE,
    sender_id INTEGER,
    sender_name TEXT,
    ts REAL NOT NULL,
    text TEXT NOT NULL DEFAULT '',
    reply_to_id INTEGER,
    thread_id INTEGER,
    payload_hash TEXT NOT NULL,
    received_at REAL NOT NULL,
    PRIMARY KEY (chat_id, message_id, revision)
);
CREATE INDEX IF NOT EXISTS idx_raw_events_timeline ON raw_events(chat_id, ts, message_id);

CREATE TABLE IF NOT EXISTS chunks (
    chunk_id TEXT PRIMARY KEY,
    chat_id INTEGER NOT NULL,
    first_message_id INTEGER NOT NULL,
    last_message_id INTEGER NOT NULL,
    first_ts REAL NOT NULL,
    last_ts REAL NOT NULL,
    participants TEXT NOT NULL,
    message_count INTEGER NOT NULL,
    token_count INTEGER NOT NULL,
    rendered_text TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    is_open INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    created_at REAL NOT NULL,
    indexed_at REAL,
    superseded_at REAL,
    superseded_by TEXT
);
CREATE INDEX IF NOT EXISTS idx_chunks_chat_status ON chunks(chat_id, status);
CREATE INDEX IF NOT EXISTS idx_chunks_chat_range ON chunks(chat_id, first_ts, first_message_id);

CREATE TABLE IF NOT EXISTS chunk_messages (
    chunk_id TEXT NOT NULL REFERENCES chunks(chunk_id),
    chat_id INTEGER NOT NULL,
    message_id INTEGER NOT NULL,
    PRIMARY KEY (chunk_id, message_id)
);
CREATE INDEX IF NOT EXISTS idx_chunk_messages_msg ON chunk_messages(chat_id, message_id);

CREATE TABLE IF NOT EXISTS work_items (
    work_id TEXT PRIMARY KEY,
    chat_id INTEGER NOT NULL,
    kind TEXT NOT NULL,
    payload TEXT NOT NULL,
    dedup_key TEXT NOT NULL,
    state TEXT NOT NULL,
    attempt_count INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    owner TEXT,
    lease_expires_at REAL,
    available_at REAL NOT NULL,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_work_items_state ON work_items(state, available_at);
CREATE INDEX IF NOT EXISTS idx_work_items_chat ON work_items(chat_id, state);
CREATE INDEX IF NOT EXISTS idx_work_items_dedup ON work_items(dedup_key, state);
"""


class HistoryDatabase:
    """
    Thin wrapper around a SQLite file.

    Connections are opened per operation; write paths use `BEGIN IMMEDIATE`
    so that concurrent writers serialize on the database lock instead of
    failing late at commit time.
    """

    def __init__(self, db_path: str | Path, busy_timeout: float = 30.0):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout = busy_timeout
        self._init_schema()

    def _init_schema(self) -> None:
        with self.connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA)
        logger.debug(f"History database ready at {self.db_path}")

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path), timeout=self.busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        """
        Open a write transaction, or join the caller's when `conn` is given.
        """
        if conn is not None:
            yield conn
            return

        with self.connect() as own:
            own.execute("BEGIN IMMEDIATE")
            try:
                yield own
            except BaseException:
                own.execute("ROLLBACK")
                raise
            own.execute("COMMIT")

    @contextmanager
    def reader(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        with self.connect() as own:
            yield own
