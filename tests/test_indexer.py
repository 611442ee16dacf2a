"""
Tests for the incremental indexer and its workers.
"""
import shutil
import tempfile
import threading
import unittest
from pathlib import Path

from knowledge.models import ChunkStatus, WorkKind, WorkState
from ingest.chunking.time_gap import ChunkerConfig
from ingest.event_store import EventStore
from ingest.indexing.chunk_store import ChunkStore
from ingest.indexing.database import HistoryDatabase
from ingest.indexing.embedding_store import DuckDbEmbeddingStore
from ingest.indexing.indexer import IncrementalIndexer, IndexerConfig
from ingest.indexing.work_queue import QueueConfig, WorkQueue
from ingest.indexing.worker import IndexerWorker
from fakes import CHAT, MODEL, FakeClock, KeywordEmbedder, drain, make_event, record_all


VOCAB = ["deploy", "release", "lunch", "budget", "edited"]


class IndexerTestCase(unittest.TestCase):
    queue_cfg = QueueConfig(lease_seconds=60, max_attempts=3, backoff_base_seconds=1, backoff_max_seconds=4)

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.clock = FakeClock()
        self.db = HistoryDatabase(Path(self.temp_dir) / "history.db")
        self.embeddings = DuckDbEmbeddingStore(Path(self.temp_dir) / "embeddings.duckdb")
        self.queue = WorkQueue(self.db, self.queue_cfg, clock=self.clock)
        self.chunks = ChunkStore(self.db)
        self.events = EventStore(self.db, self.chunks, self.queue)
        self.embedder = KeywordEmbedder(VOCAB)
        self.indexer = IncrementalIndexer(
            self.db, self.events, self.chunks, self.embeddings, self.queue, self.embedder,
            ChunkerConfig(gap_seconds=900, min_messages=3),
            IndexerConfig(model_id=MODEL),
        )

    def tearDown(self):
        self.embeddings.close()
        if Path(self.temp_dir).exists():
            shutil.rmtree(self.temp_dir)

    def live_ranges(self):
        return [(c.first_message_id, c.last_message_id) for c in self.chunks.live_chunks(CHAT)]

    def passage_calls(self):
        return [c for c in self.embedder.calls if c[0] == "passage"]


class TestChunking(IndexerTestCase):
    def test_messages_become_indexed_chunks(self):
        record_all(self.events, [
            make_event(1, 1, 0, "we deploy today"), make_event(2, 2, 1, "ok"), make_event(3, 3, 3, "fine"),
            make_event(4, 4, 25, "lunch?"), make_event(5, 5, 26, "yes"),
        ])
        drain(self.queue, self.indexer)

        live = self.chunks.live_chunks(CHAT)
        self.assertEqual(self.live_ranges(), [(1, 3), (4, 5)])
        self.assertTrue(all(c.status == ChunkStatus.INDEXED for c in live))
        self.assertEqual([c.is_open for c in live], [False, True])
        self.assertEqual(self.embeddings.count(MODEL), 2)
        self.assertEqual(self.queue.pending_count(CHAT), 0)
        self.chunks.verify_no_overlap(CHAT)

    def test_new_messages_only_touch_the_tail(self):
        record_all(self.events, [make_event(i, i, m, "deploy") for i, m in [(1, 0), (2, 1), (3, 3)]])
        drain(self.queue, self.indexer)
        first = self.chunks.live_chunks(CHAT)[0]
        calls = len(self.passage_calls())

        record_all(self.events, [make_event(4, 4, 25, "lunch"), make_event(5, 5, 26, "lunch")])
        drain(self.queue, self.indexer)

        live = self.chunks.live_chunks(CHAT)
        self.assertEqual(live[0].chunk_id, first.chunk_id)
        self.assertFalse(live[0].is_open)
        self.assertEqual(live[0].status, ChunkStatus.INDEXED)
        self.assertEqual(len(self.passage_calls()), calls + 1)

    def test_growing_open_chunk_supersedes_previous_version(self):
        record_all(self.events, [make_event(1, 1, 0, "deploy"), make_event(2, 2, 1, "deploy")])
        drain(self.queue, self.indexer)
        old = self.chunks.live_chunks(CHAT)[0]

        self.events.record(make_event(3, 3, 2, "release"))
        drain(self.queue, self.indexer)

        new = self.chunks.live_chunks(CHAT)
        self.assertEqual([(c.first_message_id, c.last_message_id) for c in new], [(1, 3)])
        replaced = self.chunks.get(old.chunk_id)
        self.assertEqual(replaced.status, ChunkStatus.SUPERSEDED)
        self.assertEqual(replaced.superseded_by, new[0].chunk_id)
        self.assertEqual([c.chunk_id for c in self.chunks.indexed_chunks(CHAT)], [new[0].chunk_id])

    def test_late_message_rechunks_without_overlap(self):
        minutes = [0, 1, 2, 30, 31, 32, 60, 61]
        record_all(self.events, [make_event(i + 1, 10 + i, m) for i, m in enumerate(minutes)])
        drain(self.queue, self.indexer)
        self.assertEqual(self.live_ranges(), [(10, 12), (13, 15), (16, 17)])

        # Delivered late, timestamped inside the second conversation.
        self.events.record(make_event(100, 99, 31.5, "late"))
        drain(self.queue, self.indexer)

        self.chunks.verify_no_overlap(CHAT)
        self.assertEqual(self.live_ranges(), [(10, 12), (13, 15), (16, 17)])
        owner = self.chunks.find_live_chunk_containing(CHAT, 99)
        self.assertEqual((owner.first_message_id, owner.last_message_id, owner.message_count), (13, 15, 4))
        live = self.chunks.live_chunks(CHAT)
        self.assertEqual(sum(c.message_count for c in live), self.events.count_messages(CHAT))

    def test_rerunning_a_region_is_a_noop(self):
        result = self.events.record(make_event(1, 1, 0, "deploy"))
        item = self.queue.get(result.enqueued_work_ids[0])
        first = self.indexer.process_chunk_region(item)
        second = self.indexer.process_chunk_region(item)

        self.assertEqual(len(first.inserted), 1)
        self.assertEqual(second.inserted, [])
        self.assertEqual(second.superseded, [])
        self.assertEqual(second.kept, first.inserted)
        self.assertEqual(len(self.chunks.live_chunks(CHAT)), 1)

    def test_region_for_missing_message_is_skipped(self):
        work_id = self.queue.enqueue(CHAT, WorkKind.CHUNK_REGION, {"from_message_id": 404, "to_message_id": 404})
        result = self.indexer.process_chunk_region(self.queue.get(work_id))
        self.assertEqual(result.inserted, [])


class TestEdits(IndexerTestCase):
    def setUp(self):
        super().setUp()
        record_all(self.events, [make_event(1, 1, 0, "deploy at 5"), make_event(2, 2, 1, "ok"), make_event(3, 3, 2, "ok")])
        drain(self.queue, self.indexer)
        self.original = self.chunks.live_chunks(CHAT)[0]

    def test_edit_replaces_chunk(self):
        self.events.record(make_event(10, 1, 9, "deploy at 6 edited", is_edit=True))
        self.assertEqual(self.chunks.get(self.original.chunk_id).status, ChunkStatus.STALE)
        self.assertEqual(self.chunks.indexed_chunks(CHAT), [])

        drain(self.queue, self.indexer)

        live = self.chunks.live_chunks(CHAT)
        self.assertEqual(len(live), 1)
        self.assertNotEqual(live[0].chunk_id, self.original.chunk_id)
        self.assertIn("deploy at 6 edited", live[0].rendered_text)
        self.assertEqual(live[0].status, ChunkStatus.INDEXED)
        self.assertEqual(self.chunks.get(self.original.chunk_id).status, ChunkStatus.SUPERSEDED)

    def test_edit_that_does_not_change_transcript_restores_chunk(self):
        calls = len(self.passage_calls())
        self.events.record(make_event(10, 2, 9, "ok", is_edit=True, thread_id=7))
        self.assertEqual(self.chunks.get(self.original.chunk_id).status, ChunkStatus.STALE)

        drain(self.queue, self.indexer)

        restored = self.chunks.get(self.original.chunk_id)
        self.assertEqual(restored.status, ChunkStatus.INDEXED)
        self.assertEqual(len(self.passage_calls()), calls)


class TestEmbedding(IndexerTestCase):
    def test_transient_failure_is_retried(self):
        self.embedder.fail_times = 1
        self.events.record(make_event(1, 1, 0, "deploy"))
        drain(self.queue, self.indexer)

        chunk = self.chunks.live_chunks(CHAT)[0]
        self.assertEqual(chunk.status, ChunkStatus.PENDING_EMBEDDING)
        self.assertEqual(self.queue.pending_count(CHAT), 1)

        self.clock.advance(1)
        drain(self.queue, self.indexer)
        self.assertEqual(self.chunks.get(chunk.chunk_id).status, ChunkStatus.INDEXED)

    def test_exhausted_retries_leave_chunk_pending(self):
        self.embedder.fail_times = 100
        self.events.record(make_event(1, 1, 0, "deploy"))
        for _ in range(5):
            drain(self.queue, self.indexer)
            self.clock.advance(10)

        failed = self.queue.list_failed(CHAT)
        self.assertEqual(len(failed), 1)
        self.assertEqual(failed[0].kind, WorkKind.EMBED_CHUNK)
        self.assertIn("TransientCapabilityFailure", failed[0].last_error)
        self.assertEqual(self.chunks.live_chunks(CHAT)[0].status, ChunkStatus.PENDING_EMBEDDING)

        self.embedder.fail_times = 0
        self.assertTrue(self.queue.retry_failed(failed[0].work_id))
        drain(self.queue, self.indexer)
        self.assertEqual(self.chunks.live_chunks(CHAT)[0].status, ChunkStatus.INDEXED)

    def test_slow_embedding_keeps_its_lease(self):
        self.events.record(make_event(1, 1, 0, "deploy"))
        IndexerWorker(self.queue, self.indexer, kinds=[WorkKind.CHUNK_REGION]).run_until_idle()

        renewed = threading.Event()
        heartbeat = self.queue.heartbeat

        def heartbeat_and_signal(work_id, owner):
            heartbeat(work_id, owner)
            renewed.set()

        self.queue.heartbeat = heartbeat_and_signal
        seen = {}
        vector = self.embedder.embed

        def slow_embed(text, model_id):
            # Outlive the 60s lease taken at claim time.
            self.clock.advance(45)
            renewed.clear()
            seen["renewed"] = renewed.wait(5)
            self.clock.advance(45)
            seen["second_claim"] = self.queue.claim("other-worker")
            return vector(text, model_id)

        self.embedder.embed = slow_embed
        worker = IndexerWorker(self.queue, self.indexer, owner="slow-worker", heartbeat_interval=0.05)
        item = worker.run_once()

        self.assertTrue(seen["renewed"])
        self.assertIsNone(seen["second_claim"])
        done = self.queue.get(item.work_id)
        self.assertEqual(done.state, WorkState.DONE)
        self.assertEqual(done.attempt_count, 0)
        self.assertEqual(self.chunks.live_chunks(CHAT)[0].status, ChunkStatus.INDEXED)

    def test_superseded_chunk_is_not_embedded(self):
        chunking_only = IndexerWorker(self.queue, self.indexer, owner="w", kinds=[WorkKind.CHUNK_REGION])
        self.events.record(make_event(1, 1, 0, "deploy"))
        chunking_only.run_until_idle()
        first = self.chunks.live_chunks(CHAT)[0]
        self.events.record(make_event(2, 2, 1, "deploy"))
        chunking_only.run_until_idle()
        self.assertEqual(self.chunks.get(first.chunk_id).status, ChunkStatus.SUPERSEDED)

        drain(self.queue, self.indexer)

        self.assertEqual(len(self.passage_calls()), 1)
        self.assertFalse(self.embeddings.has(first.chunk_id, MODEL))
        self.assertEqual(self.embeddings.count(MODEL), 1)

    def test_vector_is_stored_once(self):
        self.events.record(make_event(1, 1, 0, "deploy"))
        drain(self.queue, self.indexer)
        chunk = self.chunks.live_chunks(CHAT)[0]

        work_id = self.queue.enqueue(CHAT, WorkKind.EMBED_CHUNK, {"chunk_id": chunk.chunk_id, "model_id": MODEL})
        self.assertFalse(self.indexer.process_embedding(self.queue.get(work_id)))
        self.assertEqual(self.embeddings.count(MODEL), 1)


class TestReembed(IndexerTestCase):
    def test_reembed_with_new_model(self):
        record_all(self.events, [make_event(i, i, m, "budget") for i, m in [(1, 0), (2, 1), (3, 2), (4, 30)]])
        drain(self.queue, self.indexer)
        live = self.chunks.live_chunks(CHAT)

        work_ids = self.indexer.request_reembed(CHAT, "model-b")
        self.assertEqual(len(work_ids), len(live))
        drain(self.queue, self.indexer)

        self.assertEqual(self.embeddings.count("model-b"), len(live))
        self.assertEqual(self.embeddings.count(MODEL), len(live))
        for chunk in live:
            self.assertEqual(self.embeddings.model_ids(chunk.chunk_id), sorted([MODEL, "model-b"]))
            self.assertEqual(self.chunks.get(chunk.chunk_id).status, ChunkStatus.INDEXED)
        self.assertTrue(all(self.queue.get(w).state == WorkState.DONE for w in work_ids))


if __name__ == "__main__":
    unittest.main()
