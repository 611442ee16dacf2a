"""
Indexer workers: claim work items, run them, record the outcome.

Workers share nothing but the database. Each holds at most one lease at a
time, renewed by a LeaseKeeper, and no row lock while the indexer waits on
the embedding capability.
"""

from __future__ import annotations

import logging
import os
import socket
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Iterable, List, Optional

from knowledge.errors import ExhaustedRetries, LeaseLost, TransientCapabilityFailure
from knowledge.models import WorkItem, WorkKind
from ingest.indexing.indexer import IncrementalIndexer
from ingest.indexing.work_queue import WorkQueue


logger = logging.getLogger(__name__)


def default_owner(suffix: str = "") -> str:
    owner = f"{socket.gethostname()}-{os.getpid()}"
    return f"{owner}-{suffix}" if suffix else owner


class LeaseKeeper:
    """
    Renews the lease on a claimed item from a background thread while the
    worker is busy with it. Used as a context manager around the work.
    """

    def __init__(self, queue: WorkQueue, item: WorkItem, owner: str, interval: float):
        self.queue = queue
        self.item = item
        self.owner = owner
        self.interval = interval
        self.renewals = 0
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=f"lease-{item.work_id[:8]}", daemon=True)

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.queue.heartbeat(self.item.work_id, self.owner)
            except LeaseLost as lost:
                logger.warning(f"{self.owner}: {lost}")
                return
            except Exception as e:
                # Retried on the next tick; the lease is still valid until it expires.
                logger.error(f"{self.owner}: lease renewal for {self.item.work_id} failed: {e}")
            else:
                self.renewals += 1

    def __enter__(self) -> "LeaseKeeper":
        self._thread.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._stop.set()
        self._thread.join()


class IndexerWorker:
    def __init__(
        self,
        queue: WorkQueue,
        indexer: IncrementalIndexer,
        owner: Optional[str] = None,
        kinds: Optional[Iterable[WorkKind]] = None,
        heartbeat_interval: Optional[float] = None,
    ):
        self.queue = queue
        self.indexer = indexer
        self.owner = owner or default_owner()
        self.kinds = list(kinds) if kinds else None
        # Renew well before expiry.
        self.heartbeat_interval = heartbeat_interval or queue.cfg.lease_seconds / 3

    def run_once(self) -> Optional[WorkItem]:
        """
        Claim and process a single item. Returns the claimed item, or None when
        nothing was claimable.
        """
        item = self.queue.claim(self.owner, kinds=self.kinds)
        if item is None:
            return None

        try:
            with LeaseKeeper(self.queue, item, self.owner, self.heartbeat_interval):
                self.indexer.process(item)
        except Exception as e:
            transient = isinstance(e, TransientCapabilityFailure)
            logger.warning(
                f"{self.owner}: {item.kind.value} {item.work_id} failed (attempt {item.attempt_count + 1}): {e}",
                exc_info=not transient,
            )
            try:
                self.queue.fail(item.work_id, self.owner, f"{type(e).__name__}: {e}")
            except ExhaustedRetries as exhausted:
                logger.error(f"{exhausted}; item marked failed for operator review")
            except LeaseLost as lost:
                logger.warning(f"{self.owner}: {lost}")
            return item

        try:
            self.queue.complete(item.work_id, self.owner)
        except LeaseLost as lost:
            # The work is idempotent; whoever re-claimed it will find it done.
            logger.warning(f"{self.owner}: finished after losing the lease: {lost}")
        return item

    def run_until_idle(self, max_items: Optional[int] = None) -> int:
        """Process items until none is claimable. Returns the number processed."""
        n = 0
        while max_items is None or n < max_items:
            if self.run_once() is None:
                break
            n += 1
        return n

    def run_forever(self, stop_event: threading.Event, poll_interval: float = 1.0) -> None:
        logger.info(f"Worker {self.owner} started")
        while not stop_event.is_set():
            try:
                item = self.run_once()
            except Exception as e:
                # Queue or database trouble; back off and keep the worker alive.
                logger.error(f"Worker {self.owner} loop error: {e}", exc_info=True)
                item = None
            if item is None:
                stop_event.wait(poll_interval)
        logger.info(f"Worker {self.owner} stopped")


class WorkerPool:
    """
    Runs N workers on threads against the same queue.
    """

    def __init__(
        self,
        queue: WorkQueue,
        indexer: IncrementalIndexer,
        size: int = 2,
        poll_interval: float = 1.0,
    ):
        self.workers: List[IndexerWorker] = [
            IndexerWorker(queue, indexer, owner=default_owner(f"w{i}")) for i in range(max(1, size))
        ]
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._futures: List[Future] = []

    def start(self) -> None:
        if self._executor is not None:
            return
        self._stop.clear()
        self._executor = ThreadPoolExecutor(max_workers=len(self.workers), thread_name_prefix="indexer")
        self._futures = [
            self._executor.submit(w.run_forever, self._stop, self.poll_interval) for w in self.workers
        ]
        logger.info(f"Worker pool started with {len(self.workers)} workers")

    def stop(self, wait: bool = True) -> None:
        self._stop.set()
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
        logger.info("Worker pool stopped")

    def drain(self) -> int:
        """Process everything currently claimable on the calling thread."""
        return sum(w.run_until_idle() for w in self.workers)
