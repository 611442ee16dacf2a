#!/usr/bin/env python3
"""
Run indexing workers without the Telegram recorder.

Usage:
    python scripts/run_worker.py --workers 4
    python scripts/run_worker.py --drain      # process what is queued, then exit
"""

from __future__ import annotations

import argparse
import logging
import sys
import threading
from pathlib import Path
from typing import Optional

project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from apps.telegram_bot.config import HistoryConfig  # noqa: E402
from apps.telegram_bot.service_factory import build_service  # noqa: E402


logger = logging.getLogger("run_worker")


def main(argv: Optional[list[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Run chat history indexing workers")
    ap.add_argument("--workers", type=int, default=HistoryConfig.WORKER_COUNT)
    ap.add_argument("--poll-interval", type=float, default=HistoryConfig.WORKER_POLL_SECONDS)
    ap.add_argument("--drain", action="store_true", help="Process queued work on this thread and exit")
    args = ap.parse_args(argv)

    logging.basicConfig(format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", level=logging.INFO)
    HistoryConfig.validate(require_token=False)

    service = build_service(with_llm=False)
    try:
        if args.drain:
            n = service.worker().run_until_idle()
            print(f"Processed {n} work items")
            return 0

        pool = service.worker_pool(size=args.workers, poll_interval=args.poll_interval)
        pool.start()
        try:
            threading.Event().wait()
        except KeyboardInterrupt:
            logger.info("Stopping workers")
        finally:
            pool.stop()
    finally:
        service.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
