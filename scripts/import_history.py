#!/usr/bin/env python3
"""
Import exported chat history (JSON Lines of RawEvent objects) and queue it
for indexing.

Each line:
  {"source_update_id": 1, "chat_id": -100123, "message_id": 7,
   "timestamp": "2024-03-01T14:00:00Z", "text": "...", "sender_name": "alice"}

Re-importing the same file is a no-op: every event is deduplicated.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Iterator, Optional

from tqdm import tqdm

project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from apps.telegram_bot.config import HistoryConfig  # noqa: E402
from apps.telegram_bot.service_factory import build_service  # noqa: E402
from knowledge.models import RawEvent  # noqa: E402


def _read_events(path: Path) -> Iterator[RawEvent]:
    with path.open("r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                yield RawEvent.model_validate(json.loads(line))
            except ValueError as e:
                raise ValueError(f"{path}:{line_no}: invalid event: {e}") from e


def main(argv: Optional[list[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Import exported chat history")
    ap.add_argument("path", help="JSONL file of raw events")
    ap.add_argument("--drain", action="store_true", help="Run indexing until the queue is empty")
    args = ap.parse_args(argv)

    logging.basicConfig(format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", level=logging.WARNING)
    HistoryConfig.validate(require_token=False)

    service = build_service(with_llm=False)
    try:
        counts = service.import_events(tqdm(_read_events(Path(args.path)), desc="Recording events"))
        print(f"Stored {counts['stored']} events, skipped {counts['duplicate']} duplicates")

        if args.drain:
            n = service.worker().run_until_idle()
            print(f"Processed {n} work items")
    finally:
        service.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
